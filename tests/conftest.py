# tests/conftest.py
"""
Shared fixtures.

ScriptedExecutor stands in for real build tools: outcomes are scripted per
job id, every call is recorded, and declared artifacts are published
automatically so scheduling tests stay free of I/O.
"""

from __future__ import annotations

import threading
import time
from typing import Dict, List, Optional, Set, Tuple

import pytest

from matrixci.artifacts import MemoryArtifactStore
from matrixci.config import EngineConfig
from matrixci.controller import RunController
from matrixci.dsl import matrix, on_pull_request, on_push, pipeline, stage, step
from matrixci.executors import ExecutorRegistry, JobContext, StepOutcome
from matrixci.model import RunContext, StepSpec
from matrixci.ui.console import Console


class ScriptedExecutor:
    def __init__(
        self,
        exit_codes: Optional[Dict[str, int]] = None,
        delays: Optional[Dict[str, float]] = None,
        raises: Optional[Dict[str, Exception]] = None,
        skip_publish: Optional[Set[str]] = None,
        default_delay: float = 0.0,
    ):
        self.exit_codes = exit_codes or {}
        self.delays = delays or {}
        self.raises = raises or {}
        self.skip_publish = skip_publish or set()
        self.default_delay = default_delay
        self.calls: List[Tuple[str, str]] = []
        self.inputs: Dict[str, dict] = {}
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def execute(self, step: StepSpec, ctx: JobContext) -> StepOutcome:
        job = ctx.job.id
        with self._lock:
            self.calls.append((job, step.display_name))
            self.inputs[job] = dict(ctx.inputs)
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            if job in self.raises:
                raise self.raises[job]
            delay = self.delays.get(job, self.default_delay)
            if delay and ctx.token.wait(delay):
                return StepOutcome(143, "stopped", cancelled=True)
            code = self.exit_codes.get(job, 0)
            if code == 0 and job not in self.skip_publish:
                for name in ctx.job.produces:
                    if name not in ctx.staged:
                        ctx.publish(name, f"{job}:{name}".encode())
            return StepOutcome(code, f"{job} ran {step.display_name}")
        finally:
            with self._lock:
                self.running -= 1

    def jobs_called(self) -> List[str]:
        seen: List[str] = []
        for job, _ in self.calls:
            if job not in seen:
                seen.append(job)
        return seen


@pytest.fixture
def quiet_console() -> Console:
    return Console(quiet=True)


@pytest.fixture
def scripted() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def registry(scripted: ScriptedExecutor) -> ExecutorRegistry:
    return ExecutorRegistry({"fake": scripted})


@pytest.fixture
def tag_context() -> RunContext:
    return RunContext.from_ref("push", "refs/tags/v1.2.3", actor="octocat", sha="abc123")


@pytest.fixture
def main_push() -> RunContext:
    return RunContext.from_ref("push", "refs/heads/main", actor="octocat")


@pytest.fixture
def pr_context() -> RunContext:
    return RunContext(event="pull_request", ref_name="feature/login", base_ref="main", actor="octocat")


def fake(name: str = "work") -> StepSpec:
    return step("fake", name)


@pytest.fixture
def release_pipeline():
    """test (A,B) -> build (A,B, produces binary) -> release (tag-gated, consumes binary)."""
    return pipeline(
        "release-flow",
        stage("test", fake("unit"), matrix=matrix(os=["A", "B"])),
        stage(
            "build",
            fake("compile"),
            needs="test",
            matrix=matrix(os=["A", "B"]),
            produces=["binary"],
        ),
        stage(
            "release",
            fake("publish"),
            needs="build",
            when="startsWith(github.ref, 'refs/tags/v')",
            consumes=["build/binary"],
        ),
        on=[on_push(branches=["main"], tags=["v*.*.*"]), on_pull_request(branches=["main"])],
    )


@pytest.fixture
def run_pipeline(quiet_console: Console):
    """run_pipeline(pipeline, context, executor, **config) -> (RunResult, store)"""

    def _run(p, context, executor, *, store=None, **config):
        store = store if store is not None else MemoryArtifactStore()
        registry = executor if isinstance(executor, ExecutorRegistry) else ExecutorRegistry({"fake": executor})
        cfg = EngineConfig(**{"max_workers": 4, "keep_artifacts": True, **config})
        result = RunController(p, registry, store=store, config=cfg, console=quiet_console).run(context)
        return result, store

    return _run


@pytest.fixture
def stopwatch():
    start = time.monotonic()
    return lambda: time.monotonic() - start


@pytest.fixture
def make_executor():
    """ScriptedExecutor factory for tests that script outcomes."""
    return ScriptedExecutor
