# executors.py
"""
Step executors: the opaque "run this step" collaborators.

Each step names an executor (`uses:`); the registry maps that name to an
object with `execute(step, ctx) -> StepOutcome`. Executors must watch
`ctx.token` and stop promptly when it is cancelled.
"""

from __future__ import annotations

import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Protocol, Union

from .artifacts import InputKey, select
from .errors import AmbiguousArtifactError, MissingArtifactError
from .model import JobInstance, RunContext, StepSpec

LOG_TAIL = 4000  # keep only the end of long outputs


class CancelToken:
    """Cooperative cancellation flag shared by the scheduler and one job."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


@dataclass(frozen=True)
class StepOutcome:
    exit_status: int
    logs: str = ""
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_status == 0 and not self.cancelled


class JobContext:
    """
    What a step sees of the engine: its job, the run, the cancellation token,
    the artifacts it consumes, and a staging area for artifacts it produces.

    Published blobs stay staged here until the scheduler decides the job
    succeeded; nothing reaches the artifact store before that.
    """

    def __init__(
        self,
        job: JobInstance,
        run: RunContext,
        token: CancelToken,
        inputs: Optional[Mapping[InputKey, bytes]] = None,
    ):
        self.job = job
        self.run = run
        self.token = token
        self.inputs: Dict[InputKey, bytes] = dict(inputs or {})
        self.staged: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    @property
    def matrix(self) -> Dict[str, Any]:
        return self.job.matrix

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def environment(self, step: StepSpec | None = None) -> Dict[str, str]:
        """Variables exported to processes started for this job."""
        env = {
            "MATRIXCI": "true",
            "MATRIXCI_EVENT": self.run.event,
            "MATRIXCI_REF": self.run.ref,
            "MATRIXCI_REF_NAME": self.run.ref_name,
            "MATRIXCI_REF_KIND": self.run.ref_kind,
            "MATRIXCI_STAGE": self.job.stage,
            "MATRIXCI_JOB": self.job.id,
        }
        for k, v in self.job.matrix.items():
            env[f"MATRIX_{k.upper().replace('-', '_')}"] = str(v)
        env.update({k: str(v) for k, v in self.job.env.items()})
        if step is not None:
            env.update({k: str(v) for k, v in step.env.items()})
        return env

    def publish(self, name: str, blob: bytes) -> None:
        if name not in self.job.produces:
            raise ValueError(
                f"[{self.job.id}] artifact {name!r} is not declared in produces {list(self.job.produces)}"
            )
        with self._lock:
            if name in self.staged:
                raise ValueError(f"[{self.job.id}] artifact {name!r} published twice")
            self.staged[name] = bytes(blob)

    def fetch_all(self, stage: str, name: str, matrix: Optional[Mapping[str, Any]] = None) -> Dict[str, bytes]:
        found = select(self.inputs, stage, name, matrix)
        if not found:
            raise MissingArtifactError(
                stage, name, dict(matrix) if matrix else None,
                "not among the artifacts this job consumes",
            )
        return found

    def fetch(self, stage: str, name: str, matrix: Optional[Mapping[str, Any]] = None) -> bytes:
        found = self.fetch_all(stage, name, matrix)
        if len(found) > 1:
            raise AmbiguousArtifactError(stage, name, sorted(found))
        return next(iter(found.values()))


class StepExecutor(Protocol):
    def execute(self, step: StepSpec, ctx: JobContext) -> StepOutcome: ...


StepFn = Callable[[StepSpec, JobContext], Union[StepOutcome, int, None]]


class CallableExecutor:
    """
    Wrap a plain function. Return value:
      - StepOutcome -> as is
      - int         -> exit status
      - None        -> success
    """

    def __init__(self, fn: StepFn):
        self.fn = fn

    def execute(self, step: StepSpec, ctx: JobContext) -> StepOutcome:
        out = self.fn(step, ctx)
        if isinstance(out, StepOutcome):
            return out
        if out is None:
            return StepOutcome(0)
        return StepOutcome(int(out))


class NoopExecutor:
    """Always succeeds; echoes `message` into the logs."""

    def execute(self, step: StepSpec, ctx: JobContext) -> StepOutcome:
        return StepOutcome(0, str(step.params.get("message", "")))


# ----------------------------------------------------------------------
# Shell
# ----------------------------------------------------------------------

class ShellExecutor:
    """
    Runs `params.command` through the shell inside the workspace.

    Polls the cancellation token while the process runs and terminates it
    when cancelled.
    """

    def __init__(self, workspace: str | Path = ".", *, poll_interval: float = 0.1, kill_grace: float = 5.0):
        self.workspace = Path(workspace)
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace

    def execute(self, step: StepSpec, ctx: JobContext) -> StepOutcome:
        command = step.params.get("command") or step.params.get("run")
        if not command:
            return StepOutcome(2, f"[{ctx.job.id}] step '{step.display_name}' has no command")

        cwd = (self.workspace / str(step.params.get("cwd") or ".")).resolve()
        if not cwd.exists():
            return StepOutcome(2, f"[{ctx.job.id}] step '{step.display_name}' cwd not found: {cwd}")

        env = os.environ.copy()
        env.update(ctx.environment(step))

        proc = subprocess.Popen(
            str(command),
            shell=True,
            cwd=str(cwd),
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            # own process group, so cancellation reaches the shell's children too
            start_new_session=os.name == "posix",
        )
        while True:
            try:
                out, _ = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if ctx.token.cancelled:
                    _signal_group(proc, signal.SIGTERM)
                    try:
                        out, _ = proc.communicate(timeout=self.kill_grace)
                    except subprocess.TimeoutExpired:
                        _signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
                        out, _ = proc.communicate()
                    return StepOutcome(proc.returncode or -15, (out or "")[-LOG_TAIL:], cancelled=True)

        return StepOutcome(proc.returncode, (out or "")[-LOG_TAIL:])


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    if os.name != "posix":
        if sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()
        return
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


# ----------------------------------------------------------------------
# Artifact steps
# ----------------------------------------------------------------------

class UploadArtifactExecutor:
    """with: {name: <artifact>, path: <file relative to workspace>}"""

    def __init__(self, workspace: str | Path = "."):
        self.workspace = Path(workspace)

    def execute(self, step: StepSpec, ctx: JobContext) -> StepOutcome:
        name = step.params.get("name")
        path = step.params.get("path")
        if not name or not path:
            return StepOutcome(2, "upload-artifact needs 'name' and 'path'")
        src = self.workspace / str(path)
        if not src.is_file():
            return StepOutcome(1, f"upload-artifact: no file at {src}")
        ctx.publish(str(name), src.read_bytes())
        return StepOutcome(0, f"uploaded {name} ({src.stat().st_size} bytes)")


class DownloadArtifactExecutor:
    """
    with: {name: <artifact>, path: <destination>, stage: <producer stage>, matrix: {...}}

    `stage` may be left out when only one consumed stage provides `name`.
    `path` is a directory (the blob is written as <path>/<file name>) unless
    it names a file with an extension.
    """

    def __init__(self, workspace: str | Path = "."):
        self.workspace = Path(workspace)

    def execute(self, step: StepSpec, ctx: JobContext) -> StepOutcome:
        name = step.params.get("name")
        if not name:
            return StepOutcome(2, "download-artifact needs 'name'")
        name = str(name)
        stage = step.params.get("stage")
        if not stage:
            stages = sorted({s for (s, _q, n) in ctx.inputs if n == name})
            if len(stages) != 1:
                raise MissingArtifactError(
                    "*", name, None,
                    "no consumed stage provides it" if not stages else f"provided by several stages {stages}; set 'stage'",
                )
            stage = stages[0]
        blob = ctx.fetch(str(stage), name, step.params.get("matrix"))

        filename = str(step.params.get("file") or name)
        dest = self.workspace / str(step.params.get("path") or ".")
        if not dest.suffix:
            dest = dest / filename
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(blob)
        return StepOutcome(0, f"downloaded {stage}/{name} -> {dest}")


# ----------------------------------------------------------------------
# Registry
# ----------------------------------------------------------------------

class ExecutorRegistry:
    """
    Maps executor identifiers (`uses:`) to executors.

    Lookup tries the identifier as written, then without an `@version`
    suffix, then its last path segment, so `actions/upload-artifact@v3`
    finds `upload-artifact`. Identifiers that still match nothing go to
    `fallback` when one is set.
    """

    def __init__(self, executors: Optional[Mapping[str, Any]] = None, *, fallback: Any = None):
        self._executors: Dict[str, StepExecutor] = {}
        for name, ex in (executors or {}).items():
            self.register(name, ex)
        self.fallback: Optional[StepExecutor] = self._wrap("fallback", fallback) if fallback is not None else None

    @staticmethod
    def _wrap(name: str, executor: Any) -> StepExecutor:
        if not hasattr(executor, "execute"):
            if not callable(executor):
                raise TypeError(f"Executor {name!r} must have execute() or be callable")
            executor = CallableExecutor(executor)
        return executor

    def register(self, name: str, executor: Any) -> "ExecutorRegistry":
        self._executors[name] = self._wrap(name, executor)
        return self

    def _lookup(self, name: str) -> Optional[StepExecutor]:
        bare = name.split("@", 1)[0]
        for candidate in (name, bare, bare.rsplit("/", 1)[-1]):
            if candidate in self._executors:
                return self._executors[candidate]
        return self.fallback

    def get(self, name: str) -> StepExecutor:
        ex = self._lookup(name)
        if ex is None:
            raise KeyError(f"No executor registered for {name!r}. Known: {sorted(self._executors)}")
        return ex

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self._lookup(name) is not None

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._executors))


def default_registry(workspace: str | Path = ".", *, fallback: Any = None) -> ExecutorRegistry:
    return ExecutorRegistry(
        {
            "shell": ShellExecutor(workspace),
            "upload-artifact": UploadArtifactExecutor(workspace),
            "download-artifact": DownloadArtifactExecutor(workspace),
            "noop": NoopExecutor(),
        },
        fallback=fallback,
    )
