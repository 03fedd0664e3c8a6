# src/matrixci/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Union

from .model import ArtifactRef, MatrixSpec, Pipeline, StageSpec, StepSpec, TriggerClause

ConsumeLike = Union[str, ArtifactRef]


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def step(uses: str, name: str = "", *, env: Optional[Dict[str, str]] = None, **params: Any) -> StepSpec:
    """Generic step: step("noop", "hello", message="hi")."""
    return StepSpec(uses=uses, name=name, params=dict(params), env=dict(env or {}))


def sh(name: str, cmd: str, *, cwd: str | None = None, env: Optional[Dict[str, str]] = None) -> StepSpec:
    """Create a shell step."""
    params: Dict[str, Any] = {"command": cmd}
    if cwd is not None:
        params["cwd"] = cwd
    return StepSpec(uses="shell", name=name, params=params, env=dict(env or {}))


def upload(name: str, path: str) -> StepSpec:
    return StepSpec(uses="upload-artifact", name=f"Upload {name}", params={"name": name, "path": path})


def download(
    name: str,
    path: str = ".",
    *,
    stage: str | None = None,
    matrix: Optional[Dict[str, Any]] = None,
) -> StepSpec:
    params: Dict[str, Any] = {"name": name, "path": path}
    if stage is not None:
        params["stage"] = stage
    if matrix:
        params["matrix"] = dict(matrix)
    return StepSpec(uses="download-artifact", name=f"Download {name}", params=params)


# ---------------------------------------------------------------------
# Matrix / triggers
# ---------------------------------------------------------------------

def matrix(
    *,
    include: Optional[List[Dict[str, Any]]] = None,
    exclude: Optional[List[Dict[str, Any]]] = None,
    **axes: Iterable[Any],
) -> MatrixSpec:
    """
    Example:
        matrix(os=["linux", "mac"], py=["3.11", "3.12"], exclude=[{"os": "mac", "py": "3.11"}])
    """
    return MatrixSpec(
        axes={k: list(v) for k, v in axes.items()},
        include=[dict(e) for e in include or []],
        exclude=[dict(e) for e in exclude or []],
    )


def _patterns(p: Union[str, Iterable[str], None]) -> Optional[List[str]]:
    if p is None:
        return None
    if isinstance(p, str):
        return [p]
    return list(p)


def on_push(
    *,
    branches: Union[str, Iterable[str], None] = None,
    tags: Union[str, Iterable[str], None] = None,
    branches_ignore: Union[str, Iterable[str], None] = None,
    tags_ignore: Union[str, Iterable[str], None] = None,
) -> TriggerClause:
    return TriggerClause(
        event="push",
        branches=_patterns(branches),
        tags=_patterns(tags),
        branches_ignore=_patterns(branches_ignore),
        tags_ignore=_patterns(tags_ignore),
    )


def on_pull_request(
    *,
    branches: Union[str, Iterable[str], None] = None,
    branches_ignore: Union[str, Iterable[str], None] = None,
) -> TriggerClause:
    """`branches` filters the branch the pull request targets."""
    return TriggerClause(
        event="pull_request",
        branches=_patterns(branches),
        branches_ignore=_patterns(branches_ignore),
    )


def _refs(consumes: Iterable[ConsumeLike]) -> List[ArtifactRef]:
    return [c if isinstance(c, ArtifactRef) else ArtifactRef.parse(c) for c in consumes]


# ---------------------------------------------------------------------
# Functional stage helper
# ---------------------------------------------------------------------

def stage(
    name: str,
    *steps: StepSpec,  # allow: stage("x", sh(...), sh(...))
    needs: Union[str, List[str], None] = None,
    matrix: Optional[MatrixSpec] = None,
    when: Optional[str] = None,
    fail_fast: bool = True,
    timeout: Optional[float] = None,
    produces: Optional[List[str]] = None,
    consumes: Optional[List[ConsumeLike]] = None,
    env: Optional[Dict[str, str]] = None,
    runs_on: Optional[str] = None,
    title: Optional[str] = None,
) -> StageSpec:
    if not steps:
        raise ValueError(f"stage({name!r}) must have at least one step")
    return StageSpec(
        name=name,
        steps=list(steps),
        needs=[needs] if isinstance(needs, str) else list(needs or []),
        matrix=matrix,
        condition=when,
        fail_fast=fail_fast,
        timeout=timeout,
        produces=list(produces or []),
        consumes=_refs(consumes or []),
        env={k: str(v) for k, v in (env or {}).items()},
        runs_on=runs_on,
        title=title,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class StageBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[StepSpec] = []
        self._matrix: Optional[MatrixSpec] = None
        self._condition: Optional[str] = None
        self._fail_fast: bool = True
        self._timeout: Optional[float] = None
        self._produces: list[str] = []
        self._consumes: list[ArtifactRef] = []
        self._env: dict[str, str] = {}
        self._runs_on: Optional[str] = None

    def depends_on(self, *stage_names: str):
        self._needs.extend(stage_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(sh(name, run, cwd=cwd))
        return self

    def add_step(self, s: StepSpec):
        self._steps.append(s)
        return self

    def over(self, m: MatrixSpec):
        self._matrix = m
        return self

    def only_if(self, condition: str):
        self._condition = condition
        return self

    def fail_fast(self, enabled: bool = True):
        self._fail_fast = enabled
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def produces(self, *names: str):
        self._produces.extend(names)
        return self

    def consumes(self, *refs: ConsumeLike):
        self._consumes.extend(_refs(refs))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def runs_on(self, label: str):
        self._runs_on = label
        return self

    def build(self) -> StageSpec:
        if not self._steps:
            raise ValueError(f"Stage '{self.name}' has no steps")
        return StageSpec(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            matrix=self._matrix,
            condition=self._condition,
            fail_fast=self._fail_fast,
            timeout=self._timeout,
            produces=list(self._produces),
            consumes=list(self._consumes),
            env=dict(self._env),
            runs_on=self._runs_on,
        )


def build(name: str) -> StageBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return StageBuilder(name)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    *stages: Union[StageSpec, StageBuilder],
    on: Optional[List[TriggerClause]] = None,
    env: Optional[Dict[str, str]] = None,
) -> Pipeline:
    """
    Users can write:
        from matrixci.dsl import pipeline, stage, sh, on_push

        PIPELINE = pipeline(
            "ci",
            stage("test", sh("unit", "pytest")),
            on=[on_push(branches=["main"])],
        )
    """
    return Pipeline(
        name=name,
        stages=[s.build() if isinstance(s, StageBuilder) else s for s in stages],
        triggers=list(on or []),
        env={k: str(v) for k, v in (env or {}).items()},
    )
