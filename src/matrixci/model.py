# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Tuple

# (axis, value) pairs in declaration order
Assignment = Tuple[Tuple[str, Any], ...]

EVENTS = ("push", "pull_request", "tag_push")
REF_KINDS = ("branch", "tag")


@dataclass(frozen=True)
class RunContext:
    """
    Immutable facts about the event that triggered a run.

    `event` is one of push / pull_request / tag_push. For pull requests
    `base_ref` is the branch the PR targets.
    """
    event: str
    ref_name: str
    ref_kind: str = "branch"
    actor: Optional[str] = None
    base_ref: Optional[str] = None
    sha: Optional[str] = None

    def __post_init__(self) -> None:
        if self.event not in EVENTS:
            raise ValueError(f"Unknown event {self.event!r}. Expected one of {list(EVENTS)}")
        if self.ref_kind not in REF_KINDS:
            raise ValueError(f"Unknown ref kind {self.ref_kind!r}. Expected one of {list(REF_KINDS)}")
        if self.event == "tag_push" and self.ref_kind != "tag":
            raise ValueError("tag_push events must carry a tag ref")

    @property
    def ref(self) -> str:
        prefix = "refs/tags/" if self.ref_kind == "tag" else "refs/heads/"
        return prefix + self.ref_name

    @classmethod
    def from_ref(
        cls,
        event: str,
        ref: str,
        *,
        actor: str | None = None,
        base_ref: str | None = None,
        sha: str | None = None,
    ) -> "RunContext":
        """Build a context from a full ref such as refs/tags/v1.2.3."""
        if ref.startswith("refs/tags/"):
            kind, name = "tag", ref[len("refs/tags/"):]
        elif ref.startswith("refs/heads/"):
            kind, name = "branch", ref[len("refs/heads/"):]
        else:
            kind, name = "branch", ref
        if event == "push" and kind == "tag":
            event = "tag_push"
        return cls(event=event, ref_name=name, ref_kind=kind, actor=actor, base_ref=base_ref, sha=sha)

    def variables(self) -> Dict[str, Optional[str]]:
        """Names visible to conditions and `${{ }}` templates."""
        event_name = "push" if self.event == "tag_push" else self.event
        return {
            "event": self.event,
            "ref": self.ref,
            "ref_name": self.ref_name,
            "ref_kind": self.ref_kind,
            "actor": self.actor,
            "base_ref": self.base_ref,
            "sha": self.sha,
            "github.event_name": event_name,
            "github.ref": self.ref,
            "github.ref_name": self.ref_name,
            "github.ref_type": self.ref_kind,
            "github.actor": self.actor,
            "github.base_ref": self.base_ref,
            "github.sha": self.sha,
        }


@dataclass(frozen=True)
class StepSpec:
    """One opaque step: an executor identifier plus its parameters."""
    uses: str
    name: str = ""
    params: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.uses


@dataclass(frozen=True)
class MatrixSpec:
    axes: Dict[str, List[Any]] = field(default_factory=dict)
    include: List[Dict[str, Any]] = field(default_factory=list)
    exclude: List[Dict[str, Any]] = field(default_factory=list)

    def keys(self) -> List[str]:
        seen: Dict[str, None] = dict.fromkeys(self.axes)
        for entry in self.include:
            seen.update(dict.fromkeys(entry))
        return list(seen)


@dataclass(frozen=True)
class ArtifactRef:
    """A consumed artifact: producer stage, artifact name, optional matrix filter."""
    stage: str
    name: str
    matrix: Optional[Dict[str, Any]] = None

    @classmethod
    def parse(cls, text: str) -> "ArtifactRef":
        stage, sep, name = text.partition("/")
        if not sep or not stage or not name:
            raise ValueError(f"Artifact reference must look like 'stage/name', got {text!r}")
        return cls(stage=stage.strip(), name=name.strip())

    def __str__(self) -> str:
        if not self.matrix:
            return f"{self.stage}/{self.name}"
        return f"{self.stage}/{self.name} [{qualifier_for(tuple(self.matrix.items()))}]"


@dataclass(frozen=True)
class StageSpec:
    """
    A named pipeline stage, declared once and never mutated.

    Dependency field: `needs` (names of stages that must succeed first).
    """
    name: str
    steps: List[StepSpec]
    needs: List[str] = field(default_factory=list)
    matrix: Optional[MatrixSpec] = None
    condition: Optional[str] = None
    fail_fast: bool = True
    timeout: Optional[float] = None
    produces: List[str] = field(default_factory=list)
    consumes: List[ArtifactRef] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    runs_on: Optional[str] = None
    title: Optional[str] = None


@dataclass(frozen=True)
class TriggerClause:
    """`on:` entry. Pattern lists left as None impose no filter."""
    event: str
    branches: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    branches_ignore: Optional[List[str]] = None
    tags_ignore: Optional[List[str]] = None


@dataclass(frozen=True)
class Pipeline:
    name: str
    stages: List[StageSpec]
    triggers: List[TriggerClause] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    def stage(self, name: str) -> StageSpec:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(name)


def _escape(part: Any) -> str:
    return str(part).replace("\\", "\\\\").replace(",", "\\,").replace("=", "\\=")


def qualifier_for(assignment: Assignment) -> str:
    """`os=linux,py=3.12`; separators inside keys or values are backslash-escaped."""
    return ",".join(f"{_escape(k)}={_escape(v)}" for k, v in assignment)


class ProducerId(NamedTuple):
    """Artifact producer identity: stage plus matrix qualifier."""
    stage: str
    qualifier: str = ""

    def __str__(self) -> str:
        return self.stage if not self.qualifier else f"{self.stage}[{self.qualifier}]"


@dataclass(frozen=True)
class JobInstance:
    """A stage resolved against one matrix assignment. Identity = (stage, assignment)."""
    stage: str
    index: int
    assignment: Assignment = ()
    steps: Tuple[StepSpec, ...] = ()
    produces: Tuple[str, ...] = ()
    consumes: Tuple[ArtifactRef, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    runs_on: Optional[str] = None
    timeout: Optional[float] = None

    @property
    def key(self) -> Tuple[str, Assignment]:
        return (self.stage, self.assignment)

    @property
    def matrix(self) -> Dict[str, Any]:
        return dict(self.assignment)

    @property
    def qualifier(self) -> str:
        return qualifier_for(self.assignment)

    @property
    def producer_id(self) -> ProducerId:
        return ProducerId(self.stage, self.qualifier)

    @property
    def id(self) -> str:
        if not self.assignment:
            return self.stage
        return f"{self.stage} ({', '.join(f'{_escape(k)}={_escape(v)}' for k, v in self.assignment)})"

    def matches(self, matrix_filter: Optional[Mapping[str, Any]]) -> bool:
        if not matrix_filter:
            return True
        values = self.matrix
        return all(k in values and str(values[k]) == str(v) for k, v in matrix_filter.items())


class JobStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL


TERMINAL = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.SKIPPED})


class SkipReason(str, Enum):
    GATE_CLOSED = "gate_closed"
    DEPENDENCY_FAILED = "dependency_failed"


class FailureCause(str, Enum):
    STEP_FAILED = "step_failed"
    TIMEOUT = "timeout"
    MISSING_ARTIFACT = "missing_artifact"
    EXECUTOR_ERROR = "executor_error"


@dataclass(frozen=True)
class StepResult:
    name: str
    exit_status: Optional[int]
    logs: str = ""


@dataclass
class JobResult:
    """
    Outcome of one JobInstance.

    Only the scheduler mutates this; `history` records every status the job
    went through, in order.
    """
    job: JobInstance
    status: JobStatus = JobStatus.PENDING
    cause: Optional[FailureCause] = None
    skip_reason: Optional[SkipReason] = None
    message: str = ""
    artifacts: List[str] = field(default_factory=list)
    steps: List[StepResult] = field(default_factory=list)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    history: List[JobStatus] = field(default_factory=lambda: [JobStatus.PENDING])

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    @property
    def detail(self) -> str:
        """failed (+cause) / skipped (+reason) as shown in reports."""
        if self.status is JobStatus.FAILED and self.cause is not None:
            return f"failed ({self.cause.value})"
        if self.status is JobStatus.SKIPPED and self.skip_reason is not None:
            return f"skipped ({self.skip_reason.value})"
        return self.status.value
