# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class SpecificationError(Exception):
    """
    The pipeline declaration itself is wrong (cycle, dangling needs, empty
    matrix axis, bad condition, unknown executor, ...).

    Always raised before any job starts and aborts the whole run.
    """
    message: str
    problems: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        lines = [self.message]
        for p in self.problems:
            lines.append(f"  - {p}")
        return "\n".join(lines)


@dataclass
class ConditionEvaluationError(Exception):
    """A condition could not be parsed or one of its variables has no value."""
    expression: str
    message: str

    def __str__(self) -> str:
        return f"{self.message} (in {self.expression!r})"


@dataclass
class StepExecutionFailure(Exception):
    job: str
    step: str
    exit_code: Optional[int]

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code})"


@dataclass
class MissingArtifactError(Exception):
    stage: str
    name: str
    matrix: Optional[Dict[str, Any]] = None
    reason: str = ""

    def __str__(self) -> str:
        where = f"{self.stage}/{self.name}"
        if self.matrix:
            where += " [" + ",".join(f"{k}={v}" for k, v in self.matrix.items()) + "]"
        msg = f"missing artifact {where}"
        return f"{msg}: {self.reason}" if self.reason else msg


@dataclass
class AmbiguousArtifactError(ValueError):
    stage: str
    name: str
    qualifiers: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"artifact {self.stage}/{self.name} was produced by several matrix jobs "
            f"({', '.join(self.qualifiers)}); pass a matrix filter"
        )


@dataclass
class JobTimeoutError(Exception):
    job: str
    timeout: float

    def __str__(self) -> str:
        return f"[{self.job}] timed out after {self.timeout:g}s"


@dataclass
class ArtifactNotFound(KeyError):
    producer: str
    name: str

    def __str__(self) -> str:
        return f"no artifact {self.name!r} from {self.producer}"
