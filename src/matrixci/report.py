# report.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .artifacts import ArtifactEntry
from .model import JobResult, JobStatus, RunContext, SkipReason

RUN_SUCCEEDED = "succeeded"
RUN_FAILED = "failed"
RUN_NOT_TRIGGERED = "not_triggered"


@dataclass(frozen=True)
class StageReport:
    name: str
    status: JobStatus
    skip_reason: Optional[SkipReason] = None

    @property
    def detail(self) -> str:
        if self.status is JobStatus.SKIPPED and self.skip_reason is not None:
            return f"skipped ({self.skip_reason.value})"
        return self.status.value


@dataclass
class RunResult:
    """
    The single externally observable outcome of a run: overall status,
    per-stage and per-job table, and the manifest of produced artifacts.
    """
    pipeline: str
    status: str
    context: Optional[RunContext] = None
    stages: List[StageReport] = field(default_factory=list)
    jobs: List[JobResult] = field(default_factory=list)
    manifest: List[ArtifactEntry] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == RUN_SUCCEEDED

    @property
    def triggered(self) -> bool:
        return self.status != RUN_NOT_TRIGGERED

    def stage(self, name: str) -> StageReport:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(name)

    def jobs_for(self, stage: str) -> List[JobResult]:
        return [j for j in self.jobs if j.job.stage == stage]

    def job(self, job_id: str) -> JobResult:
        for j in self.jobs:
            if j.job.id == job_id:
                return j
        raise KeyError(job_id)

    @property
    def executed(self) -> List[JobResult]:
        return [j for j in self.jobs if j.started_at is not None]

    def status_table(self) -> List[Tuple[str, str, str]]:
        """(stage, job id, status detail) rows; stable across identical runs."""
        return [(j.job.stage, j.job.id, j.detail) for j in self.jobs]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "status": self.status,
            "event": None if self.context is None else {
                "event": self.context.event,
                "ref": self.context.ref,
                "actor": self.context.actor,
            },
            "stages": [
                {
                    "name": s.name,
                    "status": s.status.value,
                    "skip_reason": s.skip_reason.value if s.skip_reason else None,
                }
                for s in self.stages
            ],
            "jobs": [
                {
                    "id": j.job.id,
                    "stage": j.job.stage,
                    "matrix": j.job.matrix,
                    "status": j.status.value,
                    "cause": j.cause.value if j.cause else None,
                    "skip_reason": j.skip_reason.value if j.skip_reason else None,
                    "message": j.message,
                    "artifacts": list(j.artifacts),
                    "steps": [{"name": s.name, "exit_status": s.exit_status} for s in j.steps],
                    "duration": j.duration,
                }
                for j in self.jobs
            ],
            "artifacts": [a.to_dict() for a in self.manifest],
        }

    def write_json(self, path: str | Path) -> Path:
        """Write the report atomically (tmp -> replace)."""
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_suffix(p.suffix + ".tmp")
        tmp.write_text(json.dumps(self.to_dict(), sort_keys=True, indent=2) + "\n", encoding="utf-8")
        os.replace(tmp, p)
        return p
