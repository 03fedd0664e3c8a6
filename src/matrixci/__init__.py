from .controller import RunController
from .dsl import build, download, on_pull_request, on_push, pipeline, sh, stage, step, upload
from .errors import (
    ConditionEvaluationError,
    MissingArtifactError,
    SpecificationError,
    StepExecutionFailure,
)
from .loader import load_pipeline, loads
from .model import Pipeline, RunContext, StageSpec, StepSpec
from .report import RunResult

__all__ = [
    "RunController",
    "build", "download", "on_pull_request", "on_push", "pipeline", "sh", "stage", "step", "upload",
    "ConditionEvaluationError", "MissingArtifactError", "SpecificationError", "StepExecutionFailure",
    "load_pipeline", "loads",
    "Pipeline", "RunContext", "StageSpec", "StepSpec",
    "RunResult",
]
