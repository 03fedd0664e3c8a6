# loader.py
"""
Load a Pipeline from disk.

  *.yml / *.yaml / *.json   declarative document, validated with pydantic
  *.py                      workflow file built with matrixci.dsl; defines
                            PIPELINE = pipeline(...) or a zero-argument
                            function returning a Pipeline

The document format follows the usual CI layout (`on`, `env`, `jobs` or
`stages`, `strategy.matrix`, `needs`, `if`, `runs-on`, steps with
`uses`/`run`/`with`). Artifact-step conventions:

  - a stage without `produces` produces every `name` its upload-artifact
    steps publish
  - a stage without `consumes` consumes every `name` its download-artifact
    steps fetch, from the step's `stage` or else from its single `needs`
"""

from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import SpecificationError
from .model import ArtifactRef, MatrixSpec, Pipeline, StageSpec, StepSpec, TriggerClause

DOCUMENT_SUFFIXES = (".yml", ".yaml", ".json")

_UPLOAD = "upload-artifact"
_DOWNLOAD = "download-artifact"


def _executor_base(uses: str) -> str:
    return uses.split("@", 1)[0].rsplit("/", 1)[-1]


def _as_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, (str, int, float)):
        return [value]
    return value


def _stringify(env: Dict[str, Any]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k, v in env.items():
        if isinstance(v, bool):
            out[k] = "true" if v else "false"
        else:
            out[k] = str(v)
    return out


# -------------------- Schemas --------------------

class _Doc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StepDoc(_Doc):
    id: Optional[str] = None
    name: str = ""
    uses: Optional[str] = None
    run: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("with", "params"))
    env: Dict[str, Any] = Field(default_factory=dict)
    working_directory: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("working-directory", "working_directory", "cwd")
    )

    @model_validator(mode="after")
    def _one_of_uses_or_run(self) -> "StepDoc":
        if bool(self.uses) == bool(self.run):
            raise ValueError("a step needs exactly one of 'uses' or 'run'")
        return self

    def to_spec(self) -> StepSpec:
        params = dict(self.with_)
        uses = self.uses or "shell"
        if self.run is not None:
            params["command"] = self.run
        if self.working_directory:
            params["cwd"] = self.working_directory
        return StepSpec(uses=uses, name=self.name, params=params, env=_stringify(self.env))


class ConsumeDoc(_Doc):
    stage: str
    name: str
    matrix: Optional[Dict[str, Any]] = None

    def to_ref(self) -> ArtifactRef:
        return ArtifactRef(stage=self.stage, name=self.name, matrix=dict(self.matrix) if self.matrix else None)


class StrategyDoc(_Doc):
    fail_fast: Optional[bool] = Field(default=None, validation_alias=AliasChoices("fail-fast", "fail_fast"))
    matrix: Optional[Dict[str, Any]] = None


class StageDoc(_Doc):
    name: Optional[str] = None
    needs: List[str] = Field(default_factory=list)
    if_: Optional[str] = Field(default=None, validation_alias=AliasChoices("if", "condition"))
    strategy: Optional[StrategyDoc] = None
    matrix: Optional[Dict[str, Any]] = None
    fail_fast: Optional[bool] = Field(default=None, validation_alias=AliasChoices("fail-fast", "fail_fast"))
    timeout: Optional[float] = None
    timeout_minutes: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("timeout-minutes", "timeout_minutes")
    )
    runs_on: Optional[str] = Field(default=None, validation_alias=AliasChoices("runs-on", "runs_on"))
    produces: Optional[List[str]] = None
    consumes: Optional[List[ConsumeDoc]] = None
    env: Dict[str, Any] = Field(default_factory=dict)
    steps: List[StepDoc]

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_list(cls, v: Any) -> Any:
        return _as_list(v)

    @field_validator("produces", mode="before")
    @classmethod
    def _produces_list(cls, v: Any) -> Any:
        return None if v is None else _as_list(v)

    @field_validator("if_", mode="before")
    @classmethod
    def _if_text(cls, v: Any) -> Any:
        if isinstance(v, bool):
            return "true" if v else "false"
        return v

    @field_validator("consumes", mode="before")
    @classmethod
    def _consumes_refs(cls, v: Any) -> Any:
        if v is None:
            return None
        out = []
        for item in _as_list(v):
            if isinstance(item, str):
                ref = ArtifactRef.parse(item)
                out.append({"stage": ref.stage, "name": ref.name})
            else:
                out.append(item)
        return out

    @model_validator(mode="after")
    def _single_matrix(self) -> "StageDoc":
        if self.matrix is not None and self.strategy is not None and self.strategy.matrix is not None:
            raise ValueError("declare the matrix either at the top level or under 'strategy', not both")
        if self.timeout is not None and self.timeout_minutes is not None:
            raise ValueError("use either 'timeout' (seconds) or 'timeout-minutes'")
        return self

    def _matrix_spec(self) -> Optional[MatrixSpec]:
        raw = self.matrix if self.matrix is not None else (self.strategy.matrix if self.strategy else None)
        if raw is None:
            return None
        raw = dict(raw)
        include = _as_list(raw.pop("include", None))
        exclude = _as_list(raw.pop("exclude", None))
        axes: Dict[str, List[Any]] = {}
        for axis, values in raw.items():
            if not isinstance(values, list):
                raise SpecificationError(f"Matrix axis '{axis}' must be a list, got {values!r}")
            axes[str(axis)] = list(values)
        for entry in list(include) + list(exclude):
            if not isinstance(entry, dict):
                raise SpecificationError(f"Matrix include/exclude entries must be mappings, got {entry!r}")
        return MatrixSpec(axes=axes, include=[dict(e) for e in include], exclude=[dict(e) for e in exclude])

    def to_spec(self, key: str) -> StageSpec:
        steps = [s.to_spec() for s in self.steps]

        fail_fast = True
        if self.strategy is not None and self.strategy.fail_fast is not None:
            fail_fast = self.strategy.fail_fast
        if self.fail_fast is not None:
            fail_fast = self.fail_fast

        timeout = self.timeout
        if self.timeout_minutes is not None:
            timeout = self.timeout_minutes * 60.0

        if self.produces is not None:
            produces = list(self.produces)
        else:
            produces = [
                str(s.params["name"]) for s in steps
                if _executor_base(s.uses) == _UPLOAD and s.params.get("name")
            ]

        if self.consumes is not None:
            consumes = [c.to_ref() for c in self.consumes]
        else:
            consumes = self._inferred_consumes(key, steps)

        return StageSpec(
            name=key,
            steps=steps,
            needs=list(self.needs),
            matrix=self._matrix_spec(),
            condition=self.if_,
            fail_fast=fail_fast,
            timeout=timeout,
            produces=produces,
            consumes=consumes,
            env=_stringify(self.env),
            runs_on=self.runs_on,
            title=self.name,
        )

    def _inferred_consumes(self, key: str, steps: List[StepSpec]) -> List[ArtifactRef]:
        refs: List[ArtifactRef] = []
        for s in steps:
            if _executor_base(s.uses) != _DOWNLOAD or not s.params.get("name"):
                continue
            stage = s.params.get("stage")
            if not stage:
                if len(self.needs) != 1:
                    raise SpecificationError(
                        f"Stage '{key}' downloads {s.params['name']!r} without a 'stage' parameter",
                        [f"needs has {len(self.needs)} stages; name the producer with 'stage' or declare 'consumes'"],
                    )
                stage = self.needs[0]
            matrix = s.params.get("matrix")
            ref = ArtifactRef(stage=str(stage), name=str(s.params["name"]), matrix=dict(matrix) if matrix else None)
            if ref not in refs:
                refs.append(ref)
        return refs


class TriggerDoc(_Doc):
    branches: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    branches_ignore: Optional[List[str]] = Field(
        default=None, validation_alias=AliasChoices("branches-ignore", "branches_ignore")
    )
    tags_ignore: Optional[List[str]] = Field(
        default=None, validation_alias=AliasChoices("tags-ignore", "tags_ignore")
    )

    @field_validator("branches", "tags", "branches_ignore", "tags_ignore", mode="before")
    @classmethod
    def _pattern_list(cls, v: Any) -> Any:
        return None if v is None else [str(p) for p in _as_list(v)]


class PipelineDoc(_Doc):
    name: str = "pipeline"
    on: Union[str, List[str], Dict[str, Optional[TriggerDoc]]] = Field(
        default_factory=dict, validation_alias=AliasChoices("on", "triggers")
    )
    env: Dict[str, Any] = Field(default_factory=dict)
    stages: Dict[str, StageDoc] = Field(validation_alias=AliasChoices("stages", "jobs"))

    def triggers(self) -> List[TriggerClause]:
        on = self.on
        if isinstance(on, str):
            return [TriggerClause(event=on)]
        if isinstance(on, list):
            return [TriggerClause(event=str(e)) for e in on]
        out: List[TriggerClause] = []
        for event, doc in on.items():
            doc = doc or TriggerDoc()
            out.append(
                TriggerClause(
                    event=event,
                    branches=doc.branches,
                    tags=doc.tags,
                    branches_ignore=doc.branches_ignore,
                    tags_ignore=doc.tags_ignore,
                )
            )
        return out

    def to_pipeline(self) -> Pipeline:
        return Pipeline(
            name=self.name,
            stages=[doc.to_spec(key) for key, doc in self.stages.items()],
            triggers=self.triggers(),
            env=_stringify(self.env),
        )


# -------------------- Entry points --------------------

def _problems(e: ValidationError) -> List[str]:
    out = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        out.append(f"{loc}: {err.get('msg', '')}" if loc else str(err.get("msg", "")))
    return out


def parse_pipeline(data: Any, *, source: str = "<document>") -> Pipeline:
    """Validate an already-parsed document (dict) and build the Pipeline."""
    if not isinstance(data, dict):
        raise SpecificationError(f"{source}: pipeline document must be a mapping, got {type(data).__name__}")
    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data and "on" not in data:
        data["on"] = data.pop(True)
    try:
        doc = PipelineDoc.model_validate(data)
    except ValidationError as e:
        raise SpecificationError(f"{source}: invalid pipeline document", _problems(e)) from None
    return doc.to_pipeline()


def loads(text: str, *, source: str = "<string>") -> Pipeline:
    """Parse YAML (or JSON, which YAML reads too)."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise SpecificationError(f"{source}: not valid YAML", [str(e)]) from None
    return parse_pipeline(data, source=source)


def _load_python(path: Path) -> Pipeline:
    from . import dsl

    module_name = f"matrixci_pipeline_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    pipeline = globals_dict.get("PIPELINE")
    if pipeline is None:
        fn = globals_dict.get("pipeline")
        if callable(fn) and fn is not dsl.pipeline:
            pipeline = fn()
        elif callable(globals_dict.get("build_pipeline")):
            pipeline = globals_dict["build_pipeline"]()

    if not isinstance(pipeline, Pipeline):
        raise TypeError(
            f"{path.name} must define PIPELINE = pipeline(...) or a function "
            "pipeline() / build_pipeline() returning a Pipeline. "
            "If you import the `pipeline` helper, use PIPELINE or build_pipeline()."
        )
    return pipeline


def load_pipeline(path: Union[str, Path]) -> Pipeline:
    """
    Load a pipeline from a document or a Python workflow file.

    Raises:
      FileNotFoundError: path does not exist
      SpecificationError: the document is malformed
      ValueError: unsupported file type
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")
    if p.suffix == ".py":
        return _load_python(p)
    if p.suffix not in DOCUMENT_SUFFIXES:
        raise ValueError(f"Pipeline must be a .py, .yml, .yaml or .json file, got: {p.name}")
    return loads(p.read_text(encoding="utf-8"), source=p.name)
