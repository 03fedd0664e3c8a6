# controller.py
"""
Run controller: validate -> trigger -> expand -> schedule -> report.

Only SpecificationError escapes `run()`. Everything that goes wrong inside a
job ends up on its JobResult.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from .artifacts import ArtifactStore
from .conditions import KNOWN_VARIABLES, check
from .config import EngineConfig
from .dag import RunGraph, build_graph
from .errors import SpecificationError
from .executors import ExecutorRegistry, default_registry
from .matrix import allowed_template_names, combinations, common_keys, template_names
from .model import JobInstance, Pipeline, RunContext, StageSpec
from .report import RUN_NOT_TRIGGERED, RunResult
from .scheduler import Scheduler
from .triggers import TRIGGER_EVENTS, should_run
from .ui.console import Console, get_console


def _literal(value: str) -> bool:
    return not template_names(value)


class RunController:
    def __init__(
        self,
        pipeline: Pipeline,
        executors: Optional[ExecutorRegistry] = None,
        store: Optional[ArtifactStore] = None,
        config: Optional[EngineConfig] = None,
        console: Optional[Console] = None,
    ):
        self.pipeline = pipeline
        self.config = config or EngineConfig()
        self.executors = executors or default_registry()
        self.store = store if store is not None else self.config.make_store()
        self.console = console or get_console()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """Raise SpecificationError listing every problem found in the pipeline."""
        graph = build_graph(self.pipeline.stages)

        problems: List[str] = []
        for clause in self.pipeline.triggers:
            if clause.event not in TRIGGER_EVENTS:
                problems.append(f"Unknown trigger event {clause.event!r}. Expected one of {list(TRIGGER_EVENTS)}")
        problems.extend(self._template_problems("pipeline env", self.pipeline.env, set(KNOWN_VARIABLES)))

        for idx, stage in enumerate(graph.stages):
            problems.extend(self._stage_problems(stage))
            ancestors = {graph.stages[n].name for n in graph.ancestors(idx)}
            problems.extend(self._consume_problems(stage, ancestors))

        if problems:
            raise SpecificationError(f"Invalid pipeline '{self.pipeline.name}'", problems)

    def _template_problems(self, where: str, value, allowed, partial=frozenset()) -> List[str]:
        problems: List[str] = []
        for name in sorted(template_names(value) - allowed):
            if name in partial:
                problems.append(f"{where}: '{name}' is not set by every matrix combination")
            else:
                problems.append(f"{where}: unknown template variable '{name}'")
        return problems

    def _stage_problems(self, stage: StageSpec) -> List[str]:
        where = f"Stage '{stage.name}'"
        problems: List[str] = []

        if not stage.steps:
            problems.append(f"{where} has no steps")
        if stage.timeout is not None and stage.timeout <= 0:
            problems.append(f"{where} timeout must be > 0, got {stage.timeout}")

        partial = set()
        try:
            combos = combinations(stage)
        except SpecificationError as e:
            problems.append(e.message)
            problems.extend(e.problems)
        else:
            # keys only some include entries supply cannot be templated
            partial = {f"matrix.{k}" for combo in combos for k in combo} - {
                f"matrix.{k}" for k in common_keys(combos)
            }

        if stage.condition:
            try:
                # gates are evaluated once per stage, so matrix values are not visible
                check(stage.condition, where=f"condition of stage '{stage.name}'")
            except SpecificationError as e:
                problems.extend(f"{where}: {p}" for p in e.problems or [e.message])

        allowed = allowed_template_names(stage) - partial
        for i, step in enumerate(stage.steps):
            label = f"{where} step {i + 1} ({step.display_name})"
            if step.uses not in self.executors:
                problems.append(
                    f"{label} uses unknown executor {step.uses!r}. Known: {list(self.executors)}"
                )
            problems.extend(self._template_problems(label, [step.name, step.params, step.env], allowed, partial))
        problems.extend(self._template_problems(f"{where} produces", stage.produces, allowed, partial))
        problems.extend(self._template_problems(f"{where} env", stage.env, allowed, partial))
        if stage.runs_on:
            problems.extend(self._template_problems(f"{where} runs-on", stage.runs_on, allowed, partial))
        for ref in stage.consumes:
            problems.extend(self._template_problems(f"{where} consumes", [ref.name, ref.matrix or {}], allowed, partial))
        return problems

    def _consume_problems(self, stage: StageSpec, ancestors) -> List[str]:
        problems: List[str] = []
        for ref in stage.consumes:
            if ref.stage not in ancestors:
                problems.append(
                    f"Stage '{stage.name}' consumes {ref} but '{ref.stage}' is not one of its prerequisites"
                )
                continue
            producer = self.pipeline.stage(ref.stage)
            keys = set(producer.matrix.keys()) if producer.matrix else set()
            unknown = sorted(set(ref.matrix or {}) - keys)
            if unknown:
                problems.append(
                    f"Stage '{stage.name}' consumes {ref} with matrix keys {unknown} "
                    f"that stage '{ref.stage}' does not have"
                )
            if _literal(ref.name) and all(_literal(p) for p in producer.produces) and ref.name not in producer.produces:
                problems.append(
                    f"Stage '{stage.name}' consumes {ref} but '{ref.stage}' only produces {producer.produces}"
                )
        return problems

    # ------------------------------------------------------------------
    # Plan / run
    # ------------------------------------------------------------------

    def plan(self, context: Optional[RunContext] = None) -> Dict[str, List[JobInstance]]:
        """Expanded jobs per stage, in topological order."""
        self.validate()
        run_graph = RunGraph.build(self.pipeline, context)
        return {s.name: run_graph.jobs[s.name] for s in (run_graph.graph.stages[i] for i in run_graph.graph.order)}

    def levels(self) -> List[List[str]]:
        return build_graph(self.pipeline.stages).levels()

    def run(self, context: RunContext) -> RunResult:
        self.validate()

        if not should_run(self.pipeline.triggers, context):
            self.console.print_not_triggered(self.pipeline.name, f"{context.event} {context.ref}")
            return RunResult(pipeline=self.pipeline.name, status=RUN_NOT_TRIGGERED, context=context)

        run_graph = RunGraph.build(self.pipeline, context)
        jobs = run_graph.all_jobs()
        self.console.print_run_started(
            pipeline=self.pipeline.name,
            event=f"{context.event} {context.ref}",
            stage_count=len(run_graph.graph.stages),
            job_count=len(jobs),
        )

        # a kept store may still hold blobs from an earlier run of the same jobs
        for job in jobs:
            self.store.discard(job.producer_id)

        scheduler = Scheduler(
            self.executors,
            self.store,
            max_workers=self.config.resolved_workers(),
            job_timeout=self.config.job_timeout,
            console=self.console,
        )
        try:
            result = scheduler.run(run_graph, context)
        finally:
            if not self.config.keep_artifacts:
                for job in jobs:
                    self.store.discard(job.producer_id)

        result.pipeline = self.pipeline.name
        return result
