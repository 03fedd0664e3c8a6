# scheduler.py
"""
DAG scheduler.

One coordinator thread owns every JobResult and is the only caller of
`_transition`. Workers from a bounded ThreadPoolExecutor run the steps of a
single job and hand back a `_Outcome`; they never touch shared state.

Per-job states:

    pending -> ready -> running -> succeeded | failed | cancelled
       |         |
       +---------+--> skipped (pending only) | cancelled | failed

Cancellation is cooperative and racy: a running sibling that finishes before
it sees its token keeps its real result.
"""

from __future__ import annotations

import os
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .artifacts import ArtifactEntry, ArtifactStore, InputKey, MemoryArtifactStore, resolve_inputs
from .conditions import evaluate
from .dag import RunGraph
from .errors import (
    ConditionEvaluationError,
    JobTimeoutError,
    MissingArtifactError,
    StepExecutionFailure,
)
from .executors import CancelToken, ExecutorRegistry, JobContext, default_registry
from .model import (
    FailureCause,
    JobInstance,
    JobResult,
    JobStatus,
    RunContext,
    SkipReason,
    StageSpec,
    StepResult,
)
from .report import RUN_FAILED, RUN_SUCCEEDED, RunResult, StageReport
from .ui.console import Console, get_console

JobKey = Tuple[str, tuple]

_ALLOWED = {
    JobStatus.PENDING: {JobStatus.READY, JobStatus.SKIPPED, JobStatus.CANCELLED, JobStatus.FAILED},
    JobStatus.READY: {JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED},
}


@dataclass
class _Outcome:
    status: JobStatus
    cause: Optional[FailureCause] = None
    message: str = ""
    steps: List[StepResult] = field(default_factory=list)
    artifacts: Dict[str, bytes] = field(default_factory=dict)


def default_workers() -> int:
    return max(1, os.cpu_count() or 1)


class Scheduler:
    """
    Runs a RunGraph to completion:

    - a stage opens when all its prerequisite stages are terminal
      (failed prereq -> dependency_failed, skipped prereq -> inherit reason,
      otherwise the stage condition decides, false -> gate_closed)
    - at most `max_workers` jobs run at once, in stage order then matrix order
    - a failing job cancels its matrix siblings when the stage is fail-fast
    - artifacts are committed to the store only for succeeded jobs
    """

    def __init__(
        self,
        executors: Optional[ExecutorRegistry] = None,
        store: Optional[ArtifactStore] = None,
        *,
        max_workers: Optional[int] = None,
        job_timeout: Optional[float] = None,
        console: Optional[Console] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.executors = executors or default_registry()
        self.store = store if store is not None else MemoryArtifactStore()
        self.max_workers = max_workers or default_workers()
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.job_timeout = job_timeout
        self.console = console or get_console()
        self.clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, run_graph: RunGraph, context: Optional[RunContext] = None) -> RunResult:
        context = context or run_graph.context
        if context is None:
            raise ValueError("Scheduler.run needs a RunContext")
        self._reset(run_graph, context)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while True:
                changed = self._resolve_stages()
                started = self._submit_ready(pool)
                if self._in_flight:
                    self._wait_for_progress()
                elif not changed and not started and not self._ready:
                    break

        leftover = [r.job.id for r in self._results.values() if not r.status.terminal]
        if leftover:
            raise RuntimeError(f"Scheduler finished with non-terminal jobs: {leftover}")
        return self._build_result()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _reset(self, run_graph: RunGraph, context: RunContext) -> None:
        self._graph = run_graph.graph
        self._context = context
        self._results: Dict[JobKey, JobResult] = {}
        self._by_stage: Dict[str, List[JobResult]] = {}
        self._order: Dict[JobKey, int] = {}
        for i in self._graph.order:
            stage = self._graph.stages[i]
            results = [JobResult(job=j) for j in run_graph.jobs[stage.name]]
            self._by_stage[stage.name] = results
            for r in results:
                self._order[r.job.key] = len(self._results)
                self._results[r.job.key] = r
        self._opened: Dict[int, bool] = {}
        self._ready: List[JobKey] = []
        self._in_flight: Dict[Future, JobKey] = {}
        self._tokens: Dict[JobKey, CancelToken] = {}
        self._deadlines: Dict[JobKey, Tuple[float, float]] = {}
        self._manifest: List[Tuple[int, ArtifactEntry]] = []

    def _stage_spec(self, name: str) -> StageSpec:
        return self._graph.stages[self._graph.index[name]]

    def _transition(
        self,
        result: JobResult,
        status: JobStatus,
        *,
        cause: Optional[FailureCause] = None,
        skip_reason: Optional[SkipReason] = None,
        message: str = "",
    ) -> None:
        """The only place a job's status changes."""
        if status not in _ALLOWED.get(result.status, ()):
            raise RuntimeError(
                f"Illegal transition for {result.job.id}: {result.status.value} -> {status.value}"
            )
        result.status = status
        result.history.append(status)
        if cause is not None:
            result.cause = cause
        if skip_reason is not None:
            result.skip_reason = skip_reason
        if message:
            result.message = message
        if status.terminal and result.started_at is not None and result.finished_at is None:
            result.finished_at = self.clock()

        name = result.job.id
        if status is JobStatus.RUNNING:
            self.console.print_job_start(name)
        elif status is JobStatus.SUCCEEDED:
            self.console.print_success(name)
        elif status is JobStatus.SKIPPED:
            self.console.print_job_skipped(name, skip_reason.value if skip_reason else "")
        elif status is JobStatus.CANCELLED:
            self.console.print_job_cancelled(name, message)
        elif status is JobStatus.FAILED:
            exit_code = result.steps[-1].exit_status if result.steps else None
            self.console.print_failure(name, message, exit_code=exit_code, is_job=True)
            self._fail_fast(result)

    def _fail_fast(self, failed: JobResult) -> None:
        stage = self._stage_spec(failed.job.stage)
        if not stage.fail_fast:
            return
        for sibling in self._by_stage[stage.name]:
            if sibling is failed:
                continue
            if sibling.status in (JobStatus.PENDING, JobStatus.READY):
                self._transition(sibling, JobStatus.CANCELLED, message=f"fail-fast after {failed.job.id} failed")
            elif sibling.status is JobStatus.RUNNING:
                token = self._tokens.get(sibling.job.key)
                if token is not None and not token.cancelled:
                    token.cancel()
                    self.console.print_cancel_requested(sibling.job.id)

    # ------------------------------------------------------------------
    # Stage resolution
    # ------------------------------------------------------------------

    def _stage_outcome(self, idx: int) -> Optional[Tuple[JobStatus, Optional[SkipReason]]]:
        """Aggregate status once every job of the stage is terminal, else None."""
        if not self._opened.get(idx):
            return None
        results = self._by_stage[self._graph.stages[idx].name]
        if any(not r.status.terminal for r in results):
            return None
        if all(r.status is JobStatus.SUCCEEDED for r in results):
            return JobStatus.SUCCEEDED, None
        if all(r.status is JobStatus.SKIPPED for r in results):
            return JobStatus.SKIPPED, results[0].skip_reason
        return JobStatus.FAILED, None

    def _gate(self, stage: StageSpec) -> Tuple[bool, str]:
        if not stage.condition:
            return True, ""
        try:
            if evaluate(stage.condition, self._context):
                return True, ""
            return False, f"condition {stage.condition!r} is false"
        except ConditionEvaluationError as e:
            # unresolvable gates stay closed
            self.console.print_debug(f"[{stage.name}] {e}")
            return False, str(e)

    def _resolve_stages(self) -> bool:
        changed = False
        for idx in self._graph.order:
            if self._opened.get(idx):
                continue
            stage = self._graph.stages[idx]
            prereqs = [(n, self._stage_outcome(n)) for n in self._graph.needs[idx]]
            if any(outcome is None for _, outcome in prereqs):
                continue

            failed = [self._graph.stages[n].name for n, o in prereqs if o[0] is JobStatus.FAILED]
            skipped = [(self._graph.stages[n].name, o[1]) for n, o in prereqs if o[0] is JobStatus.SKIPPED]

            self._opened[idx] = True
            changed = True
            results = self._by_stage[stage.name]

            if failed:
                for r in results:
                    self._transition(
                        r, JobStatus.SKIPPED,
                        skip_reason=SkipReason.DEPENDENCY_FAILED,
                        message=f"needs {failed[0]} which failed",
                    )
                continue
            if skipped:
                name, reason = skipped[0]
                for r in results:
                    self._transition(
                        r, JobStatus.SKIPPED,
                        skip_reason=reason or SkipReason.GATE_CLOSED,
                        message=f"needs {name} which was skipped",
                    )
                continue

            open_, why = self._gate(stage)
            if not open_:
                for r in results:
                    self._transition(r, JobStatus.SKIPPED, skip_reason=SkipReason.GATE_CLOSED, message=why)
                continue
            for r in results:
                self._transition(r, JobStatus.READY)
                self._ready.append(r.job.key)
        return changed

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _submit_ready(self, pool: ThreadPoolExecutor) -> int:
        touched = 0
        while self._ready and len(self._in_flight) < self.max_workers:
            key = self._ready.pop(0)
            result = self._results[key]
            if result.status is not JobStatus.READY:
                # cancelled by fail-fast while queued
                continue
            touched += 1
            try:
                inputs = resolve_inputs(result.job.consumes, self._by_stage, self.store)
            except MissingArtifactError as e:
                self._transition(result, JobStatus.FAILED, cause=FailureCause.MISSING_ARTIFACT, message=str(e))
                continue

            token = CancelToken()
            self._tokens[key] = token
            result.started_at = self.clock()
            self._transition(result, JobStatus.RUNNING)
            timeout = result.job.timeout or self.job_timeout
            if timeout:
                self._deadlines[key] = (result.started_at + timeout, timeout)
            fut = pool.submit(self._execute, result.job, token, inputs)
            self._in_flight[fut] = key
        return touched

    def _wait_for_progress(self) -> None:
        timeout = None
        if self._deadlines:
            timeout = max(0.0, min(d for d, _ in self._deadlines.values()) - self.clock())
        done, _ = wait(list(self._in_flight), timeout=timeout, return_when=FIRST_COMPLETED)
        for fut in sorted(done, key=lambda f: self._order[self._in_flight[f]]):
            self._collect(fut)
        self._expire_deadlines()

    def _expire_deadlines(self) -> None:
        now = self.clock()
        for key, (deadline, timeout) in sorted(self._deadlines.items(), key=lambda kv: self._order[kv[0]]):
            if now < deadline:
                continue
            del self._deadlines[key]
            result = self._results[key]
            if result.status is not JobStatus.RUNNING:
                continue
            self._tokens[key].cancel()
            self._transition(
                result, JobStatus.FAILED,
                cause=FailureCause.TIMEOUT,
                message=str(JobTimeoutError(result.job.id, timeout)),
            )

    def _collect(self, fut: Future) -> None:
        key = self._in_flight.pop(fut)
        self._deadlines.pop(key, None)
        result = self._results[key]
        try:
            outcome = fut.result()
        except Exception as e:
            outcome = _Outcome(JobStatus.FAILED, FailureCause.EXECUTOR_ERROR, f"{type(e).__name__}: {e}")

        if result.status is not JobStatus.RUNNING:
            # already timed out; the late outcome is discarded
            return
        result.steps = outcome.steps

        if outcome.status is JobStatus.SUCCEEDED:
            try:
                for name in sorted(outcome.artifacts):
                    entry = self.store.put(result.job.producer_id, name, outcome.artifacts[name])
                    self._manifest.append((self._order[key], entry))
                    result.artifacts.append(name)
                    self.console.print_artifact(result.job.id, name, entry.size)
            except (OSError, ValueError) as e:
                self._transition(
                    result, JobStatus.FAILED,
                    cause=FailureCause.EXECUTOR_ERROR,
                    message=f"artifact store: {e}",
                )
                return
            self._transition(result, JobStatus.SUCCEEDED)
        elif outcome.status is JobStatus.CANCELLED:
            self._transition(result, JobStatus.CANCELLED, message=outcome.message or "cancelled")
        else:
            self._transition(result, JobStatus.FAILED, cause=outcome.cause, message=outcome.message)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _execute(self, job: JobInstance, token: CancelToken, inputs: Dict[InputKey, bytes]) -> _Outcome:
        """Runs in a worker thread. Never raises."""
        ctx = JobContext(job=job, run=self._context, token=token, inputs=inputs)
        steps: List[StepResult] = []

        for step in job.steps:
            name = step.display_name
            if token.cancelled:
                return _Outcome(JobStatus.CANCELLED, message=f"cancelled before step '{name}'", steps=steps)
            self.console.print_step(job.id, name)
            try:
                outcome = self.executors.get(step.uses).execute(step, ctx)
            except MissingArtifactError as e:
                steps.append(StepResult(name, None, str(e)))
                return _Outcome(JobStatus.FAILED, FailureCause.MISSING_ARTIFACT, str(e), steps)
            except Exception as e:
                steps.append(StepResult(name, None, str(e)))
                return _Outcome(
                    JobStatus.FAILED, FailureCause.EXECUTOR_ERROR,
                    f"[{job.id}] step '{name}' raised {type(e).__name__}: {e}", steps,
                )

            steps.append(StepResult(name, outcome.exit_status, outcome.logs))
            if outcome.cancelled or (token.cancelled and not outcome.ok):
                return _Outcome(JobStatus.CANCELLED, message=f"cancelled during step '{name}'", steps=steps)
            if not outcome.ok:
                failure = StepExecutionFailure(job=job.id, step=name, exit_code=outcome.exit_status)
                return _Outcome(JobStatus.FAILED, FailureCause.STEP_FAILED, str(failure), steps)

        missing = [n for n in job.produces if n not in ctx.staged]
        if missing:
            err = MissingArtifactError(job.stage, missing[0], job.matrix or None, "declared in produces but never published")
            return _Outcome(JobStatus.FAILED, FailureCause.MISSING_ARTIFACT, str(err), steps)

        return _Outcome(JobStatus.SUCCEEDED, steps=steps, artifacts=dict(ctx.staged))

    # ------------------------------------------------------------------
    # Result
    # ------------------------------------------------------------------

    def _build_result(self) -> RunResult:
        stages: List[StageReport] = []
        for idx in self._graph.order:
            status, reason = self._stage_outcome(idx) or (JobStatus.FAILED, None)
            stages.append(StageReport(self._graph.stages[idx].name, status, reason))

        ok = all(s.status in (JobStatus.SUCCEEDED, JobStatus.SKIPPED) for s in stages)
        manifest = [entry for _, entry in sorted(self._manifest, key=lambda t: (t[0], t[1].name))]
        return RunResult(
            pipeline="",
            status=RUN_SUCCEEDED if ok else RUN_FAILED,
            context=self._context,
            stages=stages,
            jobs=list(self._results.values()),
            manifest=manifest,
        )
