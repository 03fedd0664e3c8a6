"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from matrixci.model import JobInstance
    from matrixci.report import RunResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only errors and the final results are printed
        """
        self.debug = debug
        self.quiet = quiet
        # jobs print from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str) -> None:
        if self.quiet:
            return
        with self._lock:
            for line in lines:
                print(line)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        event: str,
        stage_count: int,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Event: {event}",
            f"Stages: {stage_count}",
            f"Jobs: {job_count}",
            "",
        )

    def print_not_triggered(self, pipeline: str, event: str) -> None:
        """Print that no trigger clause matched."""
        self._out(f"\nNOT TRIGGERED: {pipeline}", f"No trigger matches {event}")

    def print_plan(self, levels: List[List[str]], jobs: Dict[str, List["JobInstance"]]) -> None:
        """Print the expanded plan, one wave of stages at a time."""
        for i, level in enumerate(levels):
            self._out(f"=== Wave {i + 1}: {level} ===")
            for stage in level:
                for job in jobs.get(stage, []):
                    self.print_plan_job(job.id, f"{len(job.steps)} step(s)")

    def print_plan_job(self, name: str, reason: str) -> None:
        """Print job selection plan."""
        self._out(f"  {name} ({reason})")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] STEP: {name}")

    def print_success(self, name: str) -> None:
        """Print success message."""
        self._out(f"[{name}] STATUS: success")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._out(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"[{name}] STATUS: skipped ({reason})")

    def print_job_cancelled(self, name: str, reason: str) -> None:
        """Print job cancelled message."""
        self._out(f"[{name}] STATUS: cancelled ({reason})")

    def print_cancel_requested(self, name: str) -> None:
        """Print that a running job was asked to stop."""
        self._out(f"[{name}] cancellation requested")

    def print_artifact(self, job: str, name: str, size: int) -> None:
        """Print artifact publication message."""
        self._out(f"[{job}] ARTIFACT: {name} ({size} bytes)")

    def print_results(self, result: "RunResult") -> None:
        """Print final results summary."""
        with self._lock:
            print("\n" + "=" * 40)
            print(f"RESULTS: {result.status.upper()}")
            print("=" * 40)
            for stage in result.stages:
                print(f"  {stage.name}: {stage.detail.upper()}")
                for job in result.jobs_for(stage.name):
                    if job.job.assignment:
                        print(f"    {job.job.id}: {job.detail.upper()}")
            if result.manifest:
                print("\nARTIFACTS")
                for a in result.manifest:
                    producer = a.stage if not a.qualifier else f"{a.stage}[{a.qualifier}]"
                    print(f"  {producer}/{a.name} {a.size} bytes sha256={a.sha256[:12]}...")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
