# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Optional

import click

from matrixci.artifacts import DEFAULT_ARTIFACT_DIR
from matrixci.config import EngineConfig
from matrixci.controller import RunController
from matrixci.errors import SpecificationError
from matrixci.executors import NoopExecutor, default_registry
from matrixci.git_facts.git import current_event
from matrixci.loader import load_pipeline
from matrixci.model import EVENTS, RunContext
from matrixci.ui.console import Console, get_console, set_console

DEFAULT_PIPELINE_FILES = ("matrixci.yml", "matrixci.yaml", "matrixci_pipeline.py")


def find_pipeline_files(root: Path = Path(".")) -> list[Path]:
    """
    Find all pipeline files in a directory.

    Returns:
        Sorted list of matrixci.yml / matrixci.yaml / *_pipeline.py paths
    """
    found = {root / name for name in DEFAULT_PIPELINE_FILES if (root / name).exists()}
    found.update(root.glob("*_pipeline.py"))
    return sorted(found)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Discover the pipeline file from argument or default.

    Raises:
        SystemExit: If no pipeline can be found or several exist
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Specify a different path:\n  matrixci run --pipeline matrixci.yml",
            )
            sys.exit(1)
        return path

    files = find_pipeline_files()
    if len(files) == 0:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_PIPELINE_FILES), "  *_pipeline.py"],
            suggestion="Create matrixci.yml or specify a pipeline explicitly:\n  matrixci run --pipeline ci.yml",
        )
        sys.exit(1)

    if len(files) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[f"  {f}" for f in files],
            suggestion=f"Specify a pipeline explicitly:\n  matrixci run --pipeline {files[0]}",
        )
        sys.exit(1)

    return files[0]


def build_context(
    event: Optional[str],
    ref: Optional[str],
    ref_kind: Optional[str],
    actor: Optional[str],
    base_ref: Optional[str],
    sha: Optional[str],
) -> RunContext:
    """RunContext from options; without --ref the local checkout is the event."""
    if ref is None:
        if event == "pull_request":
            raise click.UsageError("--event pull_request needs --ref (the PR head branch)")
        ctx = current_event()
        if actor or sha:
            ctx = RunContext(
                event=ctx.event, ref_name=ctx.ref_name, ref_kind=ctx.ref_kind,
                actor=actor or ctx.actor, base_ref=ctx.base_ref, sha=sha or ctx.sha,
            )
        return ctx

    if not ref.startswith("refs/"):
        if ref_kind == "tag" or event == "tag_push":
            ref = f"refs/tags/{ref}"
        else:
            ref = f"refs/heads/{ref}"
    return RunContext.from_ref(event or "push", ref, actor=actor, base_ref=base_ref, sha=sha)


def event_options(fn):
    """Options describing the triggering event (shared by run and plan)."""
    options = [
        click.option("--event", type=click.Choice(EVENTS), default=None, help="Triggering event (default: push)"),
        click.option("--ref", default=None, help="Ref, e.g. refs/tags/v1.2.3, main or v1.2.3 (default: local checkout)"),
        click.option("--ref-kind", type=click.Choice(["branch", "tag"]), default=None, help="Kind of a bare --ref"),
        click.option("--actor", default=None, help="User that triggered the event"),
        click.option("--base-ref", default=None, help="Target branch of a pull request"),
        click.option("--sha", default=None, help="Commit SHA"),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def _spec_error(e: SpecificationError) -> None:
    get_console().print_error(
        "Invalid pipeline",
        e.message,
        details=e.problems,
        suggestion="Fix the pipeline file and check it with:\n  matrixci validate",
    )


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print errors and the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """matrixci: run a multi-stage CI/CD pipeline for one event."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    try:
        config = EngineConfig.from_env().override(debug=debug or None)
    except ValueError as e:
        console.print_error(
            "Invalid engine setting",
            str(e),
            suggestion="Fix or unset the MATRIXCI_* environment variable",
        )
        sys.exit(1)
    # MATRIXCI_DEBUG=1 works like --debug
    console.debug = config.debug
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command()
@click.option("--pipeline", "pipeline_file", default=None, help="Pipeline file (defaults to matrixci.yml if present)")
@event_options
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--timeout", default=None, type=float, help="Default per-job timeout in seconds")
@click.option("--workspace", default=".", show_default=True, help="Directory steps run in")
@click.option("--artifact-dir", default=None, help=f"Artifact store directory (default: {DEFAULT_ARTIFACT_DIR})")
@click.option(
    "--keep-artifacts/--discard-artifacts",
    default=True,
    show_default=True,
    help="Leave produced artifacts in the store for a publisher",
)
@click.option("--stub-actions", is_flag=True, default=False, help="Treat steps with unknown executors as no-ops")
@click.option("--report", "report_path", default=None, help="Write the run report as JSON to this path")
@click.pass_context
def run(
    ctx, pipeline_file, event, ref, ref_kind, actor, base_ref, sha,
    workers, timeout, workspace, artifact_dir, keep_artifacts, stub_actions, report_path,
):
    """Run a pipeline for one triggering event."""
    console = get_console()
    path = discover_pipeline(pipeline_file)

    try:
        config = ctx.obj["config"].override(
            max_workers=workers,
            job_timeout=timeout,
            keep_artifacts=keep_artifacts,
        )
        config = config.override(artifact_dir=artifact_dir or config.artifact_dir or DEFAULT_ARTIFACT_DIR)

        pipeline = load_pipeline(path)
        context = build_context(event, ref, ref_kind, actor, base_ref, sha)
        console.print_debug(f"Event: {context}")

        executors = default_registry(workspace, fallback=NoopExecutor() if stub_actions else None)
        controller = RunController(pipeline, executors, config=config, console=console)
        result = controller.run(context)

        if result.triggered:
            console.print_results(result)
        if report_path:
            written = result.write_json(report_path)
            console.print_info(f"Report written to {written}")

        if result.triggered and not result.succeeded:
            sys.exit(1)

    except SpecificationError as e:
        _spec_error(e)
        sys.exit(1)
    except (subprocess.CalledProcessError, FileNotFoundError, ValueError) as e:
        console.print_error(
            "Could not start the run",
            str(e),
            suggestion="Pass the event explicitly, e.g.:\n  matrixci run --ref refs/tags/v1.2.3",
        )
        sys.exit(1)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--pipeline", "pipeline_file", default=None, help="Pipeline file (defaults to matrixci.yml if present)")
@click.option("--stub-actions", is_flag=True, default=False, help="Treat steps with unknown executors as no-ops")
def validate(pipeline_file, stub_actions):
    """Check a pipeline without running it."""
    console = get_console()
    path = discover_pipeline(pipeline_file)
    try:
        pipeline = load_pipeline(path)
        executors = default_registry(fallback=NoopExecutor() if stub_actions else None)
        RunController(pipeline, executors, console=console).validate()
    except SpecificationError as e:
        _spec_error(e)
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    click.echo(f"OK: pipeline '{pipeline.name}' ({len(pipeline.stages)} stages)")


@cli.command()
@click.option("--pipeline", "pipeline_file", default=None, help="Pipeline file (defaults to matrixci.yml if present)")
@event_options
@click.option("--stub-actions", is_flag=True, default=False, help="Treat steps with unknown executors as no-ops")
def plan(pipeline_file, event, ref, ref_kind, actor, base_ref, sha, stub_actions):
    """Print the expanded jobs, wave by wave. With --ref, templates see that event."""
    console = get_console()
    path = discover_pipeline(pipeline_file)
    try:
        pipeline = load_pipeline(path)
        context = build_context(event, ref, ref_kind, actor, base_ref, sha) if ref else None
        executors = default_registry(fallback=NoopExecutor() if stub_actions else None)
        controller = RunController(pipeline, executors, console=console)
        jobs = controller.plan(context)
    except SpecificationError as e:
        _spec_error(e)
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_header(f"Plan: {pipeline.name}")
    console.print_plan(controller.levels(), jobs)


if __name__ == "__main__":
    cli()
