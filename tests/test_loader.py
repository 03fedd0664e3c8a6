"""Pipeline documents and Python workflow files."""

import json
from pathlib import Path

import pytest

from matrixci.artifacts import MemoryArtifactStore
from matrixci.controller import RunController
from matrixci.errors import SpecificationError
from matrixci.executors import DownloadArtifactExecutor, ExecutorRegistry, NoopExecutor, default_registry
from matrixci.loader import load_pipeline, loads, parse_pipeline
from matrixci.model import ArtifactRef, JobStatus, SkipReason
from matrixci.report import RUN_SUCCEEDED

DATA = Path(__file__).parent / "data"
ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture
def release_workflow():
    return load_pipeline(DATA / "release_workflow.yml")


# ---------------------------------------------------------------------
# The release workflow document
# ---------------------------------------------------------------------

def test_release_workflow_shape(release_workflow):
    p = release_workflow
    assert p.name == "CI/CD"
    assert [s.name for s in p.stages] == ["test", "build", "release"]
    assert p.env == {"CARGO_TERM_COLOR": "always"}

    push, pr = p.triggers
    assert (push.event, push.branches, push.tags) == ("push", ["main"], ["v*.*.*"])
    assert (pr.event, pr.branches) == ("pull_request", ["main"])

    test = p.stage("test")
    assert test.title == "Test *nix"
    assert test.fail_fast is True
    assert [e["os"] for e in test.matrix.include] == ["ubuntu-latest", "macos-latest"]
    assert test.steps[0].uses == "actions/checkout@v3"
    assert test.steps[5].uses == "shell"
    assert "chmod +x /usr/local/bin/rust-analyzer" in test.steps[5].params["command"]


def test_release_workflow_artifacts_are_inferred(release_workflow):
    build = release_workflow.stage("build")
    assert build.condition == "startsWith(github.ref, 'refs/tags/v')"
    assert build.produces == ["${{ github.ref_name }}-${{ matrix.os }}-binary"]

    release = release_workflow.stage("release")
    assert release.consumes == [
        ArtifactRef("build", "${{ github.ref_name }}-ubuntu-latest-binary"),
        ArtifactRef("build", "${{ github.ref_name }}-macos-latest-binary"),
        ArtifactRef("build", "${{ github.ref_name }}-windows-latest-binary"),
    ]


def _workflow_registry(workspace):
    def shell(step, ctx):
        return 0

    def upload(step, ctx):
        ctx.publish(step.params["name"], str(step.params["path"]).encode())

    return ExecutorRegistry(
        {"shell": shell, "upload-artifact": upload, "download-artifact": DownloadArtifactExecutor(workspace)},
        fallback=NoopExecutor(),
    )


def test_release_workflow_on_a_version_tag(release_workflow, tag_context, quiet_console, tmp_path):
    controller = RunController(
        release_workflow, _workflow_registry(tmp_path), store=MemoryArtifactStore(), console=quiet_console
    )
    result = controller.run(tag_context)

    assert result.status == RUN_SUCCEEDED
    assert len(result.jobs) == 6
    assert all(j.status is JobStatus.SUCCEEDED for j in result.jobs)
    assert [e.name for e in result.manifest] == [
        "v1.2.3-ubuntu-latest-binary",
        "v1.2.3-macos-latest-binary",
        "v1.2.3-windows-latest-binary",
    ]
    assert (tmp_path / "linux" / "v1.2.3-ubuntu-latest-binary").read_bytes() == b"target/release/code_depth"
    assert (tmp_path / "windows" / "v1.2.3-windows-latest-binary").read_bytes() == b"target/release/code_depth.exe"

    release = result.job("release")
    assert [s.name for s in release.steps][:3] == [
        "Download Linux artifact", "Download Mac artifact", "Download Windows artifact",
    ]


def test_release_workflow_on_a_pull_request(release_workflow, pr_context, quiet_console, tmp_path):
    result = RunController(release_workflow, _workflow_registry(tmp_path), console=quiet_console).run(pr_context)

    assert result.status == RUN_SUCCEEDED
    assert [j.status for j in result.jobs_for("test")] == [JobStatus.SUCCEEDED] * 2
    for name in ("build", "release"):
        assert result.stage(name).skip_reason is SkipReason.GATE_CLOSED
    assert result.manifest == []


def test_release_workflow_needs_every_executor(release_workflow):
    with pytest.raises(SpecificationError) as exc:
        RunController(release_workflow, default_registry()).validate()
    assert any("actions/checkout@v3" in p for p in exc.value.problems)


# ---------------------------------------------------------------------
# Document details
# ---------------------------------------------------------------------

def test_yaml_on_key_is_not_a_boolean():
    p = loads("on: push\njobs:\n  a:\n    steps:\n      - run: echo hi\n")
    assert [t.event for t in p.triggers] == ["push"]


def test_trigger_list_and_stage_aliases():
    p = parse_pipeline({
        "triggers": ["push", "pull_request"],
        "stages": {"a": {"steps": [{"uses": "noop", "params": {"message": "x"}}]}},
    })
    assert [t.event for t in p.triggers] == ["push", "pull_request"]
    assert p.stages[0].steps[0].params == {"message": "x"}


def test_stage_options():
    p = loads(
        """
        jobs:
          build:
            steps: [{run: make}]
          test:
            needs: build
            if: false
            timeout-minutes: 2
            fail-fast: false
            env: {DEBUG: true, LEVEL: 3}
            steps:
              - run: make test
                working-directory: sub
                env: {X: 1}
        """
    )
    test = p.stage("test")
    assert test.needs == ["build"]
    assert test.condition == "false"
    assert test.timeout == 120.0
    assert test.fail_fast is False
    assert test.env == {"DEBUG": "true", "LEVEL": "3"}
    assert test.steps[0].params == {"command": "make test", "cwd": "sub"}
    assert test.steps[0].env == {"X": "1"}


def test_explicit_produces_and_consumes():
    p = parse_pipeline({
        "jobs": {
            "build": {"matrix": {"os": ["a", "b"]}, "produces": "binary", "steps": [{"run": "make"}]},
            "ship": {
                "needs": ["build"],
                "consumes": ["build/binary", {"stage": "build", "name": "binary", "matrix": {"os": "a"}}],
                "steps": [{"run": "ship"}],
            },
        }
    })
    assert p.stage("build").produces == ["binary"]
    assert p.stage("build").matrix.axes == {"os": ["a", "b"]}
    assert p.stage("ship").consumes == [
        ArtifactRef("build", "binary"),
        ArtifactRef("build", "binary", {"os": "a"}),
    ]


def test_download_without_stage_needs_a_single_prerequisite():
    doc = {
        "jobs": {
            "a": {"steps": [{"run": "x"}]},
            "b": {"steps": [{"run": "x"}]},
            "c": {
                "needs": ["a", "b"],
                "steps": [{"uses": "actions/download-artifact@v3", "with": {"name": "out"}}],
            },
        }
    }
    with pytest.raises(SpecificationError, match="without a 'stage'"):
        parse_pipeline(doc)


@pytest.mark.parametrize(
    "doc, fragment",
    [
        ({"jobs": {"a": {}}}, "steps"),
        ({"jobs": {"a": {"steps": [{"uses": "x", "run": "y"}]}}}, "exactly one of 'uses' or 'run'"),
        ({"jobs": {"a": {"stepz": [], "steps": [{"run": "y"}]}}}, "stepz"),
        ({"jobs": {"a": {"matrix": {"os": ["x"]}, "strategy": {"matrix": {"os": ["y"]}}, "steps": [{"run": "y"}]}}},
         "either at the top level"),
    ],
)
def test_invalid_documents(doc, fragment):
    with pytest.raises(SpecificationError) as exc:
        parse_pipeline(doc, source="ci.yml")
    assert exc.value.message == "ci.yml: invalid pipeline document"
    assert any(fragment in p for p in exc.value.problems)


def test_matrix_axis_must_be_a_list():
    with pytest.raises(SpecificationError, match="must be a list"):
        parse_pipeline({"jobs": {"a": {"matrix": {"os": "linux"}, "steps": [{"run": "x"}]}}})


LIST_IN_INCLUDE = """
on: push
jobs:
  build:
    strategy:
      matrix:
        os: [linux]
        include:
          - os: linux
            flags: [a, b]
    steps:
      - run: echo ${{ matrix.os }}
"""


def test_list_valued_include_stops_the_run_before_any_job(main_push, quiet_console):
    controller = RunController(loads(LIST_IN_INCLUDE), default_registry(), store=MemoryArtifactStore(),
                               console=quiet_console)
    with pytest.raises(SpecificationError) as exc:
        controller.run(main_push)
    assert "include flags: ['a', 'b']" in exc.value.problems


def test_not_a_mapping_or_not_yaml():
    with pytest.raises(SpecificationError, match="must be a mapping"):
        loads("- just\n- a list\n")
    with pytest.raises(SpecificationError, match="not valid YAML"):
        loads("jobs: [unclosed\n")


def test_json_document(tmp_path):
    path = tmp_path / "ci.json"
    path.write_text(json.dumps({
        "name": "json",
        "on": {"push": {"branches": "main"}},
        "stages": {"a": {"steps": [{"uses": "noop"}]}},
    }))
    p = load_pipeline(path)
    assert p.name == "json"
    assert p.triggers[0].branches == ["main"]


# ---------------------------------------------------------------------
# Python workflow files
# ---------------------------------------------------------------------

def test_python_workflow_with_constant(tmp_path):
    path = tmp_path / "ci_pipeline.py"
    path.write_text(
        "from matrixci.dsl import pipeline, stage, step\n"
        "PIPELINE = pipeline('py', stage('a', step('noop')))\n"
    )
    assert load_pipeline(path).name == "py"


def test_python_workflow_with_factory(tmp_path):
    path = tmp_path / "ci_pipeline.py"
    path.write_text(
        "from matrixci import dsl\n"
        "def build_pipeline():\n"
        "    return dsl.pipeline('factory', dsl.stage('a', dsl.step('noop')))\n"
    )
    assert load_pipeline(path).name == "factory"


def test_python_workflow_without_a_pipeline(tmp_path):
    path = tmp_path / "ci_pipeline.py"
    path.write_text("from matrixci.dsl import pipeline\n")
    with pytest.raises(TypeError, match="PIPELINE"):
        load_pipeline(path)


def test_project_pipeline_is_valid():
    p = load_pipeline(ROOT / "matrixci_pipeline.py")
    RunController(p, default_registry()).validate()
    assert [s.name for s in p.stages] == ["test", "build", "release"]


def test_missing_file_and_bad_suffix(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_pipeline(tmp_path / "nope.yml")
    path = tmp_path / "ci.toml"
    path.write_text("")
    with pytest.raises(ValueError, match="got: ci.toml"):
        load_pipeline(path)
