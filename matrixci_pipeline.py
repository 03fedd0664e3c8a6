# matrixci_pipeline.py
# Pipeline for matrixci itself: tests on every push/PR to main, a wheel per
# Python version on version tags, and a release bundle built from the wheels.
from __future__ import annotations

from matrixci.dsl import download, matrix, on_pull_request, on_push, pipeline, sh, stage, upload

PIPELINE = pipeline(
    "matrixci",
    stage(
        "test",
        sh("Install package", "pip install -e '.[test]'"),
        sh("Run pytest", "pytest -q"),
        matrix=matrix(python=["3.10", "3.12"]),
        env={"PYTHON": "${{ matrix.python }}"},
    ),
    stage(
        "build",
        sh("Build wheel", "mkdir -p dist/${{ matrix.python }} && pip wheel --no-deps -w dist/${{ matrix.python }} ."),
        sh("Name wheel", "cp dist/${{ matrix.python }}/matrixci-*.whl dist/wheel-${{ matrix.python }}.whl"),
        upload("wheel", "dist/wheel-${{ matrix.python }}.whl"),
        needs="test",
        when="startsWith(github.ref, 'refs/tags/v')",
        matrix=matrix(python=["3.10", "3.12"]),
        produces=["wheel"],
        timeout=900,
    ),
    stage(
        "release",
        download("wheel", "release/3.10", stage="build", matrix={"python": "3.10"}),
        download("wheel", "release/3.12", stage="build", matrix={"python": "3.12"}),
        sh("Bundle", "tar czf matrixci-${{ github.ref_name }}.tar.gz release"),
        needs="build",
        when="startsWith(github.ref, 'refs/tags/v')",
        consumes=["build/wheel"],
    ),
    on=[
        on_push(branches=["main"], tags=["v*.*.*"]),
        on_pull_request(branches=["main"]),
    ],
)
