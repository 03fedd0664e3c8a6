"""Matrix expansion: product, exclude, include merge, templating."""

import pytest

from matrixci.dsl import matrix, stage, step
from matrixci.errors import SpecificationError
from matrixci.matrix import combinations, expand, render
from matrixci.model import ArtifactRef


def _stage(m=None, **kw):
    return stage("s", step("fake", "run ${{ matrix.os }}" if m and "os" in m.keys() else "run"), matrix=m, **kw)


def test_no_matrix_gives_one_job():
    jobs = expand(_stage())
    assert len(jobs) == 1
    assert jobs[0].assignment == ()
    assert jobs[0].id == "s"
    assert jobs[0].qualifier == ""


def test_cartesian_product_in_declaration_order():
    jobs = expand(stage("t", step("fake"), matrix=matrix(os=["a", "b"], py=["1", "2"])))
    assert [j.id for j in jobs] == [
        "t (os=a, py=1)",
        "t (os=a, py=2)",
        "t (os=b, py=1)",
        "t (os=b, py=2)",
    ]
    assert [j.index for j in jobs] == [0, 1, 2, 3]
    assert jobs[1].qualifier == "os=a,py=2"


def test_job_count_is_product_of_axis_sizes():
    m = matrix(x=[1, 2, 3], y=["p", "q", "r", "s"])
    assert len(combinations(stage("t", step("fake"), matrix=m))) == 12


def test_exclude_removes_matching_combinations():
    m = matrix(os=["a", "b"], py=["1", "2"], exclude=[{"os": "b", "py": "1"}])
    combos = combinations(stage("t", step("fake"), matrix=m))
    assert {"os": "b", "py": "1"} not in combos
    assert len(combos) == 3


def test_include_merges_into_matching_combinations():
    m = matrix(os=["a", "b"], include=[{"os": "a", "extra": "x"}])
    combos = combinations(stage("t", step("fake"), matrix=m))
    assert combos == [{"os": "a", "extra": "x"}, {"os": "b"}]


def test_include_without_a_match_is_appended():
    m = matrix(os=["a", "b"], include=[{"os": "c", "extra": "x"}])
    combos = combinations(stage("t", step("fake"), matrix=m))
    assert combos[-1] == {"os": "c", "extra": "x"}
    assert len(combos) == 3


def test_include_only_matrix():
    m = matrix(include=[
        {"os": "ubuntu-latest", "artifact": "target/release/app"},
        {"os": "windows-latest", "artifact": "target/release/app.exe"},
    ])
    jobs = expand(stage("build", step("fake"), matrix=m))
    assert [j.matrix for j in jobs] == [
        {"os": "ubuntu-latest", "artifact": "target/release/app"},
        {"os": "windows-latest", "artifact": "target/release/app.exe"},
    ]


def test_empty_axis_is_a_specification_error():
    with pytest.raises(SpecificationError, match="axis 'os' has no values"):
        combinations(stage("t", step("fake"), matrix=matrix(os=[])))


def test_excluding_everything_is_a_specification_error():
    m = matrix(os=["a"], exclude=[{"os": "a"}])
    with pytest.raises(SpecificationError, match="zero jobs"):
        combinations(stage("t", step("fake"), matrix=m))


def test_exclude_on_unknown_axis_is_a_specification_error():
    m = matrix(os=["a"], exclude=[{"arch": "x"}])
    with pytest.raises(SpecificationError, match="unknown axes"):
        combinations(stage("t", step("fake"), matrix=m))


def test_duplicate_combinations_are_rejected():
    m = matrix(include=[{"os": "a"}, {"os": "a"}])
    with pytest.raises(SpecificationError, match="duplicate"):
        combinations(stage("t", step("fake"), matrix=m))


def test_values_with_the_same_text_are_duplicates():
    m = matrix(include=[{"v": 1}, {"v": "1"}])
    with pytest.raises(SpecificationError, match="duplicate") as exc:
        combinations(stage("t", step("fake"), matrix=m))
    assert "compared as text" in exc.value.problems[0]


def test_separators_inside_values_keep_jobs_apart():
    m = matrix(include=[{"a": "1,b=2"}, {"a": "1", "b": "2"}])
    jobs = expand(stage("t", step("fake"), matrix=m))
    assert jobs[0].qualifier == "a=1\\,b\\=2"
    assert jobs[1].qualifier == "a=1,b=2"
    assert jobs[0].producer_id != jobs[1].producer_id
    assert jobs[0].id != jobs[1].id


@pytest.mark.parametrize(
    "m, detail",
    [
        (matrix(os=["a", ["b", "c"]]), "axis os: ['b', 'c']"),
        (matrix(os=["a"], include=[{"os": "a", "flags": ["x", "y"]}]), "include flags: ['x', 'y']"),
        (matrix(os=["a", "b"], exclude=[{"os": {"name": "b"}}]), "exclude os: {'name': 'b'}"),
    ],
)
def test_non_scalar_values_are_rejected(m, detail):
    with pytest.raises(SpecificationError, match="strings, numbers or booleans") as exc:
        combinations(stage("t", step("fake"), matrix=m))
    assert exc.value.problems == [detail]


def test_templates_in_steps_produces_env_and_runs_on(tag_context):
    s = stage(
        "build",
        step("fake", "Build on ${{ matrix.os }}", target="${{ github.ref_name }}-${{ matrix.os }}-binary"),
        matrix=matrix(os=["linux", "mac"]),
        produces=["${{ github.ref_name }}-${{ matrix.os }}-binary"],
        env={"TARGET_OS": "${{matrix.os}}"},
        runs_on="${{ matrix.os }}",
    )
    jobs = expand(s, tag_context)
    mac = jobs[1]
    assert mac.steps[0].name == "Build on mac"
    assert mac.steps[0].params == {"target": "v1.2.3-mac-binary"}
    assert mac.produces == ("v1.2.3-mac-binary",)
    assert mac.env == {"TARGET_OS": "mac"}
    assert mac.runs_on == "mac"


def test_templates_in_consumes(tag_context):
    s = stage(
        "release",
        step("fake"),
        consumes=[ArtifactRef("build", "${{ github.ref_name }}-binary", {"os": "${{ matrix.os }}"})],
        matrix=matrix(os=["linux"]),
    )
    (job,) = expand(s, tag_context)
    assert job.consumes == (ArtifactRef("build", "v1.2.3-binary", {"os": "linux"}),)


def test_context_templates_are_kept_without_a_context():
    (job,) = expand(stage("t", step("fake", "tag ${{ github.ref_name }}")))
    assert job.steps[0].name == "tag ${{ github.ref_name }}"


def test_unknown_matrix_key_in_template():
    s = stage("t", step("fake", "${{ matrix.arch }}"), matrix=matrix(os=["a"]))
    with pytest.raises(SpecificationError, match="matrix.arch"):
        expand(s)


def test_render_nested_values():
    out = render({"a": ["${{ matrix.x }}", 1], "b": ("${{ matrix.x }}",)}, {"matrix.x": "v"})
    assert out == {"a": ["v", 1], "b": ("v",)}


def test_missing_context_value_renders_empty():
    assert render("by ${{ actor }}", {"actor": None}) == "by "
