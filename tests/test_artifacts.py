"""Artifact stores and consumer-side resolution."""

import json

import pytest

from matrixci.artifacts import FileArtifactStore, MemoryArtifactStore, resolve_inputs, select, sha256_bytes
from matrixci.errors import ArtifactNotFound, MissingArtifactError
from matrixci.model import ArtifactRef, JobInstance, JobResult, JobStatus, ProducerId

LINUX = ProducerId("build", "os=linux")
MAC = ProducerId("build", "os=mac")


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryArtifactStore()
    return FileArtifactStore(tmp_path / "artifacts")


def test_put_and_get(store):
    entry = store.put(LINUX, "binary", b"ELF")
    assert entry.size == 3
    assert entry.sha256 == sha256_bytes(b"ELF")
    assert entry.producer == LINUX
    assert store.get(LINUX, "binary") == b"ELF"


def test_same_name_from_different_matrix_jobs_is_distinct(store):
    store.put(LINUX, "binary", b"linux")
    store.put(MAC, "binary", b"mac")
    assert store.get(LINUX, "binary") == b"linux"
    assert store.get(MAC, "binary") == b"mac"


def test_artifacts_are_write_once(store):
    store.put(LINUX, "binary", b"1")
    with pytest.raises(ValueError, match="already exists"):
        store.put(LINUX, "binary", b"2")
    assert store.get(LINUX, "binary") == b"1"


def test_get_missing_raises_not_found(store):
    with pytest.raises(ArtifactNotFound):
        store.get(LINUX, "binary")
    with pytest.raises(KeyError):
        store.get(MAC, "binary")


def test_entries_and_discard(store):
    store.put(LINUX, "binary", b"linux")
    store.put(MAC, "binary", b"mac")
    store.put(ProducerId("docs"), "site", b"<html>")
    assert [(e.stage, e.qualifier, e.name) for e in store.entries()] == [
        ("build", "os=linux", "binary"),
        ("build", "os=mac", "binary"),
        ("docs", "", "site"),
    ]
    store.discard(LINUX)
    store.discard(ProducerId("never-produced"))
    assert [e.qualifier for e in store.entries()] == ["os=mac", ""]


def test_file_store_writes_manifest(tmp_path):
    store = FileArtifactStore(tmp_path)
    store.put(LINUX, "binary", b"ELF")
    manifest = json.loads(store.manifest_path(LINUX, "binary").read_text())
    assert manifest["stage"] == "build"
    assert manifest["qualifier"] == "os=linux"
    assert manifest["sha256"] == sha256_bytes(b"ELF")
    assert store.blob_path(LINUX, "binary").read_bytes() == b"ELF"
    assert not list(tmp_path.rglob("*.tmp"))


def test_file_store_keeps_lookalike_producers_apart(tmp_path):
    store = FileArtifactStore(tmp_path)
    spaced = ProducerId("build", "os=mac os")
    underscored = ProducerId("build", "os=mac_os")
    store.put(spaced, "bin", b"spaced")
    store.put(underscored, "bin", b"underscored")
    store.put(ProducerId("a b"), "x y", b"1")
    store.put(ProducerId("a_b"), "x_y", b"2")
    assert store.blob_path(spaced, "bin") != store.blob_path(underscored, "bin")

    store.discard(spaced)
    assert store.get(underscored, "bin") == b"underscored"
    assert [(e.stage, e.qualifier, e.name) for e in store.entries()] == [
        ("a b", "", "x y"),
        ("a_b", "", "x_y"),
        ("build", "os=mac_os", "bin"),
    ]


# ---------------------------------------------------------------------
# resolve_inputs
# ---------------------------------------------------------------------

def _result(os_name, status=JobStatus.SUCCEEDED):
    job = JobInstance(stage="build", index=0, assignment=(("os", os_name),), produces=("binary",))
    return JobResult(job=job, status=status)


@pytest.fixture
def producers():
    return {"build": [_result("linux"), _result("mac")]}


@pytest.fixture
def filled():
    s = MemoryArtifactStore()
    s.put(LINUX, "binary", b"linux")
    s.put(MAC, "binary", b"mac")
    return s


def test_fan_in_without_filter(producers, filled):
    inputs = resolve_inputs([ArtifactRef("build", "binary")], producers, filled)
    assert inputs == {
        ("build", "os=linux", "binary"): b"linux",
        ("build", "os=mac", "binary"): b"mac",
    }


def test_matrix_filter_selects_one_producer(producers, filled):
    inputs = resolve_inputs([ArtifactRef("build", "binary", {"os": "mac"})], producers, filled)
    assert inputs == {("build", "os=mac", "binary"): b"mac"}


def test_producer_that_did_not_succeed(producers, filled):
    producers["build"][1].status = JobStatus.FAILED
    with pytest.raises(MissingArtifactError, match="is failed"):
        resolve_inputs([ArtifactRef("build", "binary")], producers, filled)


def test_skipped_producer(filled):
    producers = {"build": [_result("linux", JobStatus.SKIPPED)]}
    with pytest.raises(MissingArtifactError, match="skipped"):
        resolve_inputs([ArtifactRef("build", "binary", {"os": "linux"})], producers, filled)


def test_filter_matching_nothing(producers, filled):
    with pytest.raises(MissingArtifactError, match="no producer job matches"):
        resolve_inputs([ArtifactRef("build", "binary", {"os": "windows"})], producers, filled)


def test_name_nobody_published(producers, filled):
    with pytest.raises(MissingArtifactError, match="no producer job published it"):
        resolve_inputs([ArtifactRef("build", "docs")], producers, filled)


def test_filtered_producer_must_have_published(producers):
    s = MemoryArtifactStore()
    s.put(LINUX, "binary", b"linux")
    with pytest.raises(MissingArtifactError, match="did not publish"):
        resolve_inputs([ArtifactRef("build", "binary", {"os": "mac"})], producers, s)


def test_per_matrix_names_fan_in():
    producers = {"build": [_result("linux"), _result("mac")]}
    s = MemoryArtifactStore()
    s.put(LINUX, "v1-linux-binary", b"l")
    s.put(MAC, "v1-mac-binary", b"m")
    inputs = resolve_inputs([ArtifactRef("build", "v1-mac-binary")], producers, s)
    assert inputs == {("build", "os=mac", "v1-mac-binary"): b"m"}


def test_select_narrows_by_matrix():
    inputs = {
        ("build", "os=linux", "binary"): b"l",
        ("build", "os=mac", "binary"): b"m",
        ("docs", "", "binary"): b"d",
    }
    assert select(inputs, "build", "binary") == {"os=linux": b"l", "os=mac": b"m"}
    assert select(inputs, "build", "binary", {"os": "mac"}) == {"os=mac": b"m"}
    assert select(inputs, "build", "other") == {}
