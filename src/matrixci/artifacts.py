# artifacts.py
from __future__ import annotations

import hashlib
import json
import re
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .errors import ArtifactNotFound, MissingArtifactError
from .model import ArtifactRef, JobResult, JobStatus, ProducerId

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# An artifact is an opaque blob addressed by (producer, name) where
#   producer = (stage name, matrix qualifier)
# so `binary` from build[os=linux] and build[os=mac] never collide.
#
# Stores are write-once per (producer, name). The scheduler is the only
# writer and only writes after the producing job succeeded, which is what
# makes an artifact "visible".
# ---------------------------------------------------------------------

DEFAULT_ARTIFACT_DIR = ".matrixci/artifacts"

# key into a job's resolved inputs
InputKey = Tuple[str, str, str]  # (stage, qualifier, name)


@dataclass(frozen=True)
class ArtifactEntry:
    """Manifest line for one stored artifact."""
    stage: str
    qualifier: str
    name: str
    size: int
    sha256: str

    @property
    def producer(self) -> ProducerId:
        return ProducerId(self.stage, self.qualifier)

    def to_dict(self) -> Dict:
        return asdict(self)


def sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


class ArtifactStore(Protocol):
    def put(self, producer: ProducerId, name: str, blob: bytes) -> ArtifactEntry: ...

    def get(self, producer: ProducerId, name: str) -> bytes: ...

    def discard(self, producer: ProducerId) -> None: ...

    def entries(self) -> List[ArtifactEntry]: ...


class MemoryArtifactStore:
    """Process-local store. Good for tests and single-shot runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._blobs: Dict[Tuple[ProducerId, str], bytes] = {}

    def put(self, producer: ProducerId, name: str, blob: bytes) -> ArtifactEntry:
        producer = ProducerId(*producer)
        with self._lock:
            if (producer, name) in self._blobs:
                raise ValueError(f"artifact {name!r} from {producer} already exists")
            self._blobs[(producer, name)] = bytes(blob)
        return ArtifactEntry(producer.stage, producer.qualifier, name, len(blob), sha256_bytes(blob))

    def get(self, producer: ProducerId, name: str) -> bytes:
        producer = ProducerId(*producer)
        with self._lock:
            try:
                return self._blobs[(producer, name)]
            except KeyError:
                raise ArtifactNotFound(str(producer), name) from None

    def discard(self, producer: ProducerId) -> None:
        producer = ProducerId(*producer)
        with self._lock:
            for key in [k for k in self._blobs if k[0] == producer]:
                del self._blobs[key]

    def entries(self) -> List[ArtifactEntry]:
        with self._lock:
            items = sorted(self._blobs.items(), key=lambda kv: (kv[0][0], kv[0][1]))
        return [
            ArtifactEntry(p.stage, p.qualifier, name, len(blob), sha256_bytes(blob))
            for (p, name), blob in items
        ]


def _safe(part: str) -> str:
    return re.sub(r"[^A-Za-z0-9._=-]+", "_", part) or "_"


def _slot(part: str) -> str:
    """Readable path part plus a short hash of the raw text, which keeps `a b` and `a_b` apart."""
    return f"{_safe(part)}-{sha256_bytes(part.encode('utf-8'))[:10]}"


class FileArtifactStore:
    """
    File-based store:
      root/
        <stage>-<hash>/
          <qualifier>-<hash>/
            <name>-<hash>.bin
            <name>-<hash>.manifest.json
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _producer_dir(self, producer: ProducerId) -> Path:
        return self.root / _slot(producer.stage) / _slot(producer.qualifier)

    def blob_path(self, producer: ProducerId, name: str) -> Path:
        return self._producer_dir(producer) / f"{_slot(name)}.bin"

    def manifest_path(self, producer: ProducerId, name: str) -> Path:
        return self._producer_dir(producer) / f"{_slot(name)}.manifest.json"

    def put(self, producer: ProducerId, name: str, blob: bytes) -> ArtifactEntry:
        producer = ProducerId(*producer)
        art = self.blob_path(producer, name)
        man = self.manifest_path(producer, name)
        if art.exists():
            raise ValueError(f"artifact {name!r} from {producer} already exists")
        art.parent.mkdir(parents=True, exist_ok=True)

        entry = ArtifactEntry(producer.stage, producer.qualifier, name, len(blob), sha256_bytes(blob))
        manifest = dict(entry.to_dict(), created_at_unix=int(time.time()))

        tmp = art.with_suffix(".bin.tmp")
        try:
            # write in tmp, then atomic rename
            tmp.write_bytes(blob)
            tmp.replace(art)
            man.write_text(json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8")
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        return entry

    def get(self, producer: ProducerId, name: str) -> bytes:
        producer = ProducerId(*producer)
        art = self.blob_path(producer, name)
        if not art.exists():
            raise ArtifactNotFound(str(producer), name)
        return art.read_bytes()

    def discard(self, producer: ProducerId) -> None:
        d = self._producer_dir(ProducerId(*producer))
        if not d.exists():
            return
        for p in d.iterdir():
            p.unlink(missing_ok=True)
        d.rmdir()

    def entries(self) -> List[ArtifactEntry]:
        out: List[ArtifactEntry] = []
        for man in sorted(self.root.glob("*/*/*.manifest.json")):
            data = json.loads(man.read_text(encoding="utf-8"))
            out.append(
                ArtifactEntry(
                    stage=data["stage"],
                    qualifier=data["qualifier"],
                    name=data["name"],
                    size=int(data["size"]),
                    sha256=data["sha256"],
                )
            )
        out.sort(key=lambda e: (e.stage, e.qualifier, e.name))
        return out


# ---------------------------------------------------------------------
# Consumer side
# ---------------------------------------------------------------------

def resolve_inputs(
    refs: Sequence[ArtifactRef],
    producers: Mapping[str, Sequence[JobResult]],
    store: ArtifactStore,
) -> Dict[InputKey, bytes]:
    """
    Collect every blob a job consumes.

    A reference without a matrix filter selects all jobs of the producer
    stage (fan-in); with a filter only the matching ones. Every selected
    producer must have succeeded. A filtered reference needs the name from
    each selected job; an unfiltered one from at least one, since matrix jobs
    may publish under per-matrix names.
    """
    inputs: Dict[InputKey, bytes] = {}
    for ref in refs:
        selected = [r for r in producers.get(ref.stage, []) if r.job.matches(ref.matrix)]
        if not selected:
            raise MissingArtifactError(ref.stage, ref.name, ref.matrix, "no producer job matches")
        found = 0
        for result in selected:
            if result.status is not JobStatus.SUCCEEDED:
                raise MissingArtifactError(
                    ref.stage, ref.name, ref.matrix,
                    f"producer {result.job.id} is {result.status.value}",
                )
            try:
                blob = store.get(result.job.producer_id, ref.name)
            except ArtifactNotFound:
                if ref.matrix:
                    raise MissingArtifactError(
                        ref.stage, ref.name, ref.matrix,
                        f"producer {result.job.id} did not publish it",
                    ) from None
                continue
            inputs[(ref.stage, result.job.qualifier, ref.name)] = blob
            found += 1
        if not found:
            raise MissingArtifactError(ref.stage, ref.name, ref.matrix, "no producer job published it")
    return inputs


def select(
    inputs: Mapping[InputKey, bytes],
    stage: str,
    name: str,
    matrix: Optional[Mapping[str, object]] = None,
) -> Dict[str, bytes]:
    """Inputs for (stage, name), keyed by qualifier, narrowed by a matrix filter."""
    out: Dict[str, bytes] = {}
    for (s, qualifier, n), blob in inputs.items():
        if s != stage or n != name:
            continue
        if matrix:
            pairs = dict(p.split("=", 1) for p in qualifier.split(",") if "=" in p)
            if not all(pairs.get(k) == str(v) for k, v in matrix.items()):
                continue
        out[qualifier] = blob
    return out
