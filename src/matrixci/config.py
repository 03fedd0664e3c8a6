# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

from .artifacts import ArtifactStore, FileArtifactStore, MemoryArtifactStore
from .scheduler import default_workers

_TRUE = {"1", "true", "yes", "on"}


def _env_int(env: Mapping[str, str], key: str) -> Optional[int]:
    raw = env.get(key, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from None


def _env_float(env: Mapping[str, str], key: str) -> Optional[float]:
    raw = env.get(key, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number of seconds, got {raw!r}") from None


@dataclass(frozen=True)
class EngineConfig:
    """
    Engine knobs. Everything is optional:

      max_workers     parallel jobs (default: os.cpu_count())
      job_timeout     default per-job timeout in seconds, stage `timeout` wins
      keep_artifacts  leave blobs in the store after the run
      artifact_dir    use a FileArtifactStore there instead of memory
      debug           verbose console output
    """
    max_workers: Optional[int] = None
    job_timeout: Optional[float] = None
    keep_artifacts: bool = False
    artifact_dir: Optional[str] = None
    debug: bool = False

    def __post_init__(self) -> None:
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if self.job_timeout is not None and self.job_timeout <= 0:
            raise ValueError("job_timeout must be > 0")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        env = os.environ if env is None else env
        return cls(
            max_workers=_env_int(env, "MATRIXCI_MAX_WORKERS"),
            job_timeout=_env_float(env, "MATRIXCI_JOB_TIMEOUT"),
            keep_artifacts=env.get("MATRIXCI_KEEP_ARTIFACTS", "").strip().lower() in _TRUE,
            artifact_dir=env.get("MATRIXCI_ARTIFACT_DIR") or None,
            debug=env.get("MATRIXCI_DEBUG", "").strip().lower() in _TRUE,
        )

    def override(self, **changes) -> "EngineConfig":
        """Apply CLI options; None means "not given"."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def resolved_workers(self) -> int:
        return self.max_workers or default_workers()

    def make_store(self) -> ArtifactStore:
        if self.artifact_dir:
            return FileArtifactStore(self.artifact_dir)
        return MemoryArtifactStore()
