"""Runtime settings: read from ``FACEALBUMS_*`` environment variables.

The clustering namespace is deliberately absent: it is passed explicitly to
every job, oracle call and persisted row.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from facealbums.errors import ConfigError

_CACHE_DIR = Path.home() / ".cache" / "facealbums"

STORAGE_BACKENDS = ("local", "s3")
ORACLE_BACKENDS = ("local", "rekognition")


@dataclass
class Settings:
    """Tuning knobs and backend selection for one process."""

    db_path: Path = _CACHE_DIR / "facealbums.db"
    blob_root: Path = _CACHE_DIR / "blobs"
    face_print_dir: Path = _CACHE_DIR / "face_prints"
    storage_backend: str = "local"
    s3_bucket: str | None = None
    aws_region: str | None = None
    oracle_backend: str = "local"
    page_size: int = 50
    match_threshold: float = 90.0
    auth_match_threshold: float = 80.0
    label_min_confidence: float = 85.0
    gate_workers: int = 4
    cluster_workers: int = 1
    thumbnail_workers: int = 8
    thumbnail_size: int = 100
    lease_ttl_minutes: int = 60

    def __post_init__(self) -> None:
        if self.storage_backend not in STORAGE_BACKENDS:
            raise ConfigError(
                f"Unknown storage backend '{self.storage_backend}'. "
                f"Choose from: {', '.join(STORAGE_BACKENDS)}"
            )
        if self.oracle_backend not in ORACLE_BACKENDS:
            raise ConfigError(
                f"Unknown oracle backend '{self.oracle_backend}'. "
                f"Choose from: {', '.join(ORACLE_BACKENDS)}"
            )
        if self.storage_backend == "s3" and not self.s3_bucket:
            raise ConfigError("FACEALBUMS_S3_BUCKET is required for the s3 storage backend")
        if self.page_size < 1:
            raise ConfigError("page_size must be at least 1")
        if not 0.0 <= self.match_threshold <= 100.0:
            raise ConfigError("match_threshold is a percentage (0-100)")

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=_env_path("FACEALBUMS_DB_PATH", cls.db_path),
            blob_root=_env_path("FACEALBUMS_BLOB_ROOT", cls.blob_root),
            face_print_dir=_env_path("FACEALBUMS_FACE_PRINTS", cls.face_print_dir),
            storage_backend=os.getenv("FACEALBUMS_STORAGE", cls.storage_backend),
            s3_bucket=os.getenv("FACEALBUMS_S3_BUCKET") or None,
            aws_region=os.getenv("AWS_REGION") or None,
            oracle_backend=os.getenv("FACEALBUMS_ORACLE", cls.oracle_backend),
            page_size=_env_int("FACEALBUMS_PAGE_SIZE", cls.page_size),
            match_threshold=_env_float("FACEALBUMS_MATCH_THRESHOLD", cls.match_threshold),
            auth_match_threshold=_env_float("FACEALBUMS_AUTH_MATCH_THRESHOLD", cls.auth_match_threshold),
            label_min_confidence=_env_float("FACEALBUMS_LABEL_MIN_CONFIDENCE", cls.label_min_confidence),
            gate_workers=_env_int("FACEALBUMS_GATE_WORKERS", cls.gate_workers),
            cluster_workers=_env_int("FACEALBUMS_CLUSTER_WORKERS", cls.cluster_workers),
            thumbnail_workers=_env_int("FACEALBUMS_THUMBNAIL_WORKERS", cls.thumbnail_workers),
            thumbnail_size=_env_int("FACEALBUMS_THUMBNAIL_SIZE", cls.thumbnail_size),
            lease_ttl_minutes=_env_int("FACEALBUMS_LEASE_TTL_MINUTES", cls.lease_ttl_minutes),
        )


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name, "")
    if raw:
        return Path(raw).expanduser()
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
