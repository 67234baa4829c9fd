"""Blob storage: a blocking key/value store for image and thumbnail bytes.

Two backends:
  local  files under ``Settings.blob_root`` (default)
  s3     an S3 bucket via boto3 (``pip install 'facealbums[aws]'``)
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from facealbums.config import Settings
from facealbums.errors import ConfigError, StorageError

log = logging.getLogger(__name__)


class BlobStore:
    """Interface shared by the storage backends."""

    def get(self, key: str) -> bytes:
        raise NotImplementedError

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    """Keys map to paths below *root*; ``/`` in a key becomes a subdirectory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Key escapes storage root: {key!r}", {"key": key})
        return path

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageError(f"Cannot read blob {key!r}: {exc}", {"key": key}) from exc

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(path.suffix + ".part")
            tmp.write_bytes(data)
            tmp.replace(path)
        except OSError as exc:
            raise StorageError(f"Cannot write blob {key!r}: {exc}", {"key": key}) from exc

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()


class S3BlobStore(BlobStore):
    def __init__(self, bucket: str, region: str | None = None, client: Any = None) -> None:
        self.bucket = bucket
        if client is None:
            try:
                import boto3
            except ImportError:
                raise ImportError("boto3 required for S3 storage: pip install 'facealbums[aws]'")
            client = boto3.client("s3", region_name=region)
        self._client = client

    def get(self, key: str) -> bytes:
        try:
            obj = self._client.get_object(Bucket=self.bucket, Key=key)
            return obj["Body"].read()
        except Exception as exc:
            raise StorageError(f"S3 get failed for {key!r}: {exc}", {"key": key}) from exc

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        try:
            self._client.put_object(
                Bucket=self.bucket, Key=key, Body=data, ContentType=content_type
            )
        except Exception as exc:
            raise StorageError(f"S3 put failed for {key!r}: {exc}", {"key": key}) from exc

    def exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=key)
        except Exception:
            return False
        return True


def get_blob_store(settings: Settings) -> BlobStore:
    if settings.storage_backend != "s3":
        return LocalBlobStore(settings.blob_root)
    if not settings.s3_bucket:
        raise ConfigError("FACEALBUMS_S3_BUCKET is required for the s3 storage backend")
    return S3BlobStore(settings.s3_bucket, settings.aws_region)


def image_key(user_id: str, file_name: str) -> str:
    """Storage key for an uploaded image."""
    return f"{user_id}/images/{file_name}"


def thumbnail_key(user_id: str, thumbnail_name: str) -> str:
    return f"{user_id}/thumbnails/{thumbnail_name}.jpeg"
