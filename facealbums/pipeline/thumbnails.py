"""Thumbnail deriver: one small square JPEG per face.

Runs after every page of a job has been clustered.  Rendering happens on a
bounded thread pool (which also caps concurrent blob fetches); the thumbnail
rows are written from the calling thread.  A failure for one face is logged
and skipped.
"""
from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable

from facealbums import imaging
from facealbums.db.repository import Repository
from facealbums.storage import BlobStore, thumbnail_key

log = logging.getLogger(__name__)


@dataclass
class ThumbnailReport:
    created: int = 0
    failed: int = 0


class ThumbnailDeriver:
    def __init__(
        self,
        repo: Repository,
        blobs: BlobStore,
        size: int = 100,
        workers: int = 8,
    ) -> None:
        self.repo = repo
        self.blobs = blobs
        self.size = size
        self.workers = max(1, workers)

    def render(self, user_id: str, face: dict[str, Any]) -> str:
        """Fetch, crop, resize and store a thumbnail.  Returns its storage key."""
        data = self.blobs.get(face["storage_key"])
        jpeg = imaging.make_thumbnail(data, face.get("bounding_box"), self.size)
        key = thumbnail_key(user_id, str(uuid.uuid4()))
        self.blobs.put(key, jpeg, content_type="image/jpeg")
        return key

    def derive(
        self,
        user_id: str,
        namespace: str,
        cancel: threading.Event | None = None,
        on_done: Callable[[], None] | None = None,
    ) -> ThumbnailReport:
        faces = self.repo.faces_without_thumbnail(user_id, namespace)
        report = ThumbnailReport()
        if not faces:
            return report

        log.info("Deriving %d thumbnail(s) for namespace %s", len(faces), namespace)
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = {}
            for face in faces:
                if cancel is not None and cancel.is_set():
                    break
                futures[pool.submit(self.render, user_id, face)] = face
            for fut in as_completed(futures):
                face = futures[fut]
                try:
                    key = fut.result()
                    self.repo.upsert_thumbnail(face["face_id"], namespace, key)
                except Exception as exc:
                    report.failed += 1
                    log.warning("Thumbnail failed for face %s: %s", face["face_id"], exc)
                else:
                    report.created += 1
                if on_done is not None:
                    on_done()

        log.info("Thumbnails: %d created, %d failed", report.created, report.failed)
        return report
