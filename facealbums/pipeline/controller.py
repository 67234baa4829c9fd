"""Batch pagination controller: drives one processing job for a folder.

    validate → take lease → loop:
        fetch page (keyset cursor) → gate each image → cluster survivors
        → materialize the page's albums
    until a page comes back empty → derive thumbnails → release lease

Pages run strictly one after another: clustering decisions on page N change
what page N+1's searches can match.  Within a page, gate calls run on a
thread pool; clustering is sequential unless ``cluster_workers`` > 1.  Every
database write happens on the calling thread.

The job is resumable, not atomic.  An interrupted run leaves processed images
in their new status, and the next run starts from the first image still in
``UPLOADED_TO_S3``.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any, Callable

from facealbums.config import Settings
from facealbums.db.lease import JobLease
from facealbums.db.repository import Repository
from facealbums.errors import InvalidParametersError
from facealbums.models import Cursor, ImageRecord, ImageStatus, PageFilter
from facealbums.oracle import get_oracle
from facealbums.oracle.base import FaceOracle
from facealbums.pipeline.albums import AlbumMaterializer
from facealbums.pipeline.clustering import ClusteringEngine, PageOutcome
from facealbums.pipeline.gate import QualityGate
from facealbums.pipeline.thumbnails import ThumbnailDeriver
from facealbums.storage import BlobStore, get_blob_store

log = logging.getLogger(__name__)

COMPLETED_MESSAGE = "Image processing job completed"

LeaseFactory = Callable[[str, str, str], AbstractContextManager]


@dataclass
class JobReport:
    job_id: str
    status: str = "running"
    pages: int = 0
    images_seen: int = 0
    gate_passed: int = 0
    gate_rejected: int = 0
    gate_failed: int = 0
    matched: int = 0
    indexed: int = 0
    cluster_failed: int = 0
    faces_created: int = 0
    albums_created: int = 0
    thumbnails_created: int = 0
    thumbnails_failed: int = 0

    @property
    def message(self) -> str:
        if self.status == "completed":
            return COMPLETED_MESSAGE
        return f"Image processing job {self.status}"


def _require(name: str, value: str | None) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidParametersError(f"{name} is required", {"field": name})
    return value.strip()


class BatchController:
    def __init__(
        self,
        repo: Repository,
        gate: QualityGate,
        engine: ClusteringEngine,
        materializer: AlbumMaterializer,
        thumbnails: ThumbnailDeriver,
        blobs: BlobStore,
        page_size: int = 50,
        gate_workers: int = 4,
        lease_factory: LeaseFactory | None = None,
    ) -> None:
        self.repo = repo
        self.gate = gate
        self.engine = engine
        self.materializer = materializer
        self.thumbnails = thumbnails
        self.blobs = blobs
        self.page_size = page_size
        self.gate_workers = max(1, gate_workers)
        self.lease_factory: LeaseFactory = lease_factory or (
            lambda user_id, folder_id, namespace: JobLease(
                repo.conn, user_id, folder_id, namespace
            )
        )

    # ── Entry point ────────────────────────────────────────────────────────

    def run(
        self,
        user_id: str,
        folder_id: str,
        namespace: str,
        resume_detected: bool = False,
        cancel: threading.Event | None = None,
        on_image: Callable[[ImageRecord], None] | None = None,
    ) -> JobReport:
        """Process every eligible image in the folder.  Blocks until done.

        Raises :class:`InvalidParametersError` before touching the store when
        an identifier is blank, and :class:`JobAlreadyRunningError` when
        another job holds the folder's lease.
        """
        user_id = _require("userId", user_id)
        folder_id = _require("folderId", folder_id)
        namespace = _require("namespace", namespace)
        cancel = cancel or threading.Event()

        with self.lease_factory(user_id, folder_id, namespace):
            report = JobReport(job_id=self.repo.start_run(user_id, folder_id, namespace))
            log.info(
                "Job %s started: user=%s folder=%s namespace=%s",
                report.job_id, user_id, folder_id, namespace,
            )
            try:
                self._run_pages(report, user_id, folder_id, namespace, resume_detected, cancel, on_image)
                if not cancel.is_set():
                    thumbs = self.thumbnails.derive(user_id, namespace, cancel=cancel)
                    report.thumbnails_created = thumbs.created
                    report.thumbnails_failed = thumbs.failed
            except Exception as exc:
                report.status = "failed"
                self._save_report(report, error=str(exc))
                log.error("Job %s failed: %s", report.job_id, exc)
                raise

            report.status = "cancelled" if cancel.is_set() else "completed"
            self._save_report(report)
            log.info(
                "Job %s %s: %d page(s), %d image(s), %d face(s), %d album row(s)",
                report.job_id, report.status, report.pages, report.images_seen,
                report.faces_created, report.albums_created,
            )
            return report

    def _save_report(self, report: JobReport, error: str | None = None) -> None:
        self.repo.update_run(
            report.job_id,
            pages=report.pages,
            images_seen=report.images_seen,
            faces_created=report.faces_created,
            albums_created=report.albums_created,
            thumbnails_created=report.thumbnails_created,
        )
        self.repo.finish_run(report.job_id, report.status, error)

    # ── Page loop ──────────────────────────────────────────────────────────

    def _run_pages(
        self,
        report: JobReport,
        user_id: str,
        folder_id: str,
        namespace: str,
        resume_detected: bool,
        cancel: threading.Event,
        on_image: Callable[[ImageRecord], None] | None,
    ) -> None:
        statuses: tuple[ImageStatus, ...] = (ImageStatus.UPLOADED_TO_S3,)
        if resume_detected:
            statuses += (ImageStatus.FACES_DETECTED,)
        page_filter = PageFilter(user_id=user_id, folder_id=folder_id, statuses=statuses)
        cursor: Cursor | None = Cursor(page_size=self.page_size)

        while cursor is not None and not cancel.is_set():
            page, cursor = self.repo.fetch_page(page_filter, cursor)
            if not page:
                break
            report.pages += 1
            report.images_seen += len(page)
            outcome = self.process_page(page, namespace, report, cancel, on_image)
            album_ids = self.materializer.materialize(user_id, namespace, outcome.face_map)
            report.albums_created += len(album_ids)
            log.info(
                "Page %d: %d image(s), %d matched, %d indexed, %d failed",
                report.pages, len(page), outcome.matched, outcome.indexed, outcome.failed,
            )

    def process_page(
        self,
        page: list[ImageRecord],
        namespace: str,
        report: JobReport,
        cancel: threading.Event,
        on_image: Callable[[ImageRecord], None] | None = None,
    ) -> PageOutcome:
        """Gate then cluster one page.  Returns the page's clustering outcome."""
        order = {image.image_id: i for i, image in enumerate(page)}
        cache: dict[str, bytes] = {}
        survivors = [image for image in page if image.status == ImageStatus.FACES_DETECTED]
        to_gate = [image for image in page if image.status == ImageStatus.UPLOADED_TO_S3]

        def _assess(image: ImageRecord) -> tuple[Any, dict[str, Any], bytes]:
            data = self.blobs.get(image.storage_key)
            verdict, response = self.gate.assess(data)
            return verdict, response, data

        with ThreadPoolExecutor(max_workers=self.gate_workers) as pool:
            futures = {}
            for image in to_gate:
                if cancel.is_set():
                    break
                futures[pool.submit(_assess, image)] = image
            for fut in as_completed(futures):
                image = futures[fut]
                try:
                    verdict, response, data = fut.result()
                    self.gate.record(image, verdict, response)
                except Exception as exc:
                    # Left in UPLOADED_TO_S3 so a later run retries it.
                    report.gate_failed += 1
                    log.warning("Quality gate failed for image %s: %s", image.image_id, exc)
                    self.repo.record_error(image.image_id, f"gate: {exc}")
                    if on_image is not None:
                        on_image(image)
                    continue
                if verdict.passed:
                    report.gate_passed += 1
                    cache[image.image_id] = data
                    survivors.append(image)
                else:
                    report.gate_rejected += 1
                    if on_image is not None:
                        on_image(image)

        # Cluster in page order so greedy precedence does not depend on
        # which gate call finished first.
        survivors.sort(key=lambda image: order[image.image_id])

        def _load(image: ImageRecord) -> bytes:
            data = cache.pop(image.image_id, None)
            return data if data is not None else self.blobs.get(image.storage_key)

        outcome = self.engine.cluster_page(survivors, _load, namespace, cancel=cancel, on_done=on_image)
        report.matched += outcome.matched
        report.indexed += outcome.indexed
        report.cluster_failed += outcome.failed
        report.faces_created += outcome.faces_created
        return outcome


# ── Wiring ─────────────────────────────────────────────────────────────────────

def build_controller(
    settings: Settings,
    conn: sqlite3.Connection,
    oracle: FaceOracle | None = None,
    blobs: BlobStore | None = None,
) -> BatchController:
    repo = Repository(conn)
    oracle = oracle or get_oracle(settings)
    blobs = blobs or get_blob_store(settings)
    return BatchController(
        repo=repo,
        gate=QualityGate(oracle, repo, min_confidence=settings.label_min_confidence),
        engine=ClusteringEngine(
            oracle, repo,
            match_threshold=settings.match_threshold,
            workers=settings.cluster_workers,
        ),
        materializer=AlbumMaterializer(repo),
        thumbnails=ThumbnailDeriver(
            repo, blobs,
            size=settings.thumbnail_size,
            workers=settings.thumbnail_workers,
        ),
        blobs=blobs,
        page_size=settings.page_size,
        gate_workers=settings.gate_workers,
        lease_factory=lambda user_id, folder_id, namespace: JobLease(
            conn, user_id, folder_id, namespace, ttl_minutes=settings.lease_ttl_minutes
        ),
    )


def process_folder(
    settings: Settings,
    conn: sqlite3.Connection,
    user_id: str,
    folder_id: str,
    namespace: str,
    resume_detected: bool = False,
) -> dict[str, Any]:
    """Run a job and return the trigger surface's response body."""
    report = build_controller(settings, conn).run(
        user_id, folder_id, namespace, resume_detected=resume_detected
    )
    return {"message": report.message}
