"""Incremental clustering: single-pass greedy search-then-insert.

For each gated image: search the namespace for a similar face.  A hit assigns
the image to the best match's identity and nothing is indexed.  A miss indexes
the image; each returned face seeds a new identity.  The page-local
``face_id → [image_id]`` map is the only input to the album materializer.

Oracle calls (``decide``) may run on worker threads.  Persistence
(``record``) stays on the calling thread.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable

from facealbums.db.repository import Repository
from facealbums.errors import FaceAlbumsError, OracleError
from facealbums.models import ApiType, ImageRecord, IndexResult, SearchResult
from facealbums.oracle.base import FaceOracle

log = logging.getLogger(__name__)

MATCHED = "matched"
INDEXED = "indexed"

# Stored as the unindexed reason when the search step finds no face at all.
NO_FACE_DETECTED = "NO_FACE_DETECTED"


@dataclass
class ClusterDecision:
    kind: str
    face_id: str | None
    search: SearchResult
    index: IndexResult | None = None

    @property
    def matched_face_ids(self) -> list[str]:
        return [m.face_id for m in self.search.matches]

    @property
    def face_ids(self) -> list[str]:
        """Identities this image joins: the best match, or every indexed face."""
        if self.kind == MATCHED:
            return [self.face_id] if self.face_id is not None else []
        return [f.face_id for f in self.index.faces] if self.index is not None else []


class FaceMap:
    """Thread-safe ``face_id → [image_id]`` accumulator, insertion ordered."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, list[str]] = {}

    def add(self, face_id: str, image_id: str) -> None:
        with self._lock:
            images = self._data.setdefault(face_id, [])
            if image_id not in images:
                images.append(image_id)

    def snapshot(self) -> dict[str, list[str]]:
        with self._lock:
            return {k: list(v) for k, v in self._data.items()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


@dataclass
class PageOutcome:
    face_map: dict[str, list[str]] = field(default_factory=dict)
    matched: int = 0
    indexed: int = 0
    faces_created: int = 0
    failed: int = 0


class ClusteringEngine:
    def __init__(
        self,
        oracle: FaceOracle,
        repo: Repository,
        match_threshold: float = 90.0,
        workers: int = 1,
    ) -> None:
        self.oracle = oracle
        self.repo = repo
        self.match_threshold = match_threshold
        self.workers = max(1, workers)

    def decide(self, image: ImageRecord, image_bytes: bytes, namespace: str) -> ClusterDecision:
        try:
            search = self.oracle.search_similar(image_bytes, namespace, self.match_threshold)
        except OracleError as exc:
            # Rekognition rejects a search on an image without any face.
            if exc.error_name != "InvalidParameterException":
                raise
            log.info("Image %s has no searchable face: %s", image.image_id, exc.message)
            search = SearchResult([], {"FaceMatches": [], "Error": exc.error_name})
            return ClusterDecision(
                INDEXED, None, search, IndexResult([], [NO_FACE_DETECTED], {"FaceRecords": []})
            )

        if search.matches:
            # max() keeps the first of equal maxima: ties go to oracle order.
            best = max(search.matches, key=lambda m: m.similarity)
            return ClusterDecision(MATCHED, best.face_id, search)

        index = self.oracle.index(image_bytes, namespace, external_image_id=image.image_id)
        face_id = index.faces[0].face_id if index.faces else None
        return ClusterDecision(INDEXED, face_id, search, index)

    def record(
        self,
        image: ImageRecord,
        decision: ClusterDecision,
        namespace: str,
        face_map: FaceMap | None = None,
    ) -> None:
        if decision.kind != MATCHED and decision.index is None:
            raise FaceAlbumsError(
                f"Indexed decision for image {image.image_id} carries no index result",
                {"image_id": image.image_id},
            )
        self.repo.record_api_response(
            image.user_id, image.image_id, ApiType.SEARCH_FACES_BY_IMAGE, decision.search.raw
        )
        if decision.kind == MATCHED:
            self.repo.record_match(image.image_id, decision.matched_face_ids)
            log.debug("Image %s matched face %s", image.image_id, decision.face_id)
        else:
            index = decision.index
            self.repo.record_api_response(
                image.user_id, image.image_id, ApiType.INDEX_FACES, index.raw
            )
            self.repo.record_index(image.image_id, namespace, index.faces, index.unindexed_reasons)
            if index.faces:
                log.debug("Image %s indexed %d new face(s)", image.image_id, len(index.faces))
            else:
                log.info(
                    "Image %s passed the gate but no face was indexable: %s",
                    image.image_id, ", ".join(index.unindexed_reasons) or "no reason given",
                )

        if face_map is not None:
            for face_id in decision.face_ids:
                face_map.add(face_id, image.image_id)

    def cluster(
        self,
        image: ImageRecord,
        image_bytes: bytes,
        namespace: str,
        face_map: FaceMap | None = None,
    ) -> ClusterDecision:
        decision = self.decide(image, image_bytes, namespace)
        self.record(image, decision, namespace, face_map)
        return decision

    def cluster_page(
        self,
        images: list[ImageRecord],
        load: Callable[[ImageRecord], bytes],
        namespace: str,
        cancel: threading.Event | None = None,
        on_done: Callable[[ImageRecord], None] | None = None,
    ) -> PageOutcome:
        """Cluster *images* and return the page's face map and counters.

        A failure on one image is logged and stored on that image; it stays
        ``FACES_DETECTED`` and the rest of the page carries on.
        """
        face_map = FaceMap()
        outcome = PageOutcome()

        def _decide(image: ImageRecord) -> ClusterDecision:
            return self.decide(image, load(image), namespace)

        def _finish(image: ImageRecord, decision: ClusterDecision | None, exc: Exception | None) -> None:
            if exc is None and decision is not None:
                try:
                    self.record(image, decision, namespace, face_map)
                except (FaceAlbumsError, sqlite3.Error) as rec_exc:
                    exc = rec_exc
                else:
                    if decision.kind == MATCHED:
                        outcome.matched += 1
                    else:
                        outcome.indexed += 1
                        outcome.faces_created += len(decision.index.faces) if decision.index else 0
            if exc is not None:
                outcome.failed += 1
                log.warning("Clustering failed for image %s: %s", image.image_id, exc)
                self.repo.record_error(image.image_id, f"clustering: {exc}")
            if on_done is not None:
                on_done(image)

        if self.workers == 1:
            for image in images:
                if cancel is not None and cancel.is_set():
                    break
                try:
                    decision = _decide(image)
                except Exception as exc:
                    _finish(image, None, exc)
                else:
                    _finish(image, decision, None)
        else:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                futures = {}
                for image in images:
                    if cancel is not None and cancel.is_set():
                        break
                    futures[pool.submit(_decide, image)] = image
                for fut in as_completed(futures):
                    image = futures[fut]
                    try:
                        decision = fut.result()
                    except Exception as exc:
                        _finish(image, None, exc)
                    else:
                        _finish(image, decision, None)

        outcome.face_map = face_map.snapshot()
        return outcome
