"""The face recognition oracle interface.

Backends implement the raw calls, which return Rekognition-shaped dicts.
The adapter methods (``search_similar``, ``index``, ``compare``) parse them
into result types.  Every call that touches face prints takes the clustering
namespace explicitly.  No backend caches results.
"""
from __future__ import annotations

from typing import Any, Sequence

from facealbums.models import CompareResult, IndexResult, SearchResult
from facealbums.oracle.responses import (
    parse_compare_response,
    parse_index_response,
    parse_search_response,
)


class FaceOracle:
    name = "base"

    # ── Raw backend calls ─────────────────────────────────────────────────

    def detect_labels(
        self,
        image: bytes,
        min_confidence: float,
        include_categories: Sequence[str],
        exclude_categories: Sequence[str],
        max_labels: int = 50,
    ) -> dict[str, Any]:
        """Label detection with ``ImageProperties`` quality scores."""
        raise NotImplementedError

    def search_faces_by_image(
        self, image: bytes, namespace: str, threshold: float
    ) -> dict[str, Any]:
        raise NotImplementedError

    def index_faces(
        self,
        image: bytes,
        namespace: str,
        max_faces: int | None = None,
        external_image_id: str | None = None,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def compare_faces(self, source: bytes, target: bytes, threshold: float) -> dict[str, Any]:
        raise NotImplementedError

    def create_collection(self, namespace: str) -> bool:
        """Create *namespace*.  Returns False if it already existed."""
        raise NotImplementedError

    # ── Adapter contract ──────────────────────────────────────────────────

    def search_similar(self, image: bytes, namespace: str, threshold: float) -> SearchResult:
        return parse_search_response(self.search_faces_by_image(image, namespace, threshold))

    def index(
        self,
        image: bytes,
        namespace: str,
        max_faces: int | None = None,
        external_image_id: str | None = None,
    ) -> IndexResult:
        return parse_index_response(
            self.index_faces(image, namespace, max_faces, external_image_id)
        )

    def compare(self, source: bytes, target: bytes, threshold: float) -> CompareResult:
        return parse_compare_response(self.compare_faces(source, target, threshold), threshold)
