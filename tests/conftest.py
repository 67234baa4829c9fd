"""Shared fixtures: file-backed SQLite repo, local blob store and an in-memory oracle."""
from __future__ import annotations

import io
import uuid
from typing import Any, Sequence

import numpy as np
import pytest

from facealbums.errors import OracleError
from facealbums.oracle.base import FaceOracle

GOOD_QUALITY = {"Brightness": 60.0, "Contrast": 50.0, "Sharpness": 80.0}


def labels_response(
    face_labels: int = 1,
    quality: dict[str, float] | None = None,
    foreground: dict[str, float] | None = None,
) -> dict[str, Any]:
    """A DetectLabels-shaped response with *face_labels* person labels."""
    labels = [
        {"Name": f"Person{i}", "Confidence": 95.0, "Categories": [{"Name": "Person Description"}]}
        for i in range(face_labels)
    ]
    labels.append({"Name": "Tree", "Confidence": 90.0, "Categories": [{"Name": "Plants and Flowers"}]})
    return {
        "Labels": labels,
        "ImageProperties": {
            "Quality": dict(quality or GOOD_QUALITY),
            "Foreground": {"Quality": dict(foreground or GOOD_QUALITY)},
        },
    }


class FakeOracle(FaceOracle):
    """Oracle double keyed on image bytes.

    Image bytes look like ``b"alice"`` or ``b"alice,bob"`` (optionally with a
    ``#n`` suffix to make distinct photos of the same people).  ``b"-"`` has
    no face.  Searching finds any previously indexed person in the image.
    """

    name = "fake"

    def __init__(self) -> None:
        self.collections: dict[str, dict[str, str]] = {}  # namespace → face_id → person
        self.labels: dict[bytes, dict[str, Any]] = {}
        self.search_overrides: dict[bytes, dict[str, Any]] = {}
        self.fail: dict[tuple[str, bytes], str] = {}
        self.calls: list[tuple[str, bytes]] = []

    @staticmethod
    def people(image: bytes) -> list[str]:
        text = image.decode().split("#", 1)[0]
        return [] if text in ("", "-") else text.split(",")

    def _check(self, op: str, image: bytes) -> None:
        self.calls.append((op, image))
        if (op, image) in self.fail:
            raise OracleError(self.fail[(op, image)], error_name="ThrottlingException")

    def calls_for(self, op: str) -> list[bytes]:
        return [img for name, img in self.calls if name == op]

    def detect_labels(
        self,
        image: bytes,
        min_confidence: float,
        include_categories: Sequence[str],
        exclude_categories: Sequence[str],
        max_labels: int = 50,
    ) -> dict[str, Any]:
        self._check("detect_labels", image)
        if image in self.labels:
            return self.labels[image]
        return labels_response(face_labels=len(self.people(image)))

    def search_faces_by_image(self, image: bytes, namespace: str, threshold: float) -> dict[str, Any]:
        self._check("search", image)
        if image in self.search_overrides:
            return self.search_overrides[image]
        known = self.collections.setdefault(namespace, {})
        searched = self.people(image)[:1]
        matches = [
            {"Similarity": 99.0, "Face": {"FaceId": face_id}}
            for face_id, person in known.items()
            if person in searched
        ]
        return {"FaceMatches": matches}

    def index_faces(
        self,
        image: bytes,
        namespace: str,
        max_faces: int | None = None,
        external_image_id: str | None = None,
    ) -> dict[str, Any]:
        self._check("index", image)
        known = self.collections.setdefault(namespace, {})
        people = self.people(image)
        kept = people if max_faces is None else people[:max_faces]
        records = []
        for person in kept:
            face_id = f"{person}-{uuid.uuid4().hex[:8]}"
            known[face_id] = person
            records.append({
                "Face": {
                    "FaceId": face_id,
                    "Confidence": 99.5,
                    "BoundingBox": {"Width": 0.5, "Height": 0.5, "Left": 0.25, "Top": 0.25},
                },
                "FaceDetail": {"Confidence": 99.5, "AgeRange": {"Low": 20, "High": 28}},
            })
        unindexed = [{"Reasons": ["EXCEEDS_MAX_FACES"]} for _ in people[len(kept):]]
        return {"FaceRecords": records, "UnindexedFaces": unindexed}

    def compare_faces(self, source: bytes, target: bytes, threshold: float) -> dict[str, Any]:
        self._check("compare", source)
        same = set(self.people(source)) & set(self.people(target))
        return {"FaceMatches": [{"Similarity": 97.0}] if same else []}

    def create_collection(self, namespace: str) -> bool:
        if namespace in self.collections:
            return False
        self.collections[namespace] = {}
        return True


@pytest.fixture
def conn(tmp_path):
    from facealbums.db.connection import connect
    c = connect(tmp_path / "facealbums.db")
    yield c
    c.close()


@pytest.fixture
def repo(conn):
    from facealbums.db.repository import Repository
    return Repository(conn)


@pytest.fixture
def blobs(tmp_path):
    from facealbums.storage import LocalBlobStore
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def upload(repo, blobs):
    """Store *content* as an image blob and register it.  Returns image_id."""
    def _upload(
        content: bytes,
        user_id: str = "u1",
        folder_id: str = "f1",
        image_id: str | None = None,
    ) -> str:
        name = f"{image_id or uuid.uuid4().hex}.jpg"
        key = f"{user_id}/images/{folder_id}/{name}"
        blobs.put(key, content, content_type="image/jpeg")
        return repo.register_upload(user_id, folder_id, name, key, image_id=image_id)
    return _upload


@pytest.fixture
def jpeg_bytes():
    """A 200×160 JPEG with smooth gradients."""
    from PIL import Image
    y, x = np.mgrid[0:160, 0:200]
    rgb = np.stack([x % 256, y % 256, (x + y) % 256], axis=2).astype(np.uint8)
    buf = io.BytesIO()
    Image.fromarray(rgb).save(buf, format="JPEG")
    return buf.getvalue()
