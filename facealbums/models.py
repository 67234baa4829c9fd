"""Core value types: image status machine, oracle results, pagination cursor."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ImageStatus(str, Enum):
    UPLOADED_TO_S3 = "UPLOADED_TO_S3"
    FACES_DETECTED = "FACES_DETECTED"
    NO_FACES_DETECTED = "NO_FACES_DETECTED"
    FACES_MATCHED = "FACES_MATCHED"
    FACES_INDEXED = "FACES_INDEXED"


# Forward-only transitions.  Anything not listed here is a regression.
ALLOWED_TRANSITIONS: dict[ImageStatus, frozenset[ImageStatus]] = {
    ImageStatus.UPLOADED_TO_S3: frozenset({
        ImageStatus.FACES_DETECTED,
        ImageStatus.NO_FACES_DETECTED,
    }),
    ImageStatus.FACES_DETECTED: frozenset({
        ImageStatus.FACES_MATCHED,
        ImageStatus.FACES_INDEXED,
    }),
    ImageStatus.NO_FACES_DETECTED: frozenset(),
    ImageStatus.FACES_MATCHED: frozenset(),
    ImageStatus.FACES_INDEXED: frozenset(),
}


def sources_for(target: ImageStatus) -> list[ImageStatus]:
    """Return every status from which *target* may be reached in one step."""
    return [src for src, targets in ALLOWED_TRANSITIONS.items() if target in targets]


class ApiType(str, Enum):
    """Kinds of raw oracle responses kept for audit/replay."""

    DETECT_LABELS = "DETECT_LABELS"
    SEARCH_FACES_BY_IMAGE = "SEARCH_FACES_BY_IMAGE"
    INDEX_FACES = "INDEX_FACES"


@dataclass(frozen=True)
class ImageRecord:
    image_id: str
    user_id: str
    folder_id: str | None
    storage_key: str
    status: ImageStatus

    @classmethod
    def from_row(cls, row: Any) -> "ImageRecord":
        return cls(
            image_id=row["image_id"],
            user_id=row["user_id"],
            folder_id=row["folder_id"],
            storage_key=row["storage_key"],
            status=ImageStatus(row["status"]),
        )


@dataclass(frozen=True)
class PageFilter:
    user_id: str
    folder_id: str
    statuses: tuple[ImageStatus, ...] = (ImageStatus.UPLOADED_TO_S3,)


@dataclass(frozen=True)
class Cursor:
    """Keyset cursor: the next page starts strictly after ``after_id``."""

    page_size: int = 50
    after_id: str | None = None

    def advance(self, last_id: str) -> "Cursor":
        return Cursor(page_size=self.page_size, after_id=last_id)


@dataclass(frozen=True)
class FaceMatch:
    face_id: str
    similarity: float


@dataclass
class IndexedFace:
    face_id: str
    confidence: float | None = None
    bounding_box: dict[str, float] | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchResult:
    matches: list[FaceMatch]
    raw: dict[str, Any]


@dataclass
class IndexResult:
    faces: list[IndexedFace]
    unindexed_reasons: list[str]
    raw: dict[str, Any]


@dataclass
class CompareResult:
    matched: bool
    similarity: float
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GateVerdict:
    is_face_content_present: bool
    face_count: int
    is_quality_sufficient: bool

    @property
    def passed(self) -> bool:
        return self.is_face_content_present and self.face_count > 0 and self.is_quality_sufficient
