"""Quality gate: decides whether an image is worth clustering.

One label-detection call per image, restricted to people/expression
categories, supplies both the face-content signal (labels in the allow-list)
and two quality sub-scores (whole image and foreground subject).  Both
sub-scores must sit inside fixed brightness/contrast/sharpness bands; the
foreground bands are the stricter ones.

Failing the gate is not an error: the image moves to ``NO_FACES_DETECTED``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from facealbums.db.repository import Repository
from facealbums.models import ApiType, GateVerdict, ImageRecord, ImageStatus
from facealbums.oracle.base import FaceOracle

log = logging.getLogger(__name__)

INCLUDE_CATEGORIES: tuple[str, ...] = (
    "Person Description",
    "Expressions and Emotions",
)

EXCLUDE_CATEGORIES: tuple[str, ...] = (
    "Animals and Pets",
    "Apparel and Accessories",
    "Beauty and Personal Care",
    "Buildings and Architecture",
    "Colors and Visual Composition",
    "Damage Detection",
    "Education",
    "Everyday Objects",
    "Food and Beverage",
    "Furniture and Furnishings",
    "Health and Fitness",
    "Home and Indoors",
    "Home Appliances",
    "Hobbies and Interests",
    "Kitchen and Dining",
    "Materials",
    "Medical",
    "Nature and Outdoors",
    "Offices and Workspaces",
    "Patterns and Shapes",
    "Plants and Flowers",
    "Popular Landmarks",
    "Public Safety",
    "Religion",
    "Sports",
    "Symbols and Flags",
    "Technology and Computing",
    "Text and Documents",
    "Tools and Machinery",
    "Toys and Gaming",
    "Transport and Logistics",
    "Travel and Adventure",
    "Vehicles and Automotive",
    "Weapons and Military",
)

MAX_LABELS = 50


@dataclass(frozen=True)
class QualityBands:
    """Inclusive bands on the 0–100 scale.  Sharpness has no upper bound."""

    brightness: tuple[float, float]
    contrast: tuple[float, float]
    sharpness_min: float


OVERALL_BANDS = QualityBands(brightness=(40, 80), contrast=(30, 70), sharpness_min=50)
FOREGROUND_BANDS = QualityBands(brightness=(45, 75), contrast=(35, 65), sharpness_min=60)


def is_quality_in_range(quality: dict[str, Any] | None, bands: QualityBands) -> bool:
    if not quality:
        return False
    try:
        brightness = float(quality["Brightness"])
        contrast = float(quality["Contrast"])
        sharpness = float(quality["Sharpness"])
    except (KeyError, TypeError, ValueError):
        return False
    return (
        bands.brightness[0] <= brightness <= bands.brightness[1]
        and bands.contrast[0] <= contrast <= bands.contrast[1]
        and sharpness >= bands.sharpness_min
    )


def is_quality_sufficient(response: dict[str, Any]) -> bool:
    props = response.get("ImageProperties") or {}
    overall = props.get("Quality")
    foreground = (props.get("Foreground") or {}).get("Quality")
    return (
        is_quality_in_range(overall, OVERALL_BANDS)
        and is_quality_in_range(foreground, FOREGROUND_BANDS)
    )


def count_face_labels(
    response: dict[str, Any], include: tuple[str, ...] = INCLUDE_CATEGORIES
) -> int:
    """Number of labels carrying at least one allow-listed category."""
    return sum(
        1
        for label in response.get("Labels", []) or []
        if any(c.get("Name") in include for c in label.get("Categories", []) or [])
    )


def verdict_from_response(response: dict[str, Any]) -> GateVerdict:
    count = count_face_labels(response)
    return GateVerdict(
        is_face_content_present=count > 0,
        face_count=count,
        is_quality_sufficient=is_quality_sufficient(response),
    )


class QualityGate:
    """``assess`` talks to the oracle only; ``record`` persists.

    The split lets the caller run assessments on worker threads while keeping
    every database write on one thread.
    """

    def __init__(
        self,
        oracle: FaceOracle,
        repo: Repository,
        min_confidence: float = 85.0,
    ) -> None:
        self.oracle = oracle
        self.repo = repo
        self.min_confidence = min_confidence

    def assess(self, image_bytes: bytes) -> tuple[GateVerdict, dict[str, Any]]:
        response = self.oracle.detect_labels(
            image_bytes,
            min_confidence=self.min_confidence,
            include_categories=INCLUDE_CATEGORIES,
            exclude_categories=EXCLUDE_CATEGORIES,
            max_labels=MAX_LABELS,
        )
        return verdict_from_response(response), response

    def record(
        self, image: ImageRecord, verdict: GateVerdict, response: dict[str, Any]
    ) -> ImageStatus:
        self.repo.record_api_response(image.user_id, image.image_id, ApiType.DETECT_LABELS, response)
        status = self.repo.record_detection(image.image_id, verdict)
        log.debug(
            "Gate %s: face labels=%d quality_ok=%s → %s",
            image.image_id, verdict.face_count, verdict.is_quality_sufficient, status.value,
        )
        return status

    def evaluate(self, image: ImageRecord, image_bytes: bytes) -> GateVerdict:
        verdict, response = self.assess(image_bytes)
        self.record(image, verdict, response)
        return verdict
