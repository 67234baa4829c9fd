"""Parse raw oracle responses into result types.

Every backend returns dicts shaped like the Amazon Rekognition API
(``FaceMatches``, ``FaceRecords``, ``UnindexedFaces``...).  The raw dict is
kept on each result so callers can persist it for audit/replay.
"""
from __future__ import annotations

from typing import Any

from facealbums.models import CompareResult, FaceMatch, IndexedFace, IndexResult, SearchResult

# FaceDetail keys kept on the Face row.  Informational only.
_DETAIL_KEYS = {
    "AgeRange": "age_range",
    "Gender": "gender",
    "Confidence": "confidence",
    "Emotions": "emotions",
    "Beard": "beard",
    "Mustache": "mustache",
    "EyeDirection": "eye_direction",
    "FaceOccluded": "occluded",
    "Quality": "quality",
    "Smile": "smile",
    "Sunglasses": "sunglasses",
    "Pose": "pose",
}


def parse_search_response(raw: dict[str, Any]) -> SearchResult:
    """Matches in the order the oracle returned them (best first)."""
    matches = [
        FaceMatch(face_id=m["Face"]["FaceId"], similarity=float(m.get("Similarity", 0.0)))
        for m in raw.get("FaceMatches", []) or []
        if m.get("Face", {}).get("FaceId")
    ]
    return SearchResult(matches=matches, raw=raw)


def face_attributes(face_detail: dict[str, Any]) -> dict[str, Any]:
    return {
        ours: face_detail[theirs]
        for theirs, ours in _DETAIL_KEYS.items()
        if theirs in face_detail
    }


def parse_index_response(raw: dict[str, Any]) -> IndexResult:
    faces: list[IndexedFace] = []
    for record in raw.get("FaceRecords", []) or []:
        face = record.get("Face", {})
        detail = record.get("FaceDetail", {}) or {}
        faces.append(IndexedFace(
            face_id=face["FaceId"],
            confidence=face.get("Confidence", detail.get("Confidence")),
            bounding_box=face.get("BoundingBox") or detail.get("BoundingBox"),
            attributes=face_attributes(detail),
        ))

    reasons: list[str] = []
    for unindexed in raw.get("UnindexedFaces", []) or []:
        reasons.extend(unindexed.get("Reasons", []) or [])
    return IndexResult(faces=faces, unindexed_reasons=reasons, raw=raw)


def parse_compare_response(raw: dict[str, Any], threshold: float) -> CompareResult:
    similarities = [float(m.get("Similarity", 0.0)) for m in raw.get("FaceMatches", []) or []]
    best = max(similarities, default=0.0)
    return CompareResult(matched=best >= threshold, similarity=best, raw=raw)
