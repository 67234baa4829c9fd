"""Single-face enrollment, verification and authentication.

These flows share the oracle with bulk clustering but expect exactly one
face per photo.  Zero or several faces are business errors raised to the
caller, unlike in bulk clustering where they are tolerated.
"""
from __future__ import annotations

import base64
import binascii
import logging
from typing import Any

from facealbums.errors import InvalidParametersError, MultipleFacesFoundError, NoFaceFoundError
from facealbums.oracle.base import FaceOracle
from facealbums.storage import BlobStore

log = logging.getLogger(__name__)

AUTH_THRESHOLD = 80.0
MIN_PAYLOAD_BYTES = 100


def decode_payload(payload: bytes | str) -> bytes:
    """Raw image bytes from *payload*.

    Strings are treated as base64, optionally prefixed by a data URI header
    (``data:image/jpeg;base64,``).  Payloads under 100 bytes are rejected.
    """
    if not payload:
        raise InvalidParametersError("Face image is required")
    if isinstance(payload, str):
        if "base64," in payload:
            payload = payload.split("base64,", 1)[1]
        try:
            data = base64.b64decode(payload, validate=False)
        except (binascii.Error, ValueError) as exc:
            raise InvalidParametersError(f"Face image is not valid base64: {exc}") from exc
    else:
        data = payload
    if len(data) < MIN_PAYLOAD_BYTES:
        raise InvalidParametersError(
            "Face image is too small to be a valid image", {"size": len(data)}
        )
    return data


def register_face(
    oracle: FaceOracle,
    image: bytes | str,
    namespace: str,
    threshold: float = AUTH_THRESHOLD,
) -> dict[str, Any]:
    """Return the existing face for this person, or index a new one.

    Result: ``{"is_new_face", "face_id", "similarity"}`` (similarity is
    ``None`` for a new face).
    """
    data = decode_payload(image)
    search = oracle.search_similar(data, namespace, threshold)
    if search.matches:
        best = max(search.matches, key=lambda m: m.similarity)
        log.info("Face already enrolled as %s (%.1f%%)", best.face_id, best.similarity)
        return {"is_new_face": False, "face_id": best.face_id, "similarity": best.similarity}

    result = oracle.index(data, namespace, max_faces=1)
    if not result.faces:
        raise NoFaceFoundError(
            "No face found in the image", {"reasons": result.unindexed_reasons}
        )
    if len(result.faces) > 1 or "EXCEEDS_MAX_FACES" in result.unindexed_reasons:
        raise MultipleFacesFoundError(
            "Multiple faces found in the image",
            {"face_ids": [f.face_id for f in result.faces]},
        )

    face_id = result.faces[0].face_id
    log.info("Enrolled new face %s in %s", face_id, namespace)
    return {"is_new_face": True, "face_id": face_id, "similarity": None}


def verify_face(
    oracle: FaceOracle,
    image: bytes | str,
    namespace: str,
    threshold: float = AUTH_THRESHOLD,
) -> dict[str, Any] | None:
    """Best enrolled match as ``{"face_id", "similarity"}``, or None."""
    data = decode_payload(image)
    search = oracle.search_similar(data, namespace, threshold)
    if not search.matches:
        log.info("No matching face in %s", namespace)
        return None
    best = max(search.matches, key=lambda m: m.similarity)
    return {"face_id": best.face_id, "similarity": best.similarity}


def authenticate_face(
    oracle: FaceOracle,
    blobs: BlobStore,
    reference_key: str,
    photo: bytes | str,
    threshold: float = AUTH_THRESHOLD,
) -> dict[str, Any]:
    """Compare *photo* against the enrolled reference photo at *reference_key*."""
    if not reference_key:
        raise InvalidParametersError("Reference image key is required")
    photo_bytes = decode_payload(photo)
    reference = blobs.get(reference_key)
    result = oracle.compare(photo_bytes, reference, threshold)
    if result.matched:
        return {"is_authenticated": True, "similarity": result.similarity}
    return {"is_authenticated": False, "similarity": None}
