"""Amazon Rekognition backend (``pip install 'facealbums[aws]'``)."""
from __future__ import annotations

import logging
from typing import Any, Sequence

from facealbums.errors import OracleError
from facealbums.oracle.base import FaceOracle

log = logging.getLogger(__name__)

# Rekognition error codes mapped to caller-facing messages.
_ERROR_MESSAGES: dict[str, str] = {
    "InvalidParameterException": "The face image provided is invalid or unsupported",
    "ProvisionedThroughputExceededException": "Face recognition service is currently busy",
    "InvalidImageFormatException": "The face image format is not supported",
    "ImageTooLargeException": "The face image is too large",
    "AccessDeniedException": "Access denied to face recognition service",
    "ThrottlingException": "Request rate limit exceeded",
    "LimitExceededException": "Service limit has been exceeded",
    "ResourceNotFoundException": "The specified collection does not exist",
    "InternalServerError": "Face recognition service encountered an internal error",
}


def _wrap(exc: Exception, operation: str) -> OracleError:
    response = getattr(exc, "response", None)
    error = response.get("Error", {}) if isinstance(response, dict) else {}
    name = error.get("Code") or type(exc).__name__
    message = _ERROR_MESSAGES.get(name, error.get("Message") or str(exc))
    return OracleError(f"{operation}: {message}", error_name=name, details={"operation": operation})


class RekognitionOracle(FaceOracle):
    name = "rekognition"

    def __init__(self, region: str | None = None, client: Any = None) -> None:
        if client is None:
            try:
                import boto3
            except ImportError:
                raise ImportError(
                    "boto3 required for the Rekognition oracle: pip install 'facealbums[aws]'"
                )
            client = boto3.client("rekognition", region_name=region)
        self._client = client

    def detect_labels(
        self,
        image: bytes,
        min_confidence: float,
        include_categories: Sequence[str],
        exclude_categories: Sequence[str],
        max_labels: int = 50,
    ) -> dict[str, Any]:
        general: dict[str, Any] = {}
        if include_categories:
            general["LabelCategoryInclusionFilters"] = list(include_categories)
        if exclude_categories:
            general["LabelCategoryExclusionFilters"] = list(exclude_categories)
        try:
            return self._client.detect_labels(
                Image={"Bytes": image},
                MaxLabels=max_labels,
                MinConfidence=min_confidence,
                Features=["GENERAL_LABELS", "IMAGE_PROPERTIES"],
                Settings={"GeneralLabels": general},
            )
        except Exception as exc:
            raise _wrap(exc, "DetectLabels") from exc

    def search_faces_by_image(
        self, image: bytes, namespace: str, threshold: float
    ) -> dict[str, Any]:
        try:
            return self._client.search_faces_by_image(
                CollectionId=namespace,
                Image={"Bytes": image},
                QualityFilter="AUTO",
                FaceMatchThreshold=threshold,
            )
        except Exception as exc:
            raise _wrap(exc, "SearchFacesByImage") from exc

    def index_faces(
        self,
        image: bytes,
        namespace: str,
        max_faces: int | None = None,
        external_image_id: str | None = None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "CollectionId": namespace,
            "Image": {"Bytes": image},
            "QualityFilter": "MEDIUM",
            "DetectionAttributes": ["DEFAULT"],
        }
        if max_faces is not None:
            kwargs["MaxFaces"] = max_faces
        if external_image_id:
            kwargs["ExternalImageId"] = external_image_id
        try:
            return self._client.index_faces(**kwargs)
        except Exception as exc:
            raise _wrap(exc, "IndexFaces") from exc

    def compare_faces(self, source: bytes, target: bytes, threshold: float) -> dict[str, Any]:
        try:
            return self._client.compare_faces(
                SourceImage={"Bytes": source},
                TargetImage={"Bytes": target},
                SimilarityThreshold=threshold,
            )
        except Exception as exc:
            raise _wrap(exc, "CompareFaces") from exc

    def create_collection(self, namespace: str) -> bool:
        try:
            self._client.create_collection(CollectionId=namespace)
        except Exception as exc:
            err = _wrap(exc, "CreateCollection")
            if err.error_name == "ResourceAlreadyExistsException":
                log.info("Collection %s already exists", namespace)
                return False
            raise err from exc
        log.info("Created collection %s", namespace)
        return True
