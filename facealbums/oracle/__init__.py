"""Face recognition oracle backends.

  local        InsightFace embeddings + JSON face-print store (default)
  rekognition  Amazon Rekognition via boto3
"""
from __future__ import annotations

from facealbums.config import Settings
from facealbums.oracle.base import FaceOracle


def get_oracle(settings: Settings) -> FaceOracle:
    if settings.oracle_backend == "rekognition":
        from facealbums.oracle.rekognition import RekognitionOracle
        return RekognitionOracle(region=settings.aws_region)

    from facealbums.oracle.local import FacePrintStore, LocalOracle
    return LocalOracle(FacePrintStore(settings.face_print_dir))


__all__ = ["FaceOracle", "get_oracle"]
