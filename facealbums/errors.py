"""Exception hierarchy shared by the store, oracle, storage and pipeline layers."""
from __future__ import annotations

from typing import Any


class FaceAlbumsError(Exception):
    """Base error.  ``code`` is a stable machine-readable identifier."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConfigError(FaceAlbumsError):
    code = "CONFIG_ERROR"


class InvalidParametersError(FaceAlbumsError):
    """Missing or malformed job input.  Raised before anything is persisted."""

    code = "INVALID_PARAMETERS"


class OracleError(FaceAlbumsError):
    """A face recognition / annotation backend call failed."""

    code = "ORACLE_ERROR"

    def __init__(
        self,
        message: str,
        error_name: str = "UnknownError",
        details: dict[str, Any] | None = None,
    ) -> None:
        self.error_name = error_name
        super().__init__(message, details)


class StorageError(FaceAlbumsError):
    code = "STORAGE_ERROR"


class NoFaceFoundError(FaceAlbumsError):
    code = "NO_FACE_FOUND"


class MultipleFacesFoundError(FaceAlbumsError):
    code = "MULTIPLE_FACES_FOUND"


class JobAlreadyRunningError(FaceAlbumsError):
    code = "JOB_ALREADY_RUNNING"


class StatusRegressionError(FaceAlbumsError):
    code = "STATUS_REGRESSION"
