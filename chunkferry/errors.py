"""Exceptions raised and reported by the uploader."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorType(str, Enum):
    FILE_TOO_LARGE = "file_too_large"
    FILE_TYPE_NOT_ALLOWED = "file_type_not_allowed"
    INITIALIZATION_FAILED = "initialization_failed"
    CHUNK_UPLOAD_FAILED = "chunk_upload_failed"
    FINALIZE_FAILED = "finalize_failed"
    BACKEND_FAILURE = "backend_failure"


class UploaderError(Exception):
    """Base exception; carries the identity of the file it is about."""

    error_type = ErrorType.CHUNK_UPLOAD_FAILED

    def __init__(
        self,
        message: str,
        error_type: Optional[ErrorType] = None,
        file_id: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        if error_type is not None:
            self.error_type = error_type
        self.file_id = file_id
        self.file_name = file_name
        self.file_size = file_size

    @classmethod
    def for_file(cls, message: str, record, **kwargs) -> "UploaderError":
        """Build the error from a FileRecord-like object."""
        return cls(
            message,
            file_id=getattr(record, "id", None),
            file_name=getattr(record, "name", None),
            file_size=getattr(record, "size", None),
            **kwargs,
        )


class ValidationError(UploaderError):
    """File rejected before queueing (too large or type not allowed)."""

    error_type = ErrorType.FILE_TYPE_NOT_ALLOWED


class InitializationError(UploaderError):
    """The begin callback failed or reported failure."""

    error_type = ErrorType.INITIALIZATION_FAILED


class ChunkUploadError(UploaderError):
    """A chunk could not be stored after exhausting its retries."""

    error_type = ErrorType.CHUNK_UPLOAD_FAILED

    def __init__(self, message: str, part_number: Optional[int] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.part_number = part_number


class FinalizeError(UploaderError):
    """The finalize callback failed after every chunk was committed."""

    error_type = ErrorType.FINALIZE_FAILED


class BackendError(UploaderError):
    """An execution slot itself failed (not the task it was running)."""

    error_type = ErrorType.BACKEND_FAILURE

    def __init__(self, message: str, slot_id: Optional[int] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.slot_id = slot_id
