"""Error taxonomy for the receipt ingestion pipeline.

Every failure the pipeline can surface is a distinct subclass of
:class:`ReceiptPipelineError` so callers can produce an accurate
user-facing message without string matching.  Each class carries the
HTTP status used by ``buildledger.api.error_handlers`` and whether the
caller may retry the request unchanged.

Validation errors are never retriable.  Storage read/write errors are
transient and surfaced as retriable; the pipeline itself never retries.
``StorageDeleteFailed`` is only ever logged by cleanup paths.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

# User-facing messages never carry object keys; the key stays on ``exc.key``.
RECEIPT_FILE_NOT_FOUND = "Receipt file not found"


class ReceiptPipelineError(Exception):
    """Base class for all pipeline errors."""

    code: str = "pipeline_error"
    status_code: int = 500
    retriable: bool = False

    def __init__(self, message: str, *, key: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.key = key

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "retriable": self.retriable,
        }


# -----------------------------------------------------------------------------
# Validation


class InvalidFileType(ReceiptPipelineError):
    code = "invalid_file_type"
    status_code = 400


class FileTooLarge(ReceiptPipelineError):
    code = "file_too_large"
    status_code = 413


class DimensionsTooSmall(ReceiptPipelineError):
    code = "dimensions_too_small"
    status_code = 422


class UnreadableImage(ReceiptPipelineError):
    code = "unreadable_image"
    status_code = 422


class UnsupportedFormat(ReceiptPipelineError):
    """Raised for formats that are accepted for storage but cannot be processed (PDF)."""

    code = "unsupported_format"
    status_code = 415


class ConversionFailed(ReceiptPipelineError):
    """The platform codec could not decode the source (typically HEIC without libheif)."""

    code = "conversion_failed"
    status_code = 422


class InvalidKey(ReceiptPipelineError):
    code = "invalid_key"
    status_code = 400


# -----------------------------------------------------------------------------
# Storage


class ObjectNotFound(ReceiptPipelineError):
    code = "object_not_found"
    status_code = 404


class StorageReadFailed(ReceiptPipelineError):
    code = "storage_read_failed"
    status_code = 503
    retriable = True


class StorageWriteFailed(ReceiptPipelineError):
    code = "storage_write_failed"
    status_code = 503
    retriable = True


class StorageDeleteFailed(ReceiptPipelineError):
    code = "storage_delete_failed"
    status_code = 500
    retriable = True


# -----------------------------------------------------------------------------
# Business records


class InvalidStatusTransition(ReceiptPipelineError):
    code = "invalid_status_transition"
    status_code = 409


class StatusChangeForbidden(ReceiptPipelineError):
    """The caller's role may not move a receipt into the requested status."""

    code = "status_change_forbidden"
    status_code = 403


STORAGE_ERRORS = (ObjectNotFound, StorageReadFailed, StorageWriteFailed)
