"""Upload validation checkpoints.

``validate_upload`` is the content-blind pre-storage check and must run
before a single byte reaches permanent storage.  ``validate_dimensions``
runs after decoding; it only reports, deleting the stored file is up to
the upload orchestrator.
"""

from __future__ import annotations

import os
from typing import Mapping, Optional, Sequence

from buildledger.core.config import settings
from buildledger.core.exceptions import DimensionsTooSmall, FileTooLarge, InvalidFileType, UnreadableImage
from buildledger.utils.image_processing import ImageMetadata


def file_extension(filename: str | None) -> str:
    return os.path.splitext(filename or "")[1].lower()


def validate_upload(
    filename: str | None,
    content_type: str | None,
    size: Optional[int],
    *,
    max_size: Optional[int] = None,
    allowed: Optional[Mapping[str, Sequence[str]]] = None,
) -> None:
    """Reject files by extension, declared MIME type and declared size."""
    allowed = allowed if allowed is not None else settings.ALLOWED_MIME_TYPES
    max_size = max_size if max_size is not None else settings.MAX_UPLOAD_SIZE

    ext = file_extension(filename)
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    if ext not in allowed or mime not in allowed[ext]:
        raise InvalidFileType("Invalid file type. Only JPEG, PNG, PDF, and HEIC files are allowed.")
    if size is not None and size > max_size:
        raise FileTooLarge(f"File size too large. Maximum size is {max_size // (1024 * 1024)}MB.")
    if size == 0:
        raise UnreadableImage("Uploaded file is empty")


def validate_dimensions(
    metadata: ImageMetadata,
    min_width: Optional[int] = None,
    min_height: Optional[int] = None,
) -> None:
    min_width = settings.MIN_IMAGE_WIDTH if min_width is None else min_width
    min_height = settings.MIN_IMAGE_HEIGHT if min_height is None else min_height
    if metadata.width < min_width or metadata.height < min_height:
        raise DimensionsTooSmall(
            f"Image dimensions must be at least {min_width}x{min_height}px "
            f"(got {metadata.width}x{metadata.height}px)"
        )
