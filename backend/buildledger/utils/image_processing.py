"""Image decoding and thumbnail utilities.

Pillow is the imaging backend.  All derived images are re-encoded as
RGB JPEG so storage and serving layers only ever handle one thumbnail
encoding.  HEIC/HEIF decoding needs the ``pillow-heif`` plugin (the
``heic`` extra); without it, or on platforms where libheif cannot
decode a file, HEIC sources fail with ``ConversionFailed``.

PDF receipts are accepted for storage but are not rasterized here:
they fail with ``UnsupportedFormat``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Tuple

from PIL import Image, ImageOps, ExifTags, UnidentifiedImageError

from buildledger.core.exceptions import ConversionFailed, UnreadableImage, UnsupportedFormat

try:  # optional HEIC codec, see module docstring
    from pillow_heif import register_heif_opener  # type: ignore
except Exception:  # pragma: no cover - plugin not installed
    register_heif_opener = None  # type: ignore

if register_heif_opener is not None:
    register_heif_opener()

logger = logging.getLogger(__name__)

_PDF_MAGIC = b"%PDF"
_HEIF_BRANDS = {b"heic", b"heix", b"heim", b"heis", b"hevc", b"hevx", b"mif1", b"msf1"}
HEIF_FORMATS = {"heif", "heic"}

ORIENTATION_TAG_ID = next((k for k, v in ExifTags.TAGS.items() if v == "Orientation"), None)


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int
    format: str


def is_pdf(data: bytes) -> bool:
    return data[:1024].lstrip().startswith(_PDF_MAGIC)


def is_heif(data: bytes) -> bool:
    """Sniff the ISO-BMFF ``ftyp`` box used by HEIC/HEIF files."""
    return len(data) >= 12 and data[4:8] == b"ftyp" and data[8:12] in _HEIF_BRANDS


def _apply_exif_orientation(img: Image.Image) -> Tuple[Image.Image, bool]:  # pragma: no cover - visual correctness
    """Return a new image with EXIF orientation applied if needed.

    Returns (image, applied_flag).  If orientation cannot be determined the
    original image and False are returned.
    """
    if ORIENTATION_TAG_ID is None:
        return img, False
    try:
        if ORIENTATION_TAG_ID not in img.getexif():
            return img, False
        transposed = ImageOps.exif_transpose(img)
        if transposed is not None and transposed is not img:
            return transposed, True
        return img, False
    except Exception:
        return img, False


def _open(data: bytes) -> Image.Image:
    if is_pdf(data):
        raise UnsupportedFormat("PDF processing is not implemented. Please upload an image file.")
    try:
        img = Image.open(BytesIO(data))
        img.load()
        return img
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        if is_heif(data):
            raise ConversionFailed(
                "Failed to decode HEIC image on this platform. Please upload a different format."
            ) from exc
        raise UnreadableImage("File is not a readable image") from exc


def decode_metadata(data: bytes) -> ImageMetadata:
    """Return width, height and lower-cased format of an encoded image."""
    with _open(data) as img:
        fmt = (img.format or "").lower()
        width, height = img.size
    if not width or not height:
        raise UnreadableImage("Unable to determine image dimensions")
    return ImageMetadata(width=width, height=height, format=fmt)


def needs_conversion(metadata: ImageMetadata) -> bool:
    return metadata.format in HEIF_FORMATS


def _encode_jpeg(img: Image.Image, quality: int) -> bytes:
    if img.mode != "RGB":
        img = img.convert("RGB")
    out = BytesIO()
    img.save(out, format="JPEG", quality=quality)
    return out.getvalue()


def make_thumbnail(data: bytes, max_width: int = 400, quality: int = 80) -> bytes:
    """Downscale to at most ``max_width`` pixels wide and re-encode as JPEG.

    Aspect ratio is preserved and images already narrower than
    ``max_width`` keep their size (no enlargement).
    """
    if max_width <= 0:
        raise ValueError("max_width must be positive")
    with _open(data) as img:
        img, _applied = _apply_exif_orientation(img)
        w, h = img.size
        if w > max_width:
            new_height = max(1, round(h * max_width / float(w)))
            img = img.resize((max_width, new_height), Image.Resampling.LANCZOS)
        return _encode_jpeg(img, quality)


def convert_to_standard_format(data: bytes, quality: int = 90) -> bytes:
    """Re-encode a decodable raster image (e.g. HEIC) as JPEG for direct serving."""
    try:
        with _open(data) as img:
            img, _applied = _apply_exif_orientation(img)
            return _encode_jpeg(img, quality)
    except UnsupportedFormat:
        raise
    except (UnreadableImage, OSError) as exc:
        logger.warning("Image conversion failed: %s", exc)
        raise ConversionFailed("Failed to convert image. Please upload a different format.") from exc
