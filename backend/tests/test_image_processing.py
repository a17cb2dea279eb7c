from io import BytesIO

import pytest
from PIL import Image

from buildledger.core.exceptions import ConversionFailed, UnreadableImage, UnsupportedFormat
from buildledger.utils.image_processing import (
    ImageMetadata,
    convert_to_standard_format,
    decode_metadata,
    is_heif,
    is_pdf,
    make_thumbnail,
    needs_conversion,
)

from factories import PDF_BYTES, encode_image


def _size(data: bytes):
    with Image.open(BytesIO(data)) as img:
        return img.size, img.format


def test_decode_metadata_reports_lowercase_format():
    meta = decode_metadata(encode_image(320, 240, "PNG"))
    assert meta == ImageMetadata(width=320, height=240, format="png")


def test_thumbnail_downscales_to_max_width_preserving_aspect():
    thumb = make_thumbnail(encode_image(2000, 1500), max_width=400)
    (w, h), fmt = _size(thumb)
    assert fmt == "JPEG"
    assert w == 400
    assert h == 300


def test_thumbnail_never_upscales():
    thumb = make_thumbnail(encode_image(150, 120, "PNG"), max_width=400)
    (w, h), fmt = _size(thumb)
    assert (w, h) == (150, 120)
    assert fmt == "JPEG"


@pytest.mark.parametrize("mode,color", [("RGBA", (10, 20, 30, 128)), ("P", 3), ("L", 90)])
def test_thumbnail_converts_non_rgb_modes(mode, color):
    out = BytesIO()
    Image.new(mode, (500, 500), color).save(out, format="PNG")
    thumb = make_thumbnail(out.getvalue(), max_width=200)
    with Image.open(BytesIO(thumb)) as img:
        assert img.mode == "RGB"
        assert img.width == 200


def test_thumbnail_rejects_non_positive_width():
    with pytest.raises(ValueError):
        make_thumbnail(encode_image(200, 200), max_width=0)


def test_pdf_is_unsupported():
    assert is_pdf(PDF_BYTES)
    with pytest.raises(UnsupportedFormat):
        decode_metadata(PDF_BYTES)
    with pytest.raises(UnsupportedFormat):
        make_thumbnail(PDF_BYTES)
    with pytest.raises(UnsupportedFormat):
        convert_to_standard_format(PDF_BYTES)


def test_garbage_bytes_are_unreadable():
    with pytest.raises(UnreadableImage):
        decode_metadata(b"definitely not an image")


def test_undecodable_heif_raises_conversion_failed():
    # ftyp box with a HEIC brand but no decodable payload
    fake_heic = b"\x00\x00\x00\x18ftypheic\x00\x00\x00\x00mif1heic" + b"\x00" * 64
    assert is_heif(fake_heic)
    with pytest.raises(ConversionFailed):
        decode_metadata(fake_heic)
    with pytest.raises(ConversionFailed):
        convert_to_standard_format(fake_heic)


def test_convert_to_standard_format_outputs_jpeg():
    out = convert_to_standard_format(encode_image(300, 200, "PNG"))
    (w, h), fmt = _size(out)
    assert (w, h, fmt) == (300, 200, "JPEG")


def test_needs_conversion_only_for_heif():
    assert needs_conversion(ImageMetadata(10, 10, "heif"))
    assert needs_conversion(ImageMetadata(10, 10, "heic"))
    assert not needs_conversion(ImageMetadata(10, 10, "jpeg"))
