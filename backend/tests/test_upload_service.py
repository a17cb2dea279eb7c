from __future__ import annotations

import threading
import time
import types
from io import BytesIO

import pytest
from PIL import Image

from buildledger.core.config import settings
from buildledger.core.exceptions import (
    STORAGE_ERRORS,
    DimensionsTooSmall,
    InvalidKey,
    ObjectNotFound,
    ReceiptPipelineError,
    StorageDeleteFailed,
    StorageWriteFailed,
    UnsupportedFormat,
)
from buildledger.services import upload_service as upload_module
from buildledger.services.storage_service import FilesystemObjectStore
from buildledger.services.upload_service import (
    UploadRecord,
    UploadService,
    UploadState,
    build_upload_target,
)
from buildledger.utils.image_processing import ImageMetadata
from buildledger.utils.storage_keys import derive_thumbnail_key

from factories import PDF_BYTES, encode_image, padded_jpeg

USER = types.SimpleNamespace(id=4, company_id=9)


class RecordingStore(FilesystemObjectStore):
    """Filesystem store that remembers what was submitted for deletion."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.deleted_batches = []

    def delete_many(self, keys):
        keys = list(keys)
        self.deleted_batches.append(keys)
        return super().delete_many(keys)


class ThumbnailWriteFailsStore(RecordingStore):
    def put(self, key, data, content_type, cache_control=None, metadata=None):
        if key.startswith("thumbnails/"):
            raise StorageWriteFailed("disk full", key=key)
        return super().put(key, data, content_type, cache_control, metadata)


class PutFailsStore(RecordingStore):
    def put(self, key, data, content_type, cache_control=None, metadata=None):
        raise StorageWriteFailed("bucket unavailable", key=key)


class DeleteFailsStore(RecordingStore):
    def delete(self, key):
        raise StorageDeleteFailed("permission denied", key=key)


def _make(store_cls, tmp_path, **kwargs):
    store = store_cls(tmp_path / "blobs", "http://testserver", "secret")
    return store, UploadService(store, settings, **kwargs)


def _width(data: bytes) -> int:
    with Image.open(BytesIO(data)) as img:
        return img.width


# ---------------------------------------------------------------------------
# Targets and state


def test_build_upload_target_tags_original():
    target = build_upload_target(USER, "Lowe's receipt.JPG", "image/jpeg")
    assert target.key.startswith("receipts/9/")
    assert target.key.split("/")[4] == "4"
    assert target.key.endswith(".jpg")
    tags = target.metadata.to_object_metadata()
    assert tags["schema-version"] == "1"
    assert tags["original-name"] == "Lowes_receipt.JPG"
    assert tags["uploaded-by"] == "4"
    assert tags["company-id"] == "9"
    assert "upload-date" in tags


def test_build_upload_target_requires_authenticated_user():
    with pytest.raises(PermissionError):
        build_upload_target(types.SimpleNamespace(id=None, company_id=1), "a.jpg", "image/jpeg")


def test_upload_record_rejects_illegal_transitions():
    record = UploadRecord("receipts/1/2024/01/1/a.jpg")
    with pytest.raises(RuntimeError):
        record.advance(UploadState.COMPLETED)
    record.advance(UploadState.STORED)
    record.advance(UploadState.THUMBNAIL_PENDING)
    record.advance(UploadState.COMPLETED)
    assert record.history == [
        UploadState.UPLOADING,
        UploadState.STORED,
        UploadState.THUMBNAIL_PENDING,
        UploadState.COMPLETED,
    ]


# ---------------------------------------------------------------------------
# Single file


@pytest.mark.asyncio
async def test_ingest_large_jpeg_end_to_end(tmp_path):
    store, service = _make(RecordingStore, tmp_path)
    data = padded_jpeg(2000, 1500, 3_145_728)
    target = build_upload_target(USER, "site.jpg", "image/jpeg")

    result = await service.ingest(target, data)

    assert result.state == UploadState.COMPLETED
    processed = result.processed
    meta = processed.original_metadata
    assert (meta.width, meta.height, meta.format, meta.size) == (2000, 1500, "jpeg", 3_145_728)
    assert processed.thumbnail_key == derive_thumbnail_key(target.key)
    assert _width(store.get(processed.thumbnail_key)) <= 400

    thumb_info = store.head(processed.thumbnail_key)
    assert thumb_info.content_type == "image/jpeg"
    assert thumb_info.cache_control == "max-age=31536000"
    assert thumb_info.metadata["original-key"] == target.key
    assert thumb_info.metadata["schema-version"] == "1"

    original_info = store.head(target.key)
    assert original_info.size == 3_145_728
    assert original_info.metadata["uploaded-by"] == "4"

    assert processed.thumbnail_url != processed.thumbnail_key
    assert "sig=" in processed.thumbnail_url
    assert store.deleted_batches == []


@pytest.mark.asyncio
async def test_ingest_pdf_is_unsupported_and_cleaned_up(tmp_path):
    store, service = _make(RecordingStore, tmp_path)
    target = build_upload_target(USER, "invoice.pdf", "application/pdf")

    with pytest.raises(UnsupportedFormat):
        await service.ingest(target, PDF_BYTES)

    assert not store.exists(target.key)
    assert not store.exists(derive_thumbnail_key(target.key))
    assert store.deleted_batches == [[target.key, derive_thumbnail_key(target.key)]]


@pytest.mark.asyncio
async def test_ingest_small_png_is_rejected_and_cleaned_up(tmp_path):
    store, service = _make(RecordingStore, tmp_path)
    target = build_upload_target(USER, "tiny.png", "image/png")

    with pytest.raises(DimensionsTooSmall):
        await service.ingest(target, encode_image(50, 50, "PNG"))

    assert not store.exists(target.key)
    assert not store.exists(derive_thumbnail_key(target.key))


@pytest.mark.asyncio
async def test_store_original_failure_is_upload_failed(tmp_path):
    _store, service = _make(PutFailsStore, tmp_path)
    target = build_upload_target(USER, "a.jpg", "image/jpeg")
    record = UploadRecord(target.key)

    with pytest.raises(StorageWriteFailed) as excinfo:
        await service.store_original(target, encode_image(200, 200), record)

    assert excinfo.value.retriable
    assert record.state == UploadState.UPLOAD_FAILED


@pytest.mark.asyncio
async def test_ingest_keeps_original_when_asked(tmp_path):
    store, service = _make(ThumbnailWriteFailsStore, tmp_path)
    target = build_upload_target(USER, "a.jpg", "image/jpeg")

    result = await service.ingest(target, encode_image(600, 400), keep_original_on=STORAGE_ERRORS)

    assert result.processed is None
    assert isinstance(result.error, StorageWriteFailed)
    assert result.state == UploadState.FAILED
    assert store.exists(target.key)


@pytest.mark.asyncio
async def test_ingest_thumbnail_write_failure_cleans_up_by_default(tmp_path):
    store, service = _make(ThumbnailWriteFailsStore, tmp_path)
    target = build_upload_target(USER, "a.jpg", "image/jpeg")

    with pytest.raises(StorageWriteFailed):
        await service.ingest(target, encode_image(600, 400))

    assert not store.exists(target.key)


@pytest.mark.asyncio
async def test_process_rejects_non_receipt_key_before_io(tmp_path):
    _store, service = _make(RecordingStore, tmp_path)
    with pytest.raises(InvalidKey):
        await service.process_receipt_image("thumbnails/1/2024/01/1/a.jpg")


@pytest.mark.asyncio
async def test_process_missing_original(tmp_path):
    _store, service = _make(RecordingStore, tmp_path)
    with pytest.raises(ObjectNotFound):
        await service.process_receipt_image("receipts/1/2024/01/1/missing.jpg")


@pytest.mark.asyncio
async def test_process_never_deletes_original(tmp_path):
    store, service = _make(RecordingStore, tmp_path)
    key = "receipts/1/2024/01/1/small.png"
    store.put(key, encode_image(20, 20, "PNG"), "image/png")
    with pytest.raises(DimensionsTooSmall):
        await service.process_receipt_image(key)
    assert store.exists(key)
    assert store.deleted_batches == []


@pytest.mark.asyncio
async def test_process_wraps_unexpected_errors(tmp_path, monkeypatch):
    store, service = _make(RecordingStore, tmp_path)
    key = "receipts/1/2024/01/1/a.jpg"
    store.put(key, encode_image(200, 200), "image/jpeg")

    def boom(*args, **kwargs):
        raise RuntimeError("codec crashed")

    monkeypatch.setattr(upload_module, "make_thumbnail", boom)
    with pytest.raises(ReceiptPipelineError) as excinfo:
        await service.process_receipt_image(key)
    assert excinfo.value.code == "pipeline_error"
    assert isinstance(excinfo.value.__cause__, RuntimeError)


@pytest.mark.asyncio
async def test_heic_sources_are_converted_before_thumbnailing(tmp_path, monkeypatch):
    store, service = _make(RecordingStore, tmp_path)
    key = "receipts/1/2024/01/1/photo.heic"
    store.put(key, b"heic-bytes", "image/heic")
    converted = encode_image(1200, 900)
    calls = []

    monkeypatch.setattr(upload_module, "decode_metadata", lambda data: ImageMetadata(1200, 900, "heic"))

    def fake_convert(data, quality):
        calls.append((data, quality))
        return converted

    monkeypatch.setattr(upload_module, "convert_to_standard_format", fake_convert)

    processed = await service.process_receipt_image(key)

    assert calls == [(b"heic-bytes", settings.CONVERSION_QUALITY)]
    assert processed.original_metadata.format == "heic"
    assert _width(store.get(processed.thumbnail_key)) == 400


# ---------------------------------------------------------------------------
# Batch


@pytest.mark.asyncio
async def test_batch_partial_failure_has_no_cross_file_rollback(tmp_path):
    store, service = _make(RecordingStore, tmp_path)
    good = [f"receipts/1/2024/01/1/good{i}.jpg" for i in range(3)]
    for key in good:
        store.put(key, encode_image(800, 600), "image/jpeg")
    pdf_key = "receipts/1/2024/01/1/doc.pdf"
    tiny_key = "receipts/1/2024/01/1/tiny.png"
    store.put(pdf_key, PDF_BYTES, "application/pdf")
    store.put(tiny_key, encode_image(50, 50, "PNG"), "image/png")

    result = await service.batch_process(good + [pdf_key, tiny_key])

    assert sorted(ok.key for ok in result.succeeded) == sorted(good)
    assert {bad.key: type(bad.error) for bad in result.failed} == {
        pdf_key: UnsupportedFormat,
        tiny_key: DimensionsTooSmall,
    }
    for key in good:
        assert store.exists(key)
        assert store.exists(derive_thumbnail_key(key))
    assert not store.exists(pdf_key)
    assert not store.exists(tiny_key)

    submitted = [k for batch in store.deleted_batches for k in batch]
    assert sorted(submitted) == sorted(
        [pdf_key, derive_thumbnail_key(pdf_key), tiny_key, derive_thumbnail_key(tiny_key)]
    )


@pytest.mark.asyncio
async def test_batch_respects_concurrency_limit(tmp_path):
    class SlowStore(RecordingStore):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            self._lock = threading.Lock()
            self.active = 0
            self.peak = 0

        def get(self, key):
            with self._lock:
                self.active += 1
                self.peak = max(self.peak, self.active)
            time.sleep(0.05)
            try:
                return super().get(key)
            finally:
                with self._lock:
                    self.active -= 1

    store, service = _make(SlowStore, tmp_path, max_concurrency=2)
    keys = [f"receipts/1/2024/01/1/k{i}.jpg" for i in range(6)]
    for key in keys:
        store.put(key, encode_image(120, 120), "image/jpeg")

    result = await service.batch_process(keys)

    assert len(result.succeeded) == 6
    assert store.peak <= 2


@pytest.mark.asyncio
async def test_ingest_many_reports_store_and_process_failures(tmp_path):
    store, service = _make(RecordingStore, tmp_path)
    ok = build_upload_target(USER, "ok.jpg", "image/jpeg")
    bad = build_upload_target(USER, "bad.pdf", "application/pdf")

    result = await service.ingest_many([(ok, encode_image(300, 300)), (bad, PDF_BYTES)])

    assert [s.key for s in result.succeeded] == [ok.key]
    assert result.succeeded[0].target is ok
    assert [f.key for f in result.failed] == [bad.key]
    assert result.failed[0].target is bad
    assert not store.exists(bad.key)


# ---------------------------------------------------------------------------
# Cleanup


@pytest.mark.asyncio
async def test_cleanup_of_never_stored_keys_does_not_raise(tmp_path):
    store, service = _make(RecordingStore, tmp_path)
    failed = await service.cleanup(["receipts/1/2024/01/1/never.jpg"])
    assert failed == []
    assert store.deleted_batches == [["receipts/1/2024/01/1/never.jpg", "thumbnails/1/2024/01/1/never.jpg"]]


@pytest.mark.asyncio
async def test_cleanup_dedupes_and_passes_other_keys_through(tmp_path):
    store, service = _make(RecordingStore, tmp_path)
    key = "receipts/1/2024/01/1/a.jpg"
    await service.cleanup([key, key, derive_thumbnail_key(key), "temp/1/2024/01/1/t.jpg", ""])
    assert store.deleted_batches == [[key, derive_thumbnail_key(key), "temp/1/2024/01/1/t.jpg"]]


@pytest.mark.asyncio
async def test_cleanup_reports_but_never_raises_delete_failures(tmp_path):
    _store, service = _make(DeleteFailsStore, tmp_path)
    key = "receipts/1/2024/01/1/a.jpg"
    failed = await service.cleanup([key])
    assert failed == [key, derive_thumbnail_key(key)]


@pytest.mark.asyncio
async def test_cleanup_failure_does_not_mask_processing_error(tmp_path):
    store, service = _make(DeleteFailsStore, tmp_path)
    target = build_upload_target(USER, "doc.pdf", "application/pdf")
    with pytest.raises(UnsupportedFormat):
        await service.ingest(target, PDF_BYTES)
    # delete failed, so the original is orphaned but the caller saw the real error
    assert store.exists(target.key)


@pytest.mark.asyncio
async def test_cleanup_with_nothing_to_do(tmp_path):
    store, service = _make(RecordingStore, tmp_path)
    assert await service.cleanup([]) == []
    assert store.deleted_batches == []


@pytest.mark.asyncio
async def test_cleanup_refuses_keys_of_another_tenant(tmp_path):
    store, service = _make(RecordingStore, tmp_path)
    own = "receipts/9/2024/01/4/a.jpg"
    foreign = "receipts/3/2024/01/8/b.jpg"
    failed = await service.cleanup([own, foreign, "not-a-key"], tenant_id=9)
    assert failed == []
    assert store.deleted_batches == [[own, derive_thumbnail_key(own)]]


@pytest.mark.asyncio
async def test_cleanup_with_only_foreign_keys_deletes_nothing(tmp_path):
    store, service = _make(RecordingStore, tmp_path)
    assert await service.cleanup(["receipts/3/2024/01/8/b.jpg"], tenant_id="9") == []
    assert store.deleted_batches == []
