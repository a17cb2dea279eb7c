"""Receipt ingestion pipeline.

Composes the object store, key scheme, validation and image processing
into the single-file and batch upload flows::

    UPLOADING -> STORED -> THUMBNAIL_PENDING -> COMPLETED
    UPLOADING -> UPLOAD_FAILED
    STORED -> PROCESSING_FAILED -> CLEANUP -> FAILED

Storage calls and Pillow work are blocking, so each runs in a worker
thread; batch pipelines interleave at those boundaries and are bounded
by ``MAX_BATCH_FILES``.  Keys are unique per upload, so concurrent
pipelines never share mutable state.

Cleanup is advisory: delete failures are logged and never replace the
error that triggered the cleanup.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple, Type

from buildledger.core.config import Settings, settings as default_settings
from buildledger.core.exceptions import InvalidKey, ReceiptPipelineError, StorageDeleteFailed
from buildledger.core.observability import sentry_breadcrumb, sentry_metric_inc
from buildledger.models.schemas import OriginalImageMetadata, StoredObjectMetadata, ThumbnailObjectMetadata
from buildledger.services.storage_service import ObjectStore
from buildledger.utils.image_processing import (
    convert_to_standard_format,
    decode_metadata,
    make_thumbnail,
    needs_conversion,
)
from buildledger.utils.sanitization import safe_filename
from buildledger.utils.storage_keys import derive_receipt_key, derive_thumbnail_key, key_belongs_to_tenant
from buildledger.utils.validation import validate_dimensions

logger = logging.getLogger(__name__)


class UploadState(str, Enum):
    UPLOADING = "uploading"
    STORED = "stored"
    THUMBNAIL_PENDING = "thumbnail_pending"
    COMPLETED = "completed"
    UPLOAD_FAILED = "upload_failed"
    PROCESSING_FAILED = "processing_failed"
    CLEANUP = "cleanup"
    FAILED = "failed"


_TRANSITIONS = {
    UploadState.UPLOADING: {UploadState.STORED, UploadState.UPLOAD_FAILED},
    UploadState.STORED: {UploadState.THUMBNAIL_PENDING, UploadState.PROCESSING_FAILED},
    UploadState.THUMBNAIL_PENDING: {UploadState.COMPLETED, UploadState.PROCESSING_FAILED},
    UploadState.PROCESSING_FAILED: {UploadState.CLEANUP},
    UploadState.CLEANUP: {UploadState.FAILED},
}


@dataclass
class UploadRecord:
    """Per-file state tracker."""

    key: str
    state: UploadState = UploadState.UPLOADING
    history: List[UploadState] = field(default_factory=lambda: [UploadState.UPLOADING])
    error: Optional[BaseException] = None

    def advance(self, new_state: UploadState) -> None:
        if new_state not in _TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Illegal upload transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)


@dataclass
class UploadTarget:
    """Where and how an original is written."""

    key: str
    filename: str
    content_type: str
    metadata: StoredObjectMetadata


@dataclass
class ProcessedImage:
    thumbnail_key: str
    thumbnail_url: str
    original_metadata: OriginalImageMetadata


@dataclass
class ProcessedUpload:
    key: str
    processed: ProcessedImage
    target: Optional[UploadTarget] = None


@dataclass
class FailedUpload:
    key: str
    error: Exception
    target: Optional[UploadTarget] = None
    state: UploadState = UploadState.FAILED


@dataclass
class BatchResult:
    succeeded: List[ProcessedUpload] = field(default_factory=list)
    failed: List[FailedUpload] = field(default_factory=list)


@dataclass
class IngestResult:
    key: str
    record: UploadRecord
    processed: Optional[ProcessedImage] = None
    error: Optional[Exception] = None

    @property
    def state(self) -> UploadState:
        return self.record.state


def build_upload_target(
    user: Any,
    filename: Optional[str],
    content_type: Optional[str],
    now: Optional[dt.datetime] = None,
) -> UploadTarget:
    """Resolve key, content type and object tags for a new upload.

    ``user`` needs ``id`` and ``company_id`` attributes.
    """
    if getattr(user, "id", None) is None or getattr(user, "company_id", None) is None:
        raise PermissionError("User authentication required")
    now = now or dt.datetime.now(dt.timezone.utc)
    original_name = filename or "receipt"
    return UploadTarget(
        key=derive_receipt_key(user.company_id, user.id, original_name, now=now),
        filename=original_name,
        content_type=content_type or "application/octet-stream",
        metadata=StoredObjectMetadata(
            original_name=safe_filename(original_name),
            uploaded_by=str(user.id),
            company_id=str(user.company_id),
            upload_date=now,
        ),
    )


class UploadService:
    """Upload orchestrator; one instance per request is fine."""

    def __init__(self, store: ObjectStore, cfg: Optional[Settings] = None, max_concurrency: Optional[int] = None) -> None:
        self.store = store
        self.settings = cfg or default_settings
        self._max_concurrency = max(1, max_concurrency or self.settings.MAX_BATCH_FILES)

    # ------------------------------------------------------------------
    # Single steps

    async def store_original(self, target: UploadTarget, data: bytes, record: Optional[UploadRecord] = None) -> UploadRecord:
        record = record or UploadRecord(target.key)
        try:
            await asyncio.to_thread(
                self.store.put,
                target.key,
                data,
                target.content_type,
                None,
                target.metadata.to_object_metadata(),
            )
        except Exception as exc:
            record.advance(UploadState.UPLOAD_FAILED)
            record.error = exc
            sentry_metric_inc("receipts.upload_failed")
            raise
        record.advance(UploadState.STORED)
        return record

    async def process_receipt_image(self, key: str) -> ProcessedImage:
        """Fetch ``key``, build its thumbnail and store it at the derived key.

        Never deletes the original; on failure the caller decides what to
        clean up.
        """
        thumbnail_key = derive_thumbnail_key(key)
        try:
            data = await asyncio.to_thread(self.store.get, key)
            meta = await asyncio.to_thread(decode_metadata, data)
            validate_dimensions(meta, self.settings.MIN_IMAGE_WIDTH, self.settings.MIN_IMAGE_HEIGHT)

            source = data
            if needs_conversion(meta):
                source = await asyncio.to_thread(convert_to_standard_format, data, self.settings.CONVERSION_QUALITY)
            thumb = await asyncio.to_thread(
                make_thumbnail, source, self.settings.THUMBNAIL_MAX_WIDTH, self.settings.THUMBNAIL_QUALITY
            )

            tags = ThumbnailObjectMetadata(original_key=key, processed_at=dt.datetime.now(dt.timezone.utc))
            await asyncio.to_thread(
                self.store.put,
                thumbnail_key,
                thumb,
                "image/jpeg",
                self.settings.THUMBNAIL_CACHE_CONTROL,
                tags.to_object_metadata(),
            )
        except ReceiptPipelineError as exc:
            logger.info("[upload] processing failed key=%s code=%s", key, exc.code)
            raise
        except Exception as exc:
            logger.exception("[upload] unexpected processing error key=%s", key)
            raise ReceiptPipelineError("Failed to process receipt image", key=key) from exc

        logger.info("[upload] thumbnail stored key=%s thumb=%s bytes=%d", key, thumbnail_key, len(thumb))
        return ProcessedImage(
            thumbnail_key=thumbnail_key,
            thumbnail_url=self.store.signed_url(thumbnail_key, self.settings.SIGNED_URL_TTL),
            original_metadata=OriginalImageMetadata(
                width=meta.width, height=meta.height, format=meta.format, size=len(data)
            ),
        )

    async def cleanup(self, keys: Sequence[str], tenant_id: Optional[int | str] = None) -> List[str]:
        """Best-effort delete of originals plus their derived thumbnails.

        With ``tenant_id`` set, keys outside that tenant's prefix are refused
        and left alone.  Returns the keys that could not be deleted.  Never
        raises.
        """
        expanded: List[str] = []
        for key in keys:
            if not key:
                continue
            if tenant_id is not None and not key_belongs_to_tenant(key, tenant_id):
                logger.warning("[upload] cleanup refused cross-tenant key=%s tenant=%s", key, tenant_id)
                continue
            expanded.append(key)
            try:
                expanded.append(derive_thumbnail_key(key))
            except InvalidKey:
                pass
        unique = list(dict.fromkeys(expanded))
        if not unique:
            return []
        sentry_breadcrumb("upload", "cleanup", data={"keys": len(unique)})
        try:
            failed = await asyncio.to_thread(self.store.delete_many, unique)
        except Exception as exc:
            logger.error("[upload] cleanup request failed keys=%s err=%s", unique, exc)
            sentry_metric_inc("receipts.cleanup_failed", value=len(unique))
            return unique
        for key in failed:
            logger.warning("[upload] %s", StorageDeleteFailed(f"Orphaned object left behind: {key}", key=key))
        if failed:
            sentry_metric_inc("receipts.cleanup_failed", value=len(failed))
        return failed

    # ------------------------------------------------------------------
    # Flows

    async def ingest(
        self,
        target: UploadTarget,
        data: bytes,
        keep_original_on: Tuple[Type[Exception], ...] = (),
    ) -> IngestResult:
        """Store an original and process it.

        On processing failure the original and any thumbnail are cleaned up
        and the processing error re-raised.  Errors listed in
        ``keep_original_on`` leave the original in place (only the thumbnail
        key is cleaned) and are returned on the result instead.
        """
        record = await self.store_original(target, data)
        record.advance(UploadState.THUMBNAIL_PENDING)
        try:
            processed = await self.process_receipt_image(target.key)
        except Exception as exc:
            record.advance(UploadState.PROCESSING_FAILED)
            record.error = exc
            record.advance(UploadState.CLEANUP)
            keep = bool(keep_original_on) and isinstance(exc, keep_original_on)
            if keep:
                await asyncio.to_thread(self.store.delete_many, [derive_thumbnail_key(target.key)])
            else:
                await self.cleanup([target.key], tenant_id=target.metadata.company_id)
            record.advance(UploadState.FAILED)
            sentry_metric_inc("receipts.processing_failed", tags={"code": getattr(exc, "code", "unknown")})
            if keep:
                return IngestResult(key=target.key, record=record, error=exc)
            raise
        record.advance(UploadState.COMPLETED)
        return IngestResult(key=target.key, record=record, processed=processed)

    async def batch_process(self, keys: Sequence[str]) -> BatchResult:
        """Process already-stored originals concurrently and independently.

        A failure never aborts or reverts another file.  Every failed key
        (and its derived thumbnail key) is submitted to cleanup afterwards.
        """
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _one(key: str) -> ProcessedImage:
            async with semaphore:
                return await self.process_receipt_image(key)

        outcomes = await asyncio.gather(*(_one(k) for k in keys), return_exceptions=True)

        result = BatchResult()
        for key, outcome in zip(keys, outcomes):
            if isinstance(outcome, ProcessedImage):
                result.succeeded.append(ProcessedUpload(key=key, processed=outcome))
            elif isinstance(outcome, Exception):
                logger.warning("[upload] batch item failed key=%s err=%s", key, outcome)
                result.failed.append(FailedUpload(key=key, error=outcome))
            else:
                raise outcome
        if result.failed:
            await self.cleanup([f.key for f in result.failed])
        logger.info("[upload] batch done ok=%d failed=%d", len(result.succeeded), len(result.failed))
        return result

    async def ingest_many(self, items: Sequence[Tuple[UploadTarget, bytes]]) -> BatchResult:
        """Store many originals concurrently, then batch process the stored ones."""
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _store(target: UploadTarget, data: bytes) -> UploadRecord:
            async with semaphore:
                return await self.store_original(target, data)

        stored = await asyncio.gather(*(_store(t, d) for t, d in items), return_exceptions=True)

        result = BatchResult()
        targets = {}
        for (target, _data), outcome in zip(items, stored):
            if isinstance(outcome, UploadRecord):
                targets[target.key] = target
            elif isinstance(outcome, Exception):
                result.failed.append(
                    FailedUpload(key=target.key, error=outcome, target=target, state=UploadState.UPLOAD_FAILED)
                )
            else:
                raise outcome

        processed = await self.batch_process(list(targets))
        for ok in processed.succeeded:
            ok.target = targets[ok.key]
            result.succeeded.append(ok)
        for bad in processed.failed:
            bad.target = targets[bad.key]
            result.failed.append(bad)
        return result
