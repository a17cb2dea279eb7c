"""API routes for receipt upload and retrieval."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from sqlalchemy.exc import SQLAlchemyError

from buildledger.api.dependencies import (
    get_current_user,
    get_receipt_service,
    get_upload_service,
    require_roles,
)
from buildledger.core.config import settings
from buildledger.core.exceptions import STORAGE_ERRORS, ReceiptPipelineError
from buildledger.core.observability import sentry_breadcrumb, sentry_set_tags
from buildledger.models.enums import ExpenseCategory, ReceiptStatus, UserRole
from buildledger.models.schemas import (
    BatchUploadFailure,
    BatchUploadResponse,
    Pagination,
    ReceiptCreate,
    ReceiptListResponse,
    ReceiptResponse,
    ReceiptStatistics,
    ReceiptUpdate,
)
from buildledger.models.tables import User
from buildledger.services.receipt_service import ReceiptService, receipt_statistics, to_receipt_read
from buildledger.services.upload_service import UploadService, UploadTarget, build_upload_target
from buildledger.utils.helpers import page_count
from buildledger.utils.sanitization import sanitize_string
from buildledger.utils.validation import validate_upload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/receipts", tags=["receipts"])


async def _require_job(service: ReceiptService, job_id: Optional[int], company_id: int) -> None:
    if job_id is not None and await service.get_job(job_id, company_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")


async def _load_receipt(service: ReceiptService, receipt_id: int, user: User):
    receipt = await service.get_receipt(receipt_id, user.company_id)
    if receipt is None:
        raise HTTPException(status_code=404, detail="Receipt not found")
    return receipt


@router.post("/upload", response_model=ReceiptResponse, status_code=status.HTTP_201_CREATED)
async def upload_receipt(
    receipt: UploadFile = File(...),
    amount: float = Form(..., gt=0),
    receipt_date: datetime = Form(...),
    tax: Optional[float] = Form(None, ge=0),
    vendor_name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    job_id: Optional[int] = Form(None),
    category: Optional[ExpenseCategory] = Form(None),
    user: User = Depends(get_current_user),
    service: ReceiptService = Depends(get_receipt_service),
    uploads: UploadService = Depends(get_upload_service),
) -> ReceiptResponse:
    """Upload one receipt image with its expense details.

    The image is validated before anything is stored.  Once stored, any
    later failure (processing, unknown job, database) removes the original
    and its thumbnail before the error is returned.
    """
    data = await receipt.read()
    validate_upload(receipt.filename, receipt.content_type, len(data))

    target = build_upload_target(user, receipt.filename, receipt.content_type)
    sentry_set_tags({"receipt_key": target.key})
    sentry_breadcrumb("upload", "receipt validated", data={"size": len(data)})

    keep_on = STORAGE_ERRORS if settings.KEEP_ORIGINAL_ON_THUMBNAIL_FAILURE else ()
    result = await uploads.ingest(target, data, keep_original_on=keep_on)

    try:
        await _require_job(service, job_id, user.company_id)
        row = await service.create_uploaded(
            user,
            target,
            len(data),
            amount=amount,
            tax=tax,
            receipt_date=receipt_date,
            vendor_name=sanitize_string(vendor_name),
            description=sanitize_string(description),
            category=category,
            job_id=job_id,
            processed=result.processed,
            error=result.error,
        )
    except BaseException:
        await uploads.cleanup([target.key], tenant_id=user.company_id)
        raise

    message = "Receipt uploaded successfully"
    if result.error is not None:
        message = "Receipt saved but image processing failed"
    logger.info("[receipts] uploaded id=%s key=%s status=%s", row.id, target.key, row.status.value)
    return ReceiptResponse(data=to_receipt_read(row, uploads.store), message=message)


@router.post("/upload-multiple", response_model=BatchUploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_multiple_receipts(
    receipts: List[UploadFile] = File(...),
    user: User = Depends(get_current_user),
    service: ReceiptService = Depends(get_receipt_service),
    uploads: UploadService = Depends(get_upload_service),
) -> BatchUploadResponse:
    """Upload several receipt images at once.

    Files are independent: invalid or failing files are reported in
    ``failed`` and never affect the others.  Each stored file becomes a
    PROCESSED receipt with a zero amount, to be completed later.
    """
    if len(receipts) > settings.MAX_BATCH_FILES:
        raise HTTPException(status_code=400, detail=f"Maximum {settings.MAX_BATCH_FILES} files allowed")

    failed: List[BatchUploadFailure] = []
    items: List[Tuple[UploadTarget, bytes]] = []
    for upload in receipts:
        data = await upload.read()
        try:
            validate_upload(upload.filename, upload.content_type, len(data))
        except ReceiptPipelineError as exc:
            failed.append(BatchUploadFailure(filename=upload.filename, code=exc.code, error=exc.message))
            continue
        items.append((build_upload_target(user, upload.filename, upload.content_type), data))

    batch = await uploads.ingest_many(items)
    sizes = {target.key: len(data) for target, data in items}

    created = []
    for ok in batch.succeeded:
        try:
            row = await service.create_uploaded(
                user,
                ok.target,
                sizes[ok.key],
                amount=0,
                receipt_date=datetime.now(timezone.utc),
                processed=ok.processed,
            )
        except SQLAlchemyError as exc:
            logger.error("[receipts] batch persist failed key=%s err=%s", ok.key, exc)
            await service.db.rollback()
            await uploads.cleanup([ok.key], tenant_id=user.company_id)
            failed.append(BatchUploadFailure(filename=ok.target.filename, code="persist_failed", error="Failed to save receipt"))
            continue
        created.append(to_receipt_read(row, uploads.store))

    for bad in batch.failed:
        code = getattr(bad.error, "code", "pipeline_error")
        message = getattr(bad.error, "message", None) or "Failed to process receipt image"
        failed.append(BatchUploadFailure(filename=bad.target.filename if bad.target else None, code=code, error=message))

    return BatchUploadResponse(
        data=created,
        failed=failed,
        message=f"{len(created)} of {len(receipts)} receipts uploaded successfully",
    )


@router.post("", response_model=ReceiptResponse, status_code=status.HTTP_201_CREATED)
async def create_receipt(
    payload: ReceiptCreate,
    user: User = Depends(get_current_user),
    service: ReceiptService = Depends(get_receipt_service),
    uploads: UploadService = Depends(get_upload_service),
) -> ReceiptResponse:
    """Record an expense without an image."""
    await _require_job(service, payload.job_id, user.company_id)
    row = await service.create_manual(user, payload)
    return ReceiptResponse(data=to_receipt_read(row, uploads.store), message="Receipt created successfully")


@router.get("", response_model=ReceiptListResponse)
async def list_receipts(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[ReceiptStatus] = Query(None, alias="status"),
    job_id: Optional[int] = None,
    search: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    user: User = Depends(get_current_user),
    service: ReceiptService = Depends(get_receipt_service),
    uploads: UploadService = Depends(get_upload_service),
) -> ReceiptListResponse:
    rows, total = await service.list_receipts(
        user.company_id,
        page=page,
        limit=limit,
        status=status_filter,
        job_id=job_id,
        search=search,
        start_date=start_date,
        end_date=end_date,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return ReceiptListResponse(
        data=[to_receipt_read(r, uploads.store) for r in rows],
        pagination=Pagination(page=page, limit=limit, total=total, pages=page_count(total, limit)),
    )


@router.get("/statistics", response_model=ReceiptStatistics)
async def get_receipt_statistics(
    user: User = Depends(get_current_user),
    service: ReceiptService = Depends(get_receipt_service),
) -> ReceiptStatistics:
    return await receipt_statistics(service.db, user.company_id)


@router.get("/{receipt_id}", response_model=ReceiptResponse)
async def get_receipt(
    receipt_id: int,
    user: User = Depends(get_current_user),
    service: ReceiptService = Depends(get_receipt_service),
    uploads: UploadService = Depends(get_upload_service),
) -> ReceiptResponse:
    row = await _load_receipt(service, receipt_id, user)
    return ReceiptResponse(data=to_receipt_read(row, uploads.store))


@router.put("/{receipt_id}", response_model=ReceiptResponse)
async def update_receipt(
    receipt_id: int,
    payload: ReceiptUpdate,
    user: User = Depends(get_current_user),
    service: ReceiptService = Depends(get_receipt_service),
    uploads: UploadService = Depends(get_upload_service),
) -> ReceiptResponse:
    """Edit expense details and/or move the receipt through review."""
    row = await _load_receipt(service, receipt_id, user)
    if "job_id" in payload.model_fields_set:
        await _require_job(service, payload.job_id, user.company_id)
    row = await service.update(row, payload, user)
    return ReceiptResponse(data=to_receipt_read(row, uploads.store), message="Receipt updated successfully")


@router.post("/{receipt_id}/reprocess", response_model=ReceiptResponse)
async def reprocess_receipt(
    receipt_id: int,
    user: User = Depends(get_current_user),
    service: ReceiptService = Depends(get_receipt_service),
    uploads: UploadService = Depends(get_upload_service),
) -> ReceiptResponse:
    """Rebuild the thumbnail for a PENDING or FAILED receipt."""
    row = await _load_receipt(service, receipt_id, user)
    row = await service.reprocess(row, uploads)
    message = "Receipt reprocessed successfully" if row.status == ReceiptStatus.PROCESSED else "Receipt processing failed"
    return ReceiptResponse(data=to_receipt_read(row, uploads.store), message=message)


@router.delete("/{receipt_id}")
async def delete_receipt(
    receipt_id: int,
    user: User = Depends(require_roles(UserRole.ADMIN)),
    service: ReceiptService = Depends(get_receipt_service),
    uploads: UploadService = Depends(get_upload_service),
):
    row = await _load_receipt(service, receipt_id, user)
    purged = await service.delete(row, uploads)
    return {
        "message": "Receipt deleted successfully",
        "files_removed": purged,
    }
