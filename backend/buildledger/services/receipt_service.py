"""Receipt and job records.

All queries are scoped to a company.  Receipts reference blobs by key
only; this module is the one place where rows and blobs are kept in step:

* uploads persist a row only after the pipeline has stored the blobs,
* deletes are two-phase (``deleted_at`` first, blobs next, row last) so a
  failed blob delete leaves a marked row for
  :func:`purge_deleted_receipts` to retry instead of an orphaned blob.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from buildledger.core.config import settings
from buildledger.core.exceptions import (
    InvalidKey,
    InvalidStatusTransition,
    ReceiptPipelineError,
    StatusChangeForbidden,
)
from buildledger.models.enums import ExpenseCategory, ReceiptStatus, UserRole
from buildledger.models.schemas import (
    JobStatistics,
    MonthlyTotal,
    ReceiptCreate,
    ReceiptFileMetadata,
    ReceiptRead,
    ReceiptStatistics,
    ReceiptUpdate,
    TotalStatistics,
    VendorTotal,
)
from buildledger.models.tables import Job, Receipt, User
from buildledger.services.storage_service import ObjectStore
from buildledger.services.upload_service import ProcessedImage, UploadService, UploadTarget
from buildledger.utils.helpers import last_n_months, to_naive_utc
from buildledger.utils.storage_keys import key_belongs_to_tenant

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[ReceiptStatus, set] = {
    ReceiptStatus.PENDING: {
        ReceiptStatus.PROCESSING,
        ReceiptStatus.FAILED,
        ReceiptStatus.APPROVED,
        ReceiptStatus.REJECTED,
    },
    ReceiptStatus.PROCESSING: {ReceiptStatus.PROCESSED, ReceiptStatus.FAILED},
    ReceiptStatus.PROCESSED: {ReceiptStatus.APPROVED, ReceiptStatus.REJECTED},
    ReceiptStatus.FAILED: {ReceiptStatus.PENDING, ReceiptStatus.PROCESSING},
    ReceiptStatus.APPROVED: {ReceiptStatus.REJECTED},
    ReceiptStatus.REJECTED: {ReceiptStatus.APPROVED, ReceiptStatus.PENDING},
}

REVIEW_STATUSES = {ReceiptStatus.APPROVED, ReceiptStatus.REJECTED}

SORTABLE_COLUMNS = {
    "created_at": Receipt.created_at,
    "receipt_date": Receipt.receipt_date,
    "amount": Receipt.amount,
    "total_amount": Receipt.total_amount,
    "vendor_name": Receipt.vendor_name,
    "status": Receipt.status,
}


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def compute_total_amount(amount: float, tax: Optional[float]) -> float:
    return round(float(amount) + float(tax or 0), 2)


def check_status_transition(
    current: ReceiptStatus, new: ReceiptStatus, role: Optional[UserRole] = None
) -> None:
    """Raise unless ``current -> new`` is allowed for ``role``.

    Setting the current status again is a no-op and always allowed.
    ``role=None`` is used for system-driven transitions.
    """
    if new == current:
        return
    if new in REVIEW_STATUSES and role == UserRole.CREW_MEMBER:
        raise StatusChangeForbidden("Crew members cannot approve or reject receipts")
    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransition(f"Cannot change receipt status from {current.value} to {new.value}")


def job_statistics(job: Job, receipts: Iterable[Receipt]) -> JobStatistics:
    receipts = list(receipts)
    total = round(
        sum(r.total_amount or 0 for r in receipts if r.status == ReceiptStatus.APPROVED), 2
    )
    remaining = used = None
    if job.budget:
        remaining = round(job.budget - total, 2)
        used = round(total / job.budget * 100, 2)
    return JobStatistics(
        total_expenses=total,
        receipt_count=len(receipts),
        budget_remaining=remaining,
        budget_used_percentage=used,
    )


def _merge_metadata(receipt: Receipt, **changes) -> None:
    # JSON columns are not mutation-tracked; always assign a fresh dict
    current = ReceiptFileMetadata.model_validate(receipt.file_metadata or {})
    receipt.file_metadata = current.model_copy(update=changes).model_dump(mode="json")


def to_receipt_read(receipt: Receipt, store: ObjectStore, ttl: Optional[int] = None) -> ReceiptRead:
    """Serialise a receipt, replacing object keys with signed URLs."""
    ttl = ttl or settings.SIGNED_URL_TTL
    return ReceiptRead(
        id=receipt.id,
        image_url=store.signed_url(receipt.image_key, ttl) if receipt.image_key else None,
        thumbnail_url=store.signed_url(receipt.thumbnail_key, ttl) if receipt.thumbnail_key else None,
        amount=receipt.amount,
        tax=receipt.tax,
        total_amount=receipt.total_amount,
        vendor_name=receipt.vendor_name,
        receipt_date=receipt.receipt_date,
        description=receipt.description,
        category=receipt.category,
        status=receipt.status,
        processed_at=receipt.processed_at,
        approved_at=receipt.approved_at,
        rejection_reason=receipt.rejection_reason,
        metadata=ReceiptFileMetadata.model_validate(receipt.file_metadata) if receipt.file_metadata else None,
        job_id=receipt.job_id,
        user_id=receipt.user_id,
        company_id=receipt.company_id,
        created_at=receipt.created_at,
        updated_at=receipt.updated_at,
    )


class ReceiptService:
    """Company-scoped receipt and job persistence."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Lookups

    async def get_job(self, job_id: int, company_id: int) -> Optional[Job]:
        result = await self.db.execute(select(Job).where(Job.id == job_id, Job.company_id == company_id))
        return result.scalar_one_or_none()

    async def get_receipt(self, receipt_id: int, company_id: int) -> Optional[Receipt]:
        result = await self.db.execute(
            select(Receipt).where(
                Receipt.id == receipt_id,
                Receipt.company_id == company_id,
                Receipt.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def list_receipts(
        self,
        company_id: int,
        *,
        page: int = 1,
        limit: int = 20,
        status: Optional[ReceiptStatus] = None,
        job_id: Optional[int] = None,
        search: Optional[str] = None,
        start_date: Optional[dt.datetime] = None,
        end_date: Optional[dt.datetime] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[List[Receipt], int]:
        stmt = select(Receipt).where(Receipt.company_id == company_id, Receipt.deleted_at.is_(None))
        if status is not None:
            stmt = stmt.where(Receipt.status == status)
        if job_id is not None:
            stmt = stmt.where(Receipt.job_id == job_id)
        if search:
            pattern = f"%{search.strip()}%"
            stmt = stmt.where(or_(Receipt.vendor_name.ilike(pattern), Receipt.description.ilike(pattern)))
        if start_date is not None:
            stmt = stmt.where(Receipt.receipt_date >= to_naive_utc(start_date))
        if end_date is not None:
            stmt = stmt.where(Receipt.receipt_date <= to_naive_utc(end_date))

        total = await self.db.scalar(select(func.count()).select_from(stmt.subquery()))

        column = SORTABLE_COLUMNS.get(sort_by, Receipt.created_at)
        order = column.asc() if sort_order == "asc" else column.desc()
        stmt = stmt.order_by(order, Receipt.id.desc()).offset((page - 1) * limit).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), int(total or 0)

    # ------------------------------------------------------------------
    # Writes

    async def create_manual(self, user: User, payload: ReceiptCreate) -> Receipt:
        receipt = Receipt(
            amount=payload.amount,
            tax=payload.tax,
            total_amount=compute_total_amount(payload.amount, payload.tax),
            vendor_name=payload.vendor_name,
            receipt_date=to_naive_utc(payload.receipt_date),
            description=payload.description,
            category=payload.category,
            status=ReceiptStatus.PENDING,
            file_metadata={},
            company_id=user.company_id,
            user_id=user.id,
            job_id=payload.job_id,
        )
        self.db.add(receipt)
        await self.db.commit()
        await self.db.refresh(receipt)
        return receipt

    async def create_uploaded(
        self,
        user: User,
        target: UploadTarget,
        size: int,
        *,
        amount: float,
        receipt_date: dt.datetime,
        processed: Optional[ProcessedImage] = None,
        error: Optional[Exception] = None,
        tax: Optional[float] = None,
        vendor_name: Optional[str] = None,
        description: Optional[str] = None,
        category: Optional[ExpenseCategory] = None,
        job_id: Optional[int] = None,
    ) -> Receipt:
        """Persist a receipt for an upload that the pipeline has already stored.

        ``processed`` set means the thumbnail exists (status PROCESSED);
        otherwise the row is saved FAILED with the error recorded.
        """
        meta = ReceiptFileMetadata(
            original_filename=target.filename,
            file_size=size,
            mime_type=target.content_type,
            image=processed.original_metadata if processed else None,
            processing_error=str(error) if error is not None else None,
        )
        receipt = Receipt(
            image_key=target.key,
            thumbnail_key=processed.thumbnail_key if processed else None,
            amount=amount,
            tax=tax,
            total_amount=compute_total_amount(amount, tax),
            vendor_name=vendor_name,
            receipt_date=to_naive_utc(receipt_date),
            description=description,
            category=category,
            status=ReceiptStatus.PROCESSED if processed else ReceiptStatus.FAILED,
            processed_at=_utcnow() if processed else None,
            file_metadata=meta.model_dump(mode="json"),
            company_id=user.company_id,
            user_id=user.id,
            job_id=job_id,
        )
        self.db.add(receipt)
        await self.db.commit()
        await self.db.refresh(receipt)
        return receipt

    def apply_status(
        self,
        receipt: Receipt,
        new_status: ReceiptStatus,
        role: Optional[UserRole] = None,
        rejection_reason: Optional[str] = None,
    ) -> None:
        check_status_transition(receipt.status, new_status, role)
        if new_status == receipt.status:
            return
        receipt.status = new_status
        if new_status == ReceiptStatus.APPROVED:
            receipt.approved_at = _utcnow()
            receipt.rejection_reason = None
        elif new_status == ReceiptStatus.REJECTED:
            receipt.rejection_reason = rejection_reason
            receipt.approved_at = None

    async def update(self, receipt: Receipt, payload: ReceiptUpdate, user: User) -> Receipt:
        data = payload.model_dump(exclude_unset=True)
        new_status = data.pop("status", None)
        rejection_reason = data.pop("rejection_reason", None)

        for field in ("amount", "tax", "vendor_name", "description", "category", "job_id"):
            if field in data:
                setattr(receipt, field, data[field])
        if data.get("receipt_date") is not None:
            receipt.receipt_date = to_naive_utc(data["receipt_date"])
        if "amount" in data or "tax" in data:
            receipt.total_amount = compute_total_amount(receipt.amount, receipt.tax)

        if new_status is not None:
            self.apply_status(receipt, new_status, user.role, rejection_reason)
        elif rejection_reason is not None and receipt.status == ReceiptStatus.REJECTED:
            receipt.rejection_reason = rejection_reason

        await self.db.commit()
        await self.db.refresh(receipt)
        return receipt

    async def reprocess(self, receipt: Receipt, uploads: UploadService) -> Receipt:
        """Rebuild the thumbnail for a stored original.

        On failure the original is kept, the thumbnail cleared and the
        error recorded on the receipt metadata.
        """
        if not receipt.image_key:
            raise InvalidStatusTransition("Receipt has no image to process")
        if not key_belongs_to_tenant(receipt.image_key, receipt.company_id):
            raise InvalidKey("Receipt image is outside this company", key=receipt.image_key)
        self.apply_status(receipt, ReceiptStatus.PROCESSING)
        await self.db.commit()

        try:
            processed = await uploads.process_receipt_image(receipt.image_key)
        except ReceiptPipelineError as exc:
            logger.warning("[receipts] reprocess failed id=%s key=%s code=%s", receipt.id, exc.key, exc.code)
            self.apply_status(receipt, ReceiptStatus.FAILED)
            receipt.thumbnail_key = None
            _merge_metadata(receipt, processing_error=exc.message)
        else:
            self.apply_status(receipt, ReceiptStatus.PROCESSED)
            receipt.thumbnail_key = processed.thumbnail_key
            receipt.processed_at = _utcnow()
            _merge_metadata(receipt, image=processed.original_metadata, processing_error=None)

        await self.db.commit()
        await self.db.refresh(receipt)
        return receipt

    async def delete(self, receipt: Receipt, uploads: UploadService) -> bool:
        """Two-phase delete.  Returns True when the row is gone for good."""
        receipt.deleted_at = _utcnow()
        await self.db.commit()
        return await _finish_delete(self.db, receipt, uploads)


async def _finish_delete(db: AsyncSession, receipt: Receipt, uploads: UploadService) -> bool:
    keys = [k for k in (receipt.image_key, receipt.thumbnail_key) if k]
    failed = await uploads.cleanup(keys, tenant_id=receipt.company_id) if keys else []
    if failed:
        logger.warning("[receipts] blob delete incomplete id=%s keys=%s; row kept for purge", receipt.id, failed)
        return False
    await db.delete(receipt)
    await db.commit()
    return True


async def purge_deleted_receipts(db: AsyncSession, uploads: UploadService) -> Tuple[int, int]:
    """Retry blob removal for rows marked deleted.  Returns ``(purged, remaining)``."""
    result = await db.execute(select(Receipt).where(Receipt.deleted_at.is_not(None)))
    purged = remaining = 0
    for receipt in result.scalars().all():
        if await _finish_delete(db, receipt, uploads):
            purged += 1
        else:
            remaining += 1
    logger.info("[receipts] purge done purged=%d remaining=%d", purged, remaining)
    return purged, remaining


async def load_job_statistics(db: AsyncSession, job: Job) -> JobStatistics:
    result = await db.execute(
        select(Receipt).where(
            Receipt.job_id == job.id,
            Receipt.company_id == job.company_id,
            Receipt.deleted_at.is_(None),
        )
    )
    return job_statistics(job, result.scalars().all())


async def receipt_statistics(
    db: AsyncSession, company_id: int, now: Optional[dt.datetime] = None
) -> ReceiptStatistics:
    """Company dashboard numbers: totals, last 12 months, statuses, top vendors."""
    now = now or _utcnow()
    live = (Receipt.company_id == company_id, Receipt.deleted_at.is_(None))

    row = (
        await db.execute(select(func.count(Receipt.id), func.coalesce(func.sum(Receipt.total_amount), 0)).where(*live))
    ).one()
    total = TotalStatistics(count=int(row[0] or 0), amount=round(float(row[1] or 0), 2))

    # Month bucketing is done here rather than in SQL so it works on SQLite and Postgres alike
    months = last_n_months(now, 12)
    oldest_year, oldest_month = (int(p) for p in months[-1].split("-"))
    window_start = dt.datetime(oldest_year, oldest_month, 1)
    buckets: Dict[str, List[float]] = defaultdict(lambda: [0, 0.0])
    dated = await db.execute(
        select(Receipt.receipt_date, Receipt.total_amount).where(*live, Receipt.receipt_date >= window_start)
    )
    for receipt_date, amount in dated.all():
        bucket = buckets[f"{receipt_date.year}-{receipt_date.month:02d}"]
        bucket[0] += 1
        bucket[1] += float(amount or 0)
    monthly = [
        MonthlyTotal(month=m, count=int(buckets[m][0]), total=round(buckets[m][1], 2)) if m in buckets
        else MonthlyTotal(month=m, count=0, total=0.0)
        for m in months
    ]

    status_rows = await db.execute(select(Receipt.status, func.count(Receipt.id)).where(*live).group_by(Receipt.status))
    status_counts = {s.value: 0 for s in ReceiptStatus}
    for status, count in status_rows.all():
        status_counts[status.value if hasattr(status, "value") else str(status)] = int(count)

    vendor_sum = func.sum(Receipt.total_amount)
    vendor_rows = await db.execute(
        select(Receipt.vendor_name, func.count(Receipt.id), vendor_sum)
        .where(*live, Receipt.vendor_name.is_not(None))
        .group_by(Receipt.vendor_name)
        .order_by(vendor_sum.desc())
        .limit(10)
    )
    top_vendors = [
        VendorTotal(name=name, count=int(count), total_amount=round(float(amount or 0), 2))
        for name, count, amount in vendor_rows.all()
    ]

    return ReceiptStatistics(total=total, monthly=monthly, status_counts=status_counts, top_vendors=top_vendors)
