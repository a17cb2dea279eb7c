"""Pydantic schemas for request and response models.

Pydantic models are used for validating and serialising data that
crosses the boundary of the API.  They are intentionally separate from
the ORM models: receipts are stored with raw object keys, but the API
only ever returns signed URLs.

The metadata models at the top are the typed, versioned replacement for
free-form metadata bags.  Every one carries ``schema_version`` so new
fields can be added without breaking older readers; readers ignore
unknown fields.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import ExpenseCategory, JobStatus, ReceiptStatus


METADATA_SCHEMA_VERSION = 1


# ---------------------------------------------------------------------------
# Versioned metadata


class _VersionedMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: int = METADATA_SCHEMA_VERSION

    def to_object_metadata(self) -> Dict[str, str]:
        """Flatten into string user-metadata for the object store."""
        return {
            k.replace("_", "-"): (v.isoformat() if isinstance(v, datetime) else str(v))
            for k, v in self.model_dump().items()
            if v is not None
        }


class StoredObjectMetadata(_VersionedMetadata):
    """Tags attached to an uploaded original."""

    original_name: str
    uploaded_by: str
    company_id: str
    upload_date: datetime


class ThumbnailObjectMetadata(_VersionedMetadata):
    """Tags attached to a derived thumbnail, linking back to its original."""

    original_key: str
    processed_at: datetime


class OriginalImageMetadata(BaseModel):
    width: int
    height: int
    format: str
    size: int


class ReceiptFileMetadata(_VersionedMetadata):
    """Stored on ``Receipt.file_metadata``."""

    original_filename: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    image: Optional[OriginalImageMetadata] = None
    processing_error: Optional[str] = None


# ---------------------------------------------------------------------------
# Receipts


def _sanitize(v):
    from buildledger.utils.sanitization import sanitize_string
    return sanitize_string(v) if isinstance(v, str) else v


class ReceiptCreate(BaseModel):
    """Manually entered receipt (no image)."""

    amount: float = Field(gt=0)
    tax: Optional[float] = Field(default=None, ge=0)
    vendor_name: Optional[str] = None
    receipt_date: datetime
    description: Optional[str] = None
    category: Optional[ExpenseCategory] = None
    job_id: Optional[int] = None

    @field_validator("vendor_name", "description", mode="before")
    def sanitize_fields(cls, v):
        return _sanitize(v)


class ReceiptUpdate(BaseModel):
    amount: Optional[float] = Field(default=None, gt=0)
    tax: Optional[float] = Field(default=None, ge=0)
    vendor_name: Optional[str] = None
    receipt_date: Optional[datetime] = None
    description: Optional[str] = None
    category: Optional[ExpenseCategory] = None
    job_id: Optional[int] = None
    status: Optional[ReceiptStatus] = None
    rejection_reason: Optional[str] = None

    @field_validator("vendor_name", "description", "rejection_reason", mode="before")
    def sanitize_fields(cls, v):
        return _sanitize(v)

    # Only runs when the field is sent, so an omitted amount stays untouched.
    @field_validator("amount")
    def amount_not_null(cls, v):
        if v is None:
            raise ValueError("amount cannot be null")
        return v


class ReceiptRead(BaseModel):
    id: int
    image_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    amount: float
    tax: Optional[float] = None
    total_amount: float
    vendor_name: Optional[str] = None
    receipt_date: datetime
    description: Optional[str] = None
    category: Optional[ExpenseCategory] = None
    status: ReceiptStatus
    processed_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    metadata: Optional[ReceiptFileMetadata] = None
    job_id: Optional[int] = None
    user_id: int
    company_id: int
    created_at: datetime
    updated_at: datetime


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class ReceiptListResponse(BaseModel):
    data: List[ReceiptRead]
    pagination: Pagination


class ReceiptResponse(BaseModel):
    data: ReceiptRead
    message: Optional[str] = None


class BatchUploadFailure(BaseModel):
    filename: Optional[str] = None
    code: str
    error: str


class BatchUploadResponse(BaseModel):
    data: List[ReceiptRead]
    failed: List[BatchUploadFailure] = Field(default_factory=list)
    message: str


class MonthlyTotal(BaseModel):
    month: str  # YYYY-MM
    count: int
    total: float


class VendorTotal(BaseModel):
    name: str
    count: int
    total_amount: float


class TotalStatistics(BaseModel):
    count: int
    amount: float


class ReceiptStatistics(BaseModel):
    total: TotalStatistics
    monthly: List[MonthlyTotal]
    status_counts: Dict[str, int]
    top_vendors: List[VendorTotal]


# ---------------------------------------------------------------------------
# Jobs


class JobCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    client_phone: Optional[str] = None
    address: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    budget: Optional[float] = Field(default=None, gt=0)
    status: Optional[JobStatus] = None

    @field_validator("name", "description", "client_name", "address", mode="before")
    def sanitize_fields(cls, v):
        return _sanitize(v)


class JobUpdate(JobCreate):
    name: Optional[str] = Field(default=None, min_length=1)


class JobStatistics(BaseModel):
    total_expenses: float
    receipt_count: int
    budget_remaining: Optional[float] = None
    budget_used_percentage: Optional[float] = None


class JobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    client_phone: Optional[str] = None
    address: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    budget: Optional[float] = None
    status: JobStatus
    company_id: int
    created_at: datetime
    updated_at: datetime
    statistics: Optional[JobStatistics] = None
