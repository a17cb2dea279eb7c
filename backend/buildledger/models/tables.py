"""SQLAlchemy ORM models for the receipt tracking API.

These models define the relational database schema used by the
application.  Every business row belongs to exactly one company
(tenant) and all queries are expected to filter on ``company_id``.

Receipts reference their stored blobs by object key only.  Deleting a
row never deletes blobs implicitly; see
``buildledger.services.receipt_service`` for the two-phase delete.
"""

from __future__ import annotations

import datetime as dt

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    Enum,
    Float,
    ForeignKey,
    Text,
    JSON,
)
from sqlalchemy.orm import relationship

from buildledger.core.database import Base
from .enums import ExpenseCategory, JobStatus, ReceiptStatus, UserRole


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


class Company(Base):
    """Tenant owning users, jobs and receipts."""

    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=False)
    phone = Column(String, nullable=True)
    address = Column(String, nullable=True)
    tax_id = Column(String, nullable=True)
    settings = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    users = relationship("User", back_populates="company")
    jobs = relationship("Job", back_populates="company")
    receipts = relationship("Receipt", back_populates="company")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.CREW_MEMBER)
    is_active = Column(Boolean, nullable=False, default=True)
    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)

    company = relationship("Company", back_populates="users")
    receipts = relationship("Receipt", back_populates="user")


class Job(Base):
    """Construction job that receipts can be assigned to."""

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    client_name = Column(String, nullable=True)
    client_email = Column(String, nullable=True)
    client_phone = Column(String, nullable=True)
    address = Column(String, nullable=True)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    budget = Column(Float, nullable=True)
    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.ACTIVE)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)

    company = relationship("Company", back_populates="jobs")
    receipts = relationship("Receipt", back_populates="job")


class Receipt(Base):
    """Expense receipt, optionally backed by an uploaded image."""

    __tablename__ = "receipts"

    id = Column(Integer, primary_key=True, index=True)
    # Object keys; never serialised to clients (signed URLs are)
    image_key = Column(String, nullable=True)
    thumbnail_key = Column(String, nullable=True)
    amount = Column(Float, nullable=False)
    tax = Column(Float, nullable=True)
    total_amount = Column(Float, nullable=False)
    vendor_name = Column(String, nullable=True)
    receipt_date = Column(DateTime, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(Enum(ExpenseCategory), nullable=True)
    status = Column(Enum(ReceiptStatus), default=ReceiptStatus.PENDING, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    # Serialised ReceiptFileMetadata ("metadata" is reserved on declarative models)
    file_metadata = Column("metadata", JSON, nullable=False, default=dict)
    # Set when a delete has been requested but blob removal has not succeeded yet
    deleted_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    job_id = Column(Integer, ForeignKey("jobs.id", ondelete="SET NULL"), nullable=True)

    company = relationship("Company", back_populates="receipts")
    user = relationship("User", back_populates="receipts")
    job = relationship("Job", back_populates="receipts")
