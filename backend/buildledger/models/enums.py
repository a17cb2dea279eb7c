"""Enumeration types used throughout the receipt tracking API.

Enumerations make it easier to constrain the values that can be
stored in the database or passed through the API. When modifying
these enums you should update any corresponding database columns or
Pydantic validators so that new values are accepted where appropriate.
"""

from enum import Enum


class UserRole(str, Enum):
    """Role of a user inside their company."""

    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    CREW_MEMBER = "CREW_MEMBER"


class JobStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


class ReceiptStatus(str, Enum):
    """Processing and review states for a receipt."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ExpenseCategory(str, Enum):
    MATERIALS = "MATERIALS"
    EQUIPMENT = "EQUIPMENT"
    LABOR = "LABOR"
    SUBCONTRACTOR = "SUBCONTRACTOR"
    PERMITS = "PERMITS"
    FUEL = "FUEL"
    TOOLS = "TOOLS"
    UTILITIES = "UTILITIES"
    INSURANCE = "INSURANCE"
    OTHER = "OTHER"
