"""Common dependencies for FastAPI routes.

This module defines shared dependency functions: database sessions, the
object store, the upload orchestrator and authentication/role helpers.
Token verification itself lives in ``buildledger.core.security``.
"""

from __future__ import annotations

from typing import AsyncGenerator, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from buildledger.core.config import settings
from buildledger.core.database import get_db
from buildledger.core.observability import sentry_set_tags
from buildledger.core.security import auth_scheme, decode_access_token
from buildledger.models.enums import UserRole
from buildledger.models.tables import User
from buildledger.services.receipt_service import ReceiptService
from buildledger.services.storage_service import ObjectStore, build_object_store
from buildledger.services.upload_service import UploadService


# -----------------------------------------------------------------------------
# Shared resources

_object_store: Optional[ObjectStore] = None


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Alias for `get_db` to be imported in routers."""
    async for session in get_db():
        yield session


def get_object_store() -> ObjectStore:
    """Return the process-wide object store, built on first use."""
    global _object_store
    if _object_store is None:
        _object_store = build_object_store(settings)
    return _object_store


def get_upload_service(store: ObjectStore = Depends(get_object_store)) -> UploadService:
    return UploadService(store, settings)


def get_receipt_service(db: AsyncSession = Depends(get_db_session)) -> ReceiptService:
    return ReceiptService(db)


# -----------------------------------------------------------------------------
# Authentication helpers

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
    db: AsyncSession = Depends(get_db_session),
) -> User:
    """Resolve the active user named by the Bearer token."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing auth token")
    payload = decode_access_token(credentials.credentials)

    result = await db.execute(
        select(User).where(User.id == int(payload["userId"]), User.company_id == int(payload["companyId"]))
    )
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found or inactive")
    sentry_set_tags({"user_id": user.id, "company_id": user.company_id})
    return user


def require_roles(*roles: UserRole):
    """Dependency factory: allow only users whose role is in ``roles``."""

    async def _check(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user

    return _check
