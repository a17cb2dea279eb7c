"""JWT verification for API requests.

Tokens are issued by the account service and signed with the shared
``JWT_SECRET`` (HS256 by default).  The payload carries ``userId``,
``companyId`` and ``role``; the user row is resolved and checked for
``is_active`` in :func:`buildledger.api.dependencies.get_current_user`.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from fastapi.security import HTTPBearer
from jose import JWTError, jwt

from buildledger.core.config import settings

# auto_error is off so a missing header yields 401 rather than 403
auth_scheme = HTTPBearer(auto_error=False)

REQUIRED_CLAIMS = ("userId", "companyId", "role")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_access_token(token: str) -> Dict[str, Any]:
    """Verify signature and expiry, and check the required claims are present.

    Raises:
        HTTPException: 401 if the token is malformed, expired or incomplete.
    """
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise _unauthorized("Invalid token") from exc
    missing = [c for c in REQUIRED_CLAIMS if payload.get(c) is None]
    if missing:
        raise _unauthorized(f"Invalid token: missing {', '.join(missing)}")
    return payload


def create_access_token(
    user_id: int,
    company_id: int,
    role: str,
    expires_in: Optional[dt.timedelta] = None,
) -> str:
    """Sign a token with the local secret (scripts and tests)."""
    expire = dt.datetime.now(dt.timezone.utc) + (expires_in or dt.timedelta(hours=1))
    claims = {"userId": user_id, "companyId": company_id, "role": role, "exp": expire}
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
