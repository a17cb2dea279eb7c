"""Observability helpers (Sentry init, breadcrumbs, counters).

Centralises Sentry initialisation so configuration does not drift.
Every helper is a no-op when ``SENTRY_DSN`` is unset, and none of them
may raise into the request path.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from buildledger.core.config import settings

logger = logging.getLogger(__name__)


def _before_send(event: Dict[str, Any], hint: Dict[str, Any] | None = None):
    """Scrub obvious secrets before sending to Sentry.

    - Drop Authorization & Cookie headers
    - Remove request bodies (uploads and form fields), keep method + URL
    - Drop query strings, which carry signed-URL signatures
    """
    try:
        req = event.get("request") or {}
        headers = req.get("headers") or {}
        for k in list(headers.keys()):
            if k.lower() in ("authorization", "cookie", "set-cookie", "x-api-key"):
                headers.pop(k, None)
        req.pop("data", None)
        req.pop("query_string", None)
        event["request"] = req
    except Exception:  # best effort
        pass
    return event


def init_sentry(service: str) -> bool:
    """Initialise Sentry once for a given process.

    Returns True if Sentry was initialised; False otherwise.
    """
    if not settings.SENTRY_DSN:
        return False
    if getattr(init_sentry, "_done", False):  # prevent duplicate init in same process
        return True
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        integrations=[FastApiIntegration(), SqlalchemyIntegration()],
        traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0),
        profiles_sample_rate=float(settings.SENTRY_PROFILES_SAMPLE_RATE or 0),
        environment=settings.ENVIRONMENT,
        release=settings.SENTRY_RELEASE,
        before_send=_before_send,
    )
    sentry_sdk.set_tag("service", service)
    init_sentry._done = True  # type: ignore[attr-defined]
    return True


def sentry_set_tags(tags: Dict[str, Any]) -> None:
    """Best-effort: set tags on the current scope (strings only)."""
    if not settings.SENTRY_DSN:
        return
    try:
        for k, v in (tags or {}).items():
            sentry_sdk.set_tag(str(k), str(v)[:128] if v is not None else "")
    except Exception:
        return


def sentry_breadcrumb(category: str, message: str, level: str = "info", data: Optional[Dict[str, Any]] = None) -> None:
    """Best-effort: add a breadcrumb for important pipeline steps."""
    if not settings.SENTRY_DSN:
        return
    try:
        sentry_sdk.add_breadcrumb(category=category, message=message, level=level, data=data or {})
    except Exception:
        return


def sentry_metric_inc(name: str, value: int = 1, tags: Optional[Dict[str, Any]] = None) -> None:
    """Best-effort: increment a counter using Sentry Metrics if the SDK still ships them."""
    if not settings.SENTRY_DSN:
        return
    try:
        from sentry_sdk import metrics  # type: ignore

        safe_tags = {str(k): str(v)[:64] for k, v in (tags or {}).items()}
        metrics.increment(name, value=value, tags=safe_tags)  # type: ignore
    except Exception:
        return


def capture_exception(exc: BaseException) -> None:
    if not settings.SENTRY_DSN:
        return
    try:
        sentry_sdk.capture_exception(exc)
    except Exception:
        logger.debug("sentry capture failed", exc_info=True)


__all__ = ["init_sentry", "sentry_set_tags", "sentry_breadcrumb", "sentry_metric_inc", "capture_exception"]
