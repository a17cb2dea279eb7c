"""Miscellaneous helper functions."""

from __future__ import annotations

import datetime as dt
import math
from typing import List, Optional


def parse_iso_datetime(value: str | None) -> Optional[dt.datetime]:
    """Parse an ISO8601 datetime string into a :class:`datetime` object.

    Multipart form fields arrive as plain strings, sometimes with a
    lowercase ``z`` as the UTC designator.  This function normalises that
    case and returns ``None`` if the value cannot be parsed.
    """
    if not value:
        return None
    try:
        value = value.strip()
        if value.endswith("z"):
            value = value[:-1] + "Z"
        return dt.datetime.fromisoformat(value)
    except ValueError:
        return None


def to_naive_utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    """Database columns hold naive UTC timestamps."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(dt.timezone.utc).replace(tzinfo=None)


def last_n_months(now: dt.datetime, n: int = 12) -> List[str]:
    """Return ``YYYY-MM`` labels for the ``n`` months ending at ``now``, newest first."""
    year, month = now.year, now.month
    labels: List[str] = []
    for _ in range(n):
        labels.append(f"{year}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return labels


def page_count(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0
