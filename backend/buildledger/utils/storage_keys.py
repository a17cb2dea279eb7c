"""Object key naming scheme.

Keys are partitioned by category, tenant and upload month::

    {category}/{tenant_id}/{year}/{month}/{owner_id}/{unique_id}{ext}

A thumbnail key is the original key with the leading ``receipts`` segment
swapped for ``thumbnails``; every other segment is byte-identical.  Cleanup
relies on this to find the thumbnail of an original without a lookup.
"""

from __future__ import annotations

import datetime as dt
import os
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from buildledger.core.exceptions import InvalidKey


class KeyCategory(str, Enum):
    RECEIPTS = "receipts"
    THUMBNAILS = "thumbnails"
    TEMP = "temp"


_SEGMENTS = 6


@dataclass(frozen=True)
class ObjectKey:
    """Parsed representation of a storage key."""

    category: KeyCategory
    tenant_id: str
    year: str
    month: str
    owner_id: str
    filename: str

    def __str__(self) -> str:
        return "/".join(
            [self.category.value, self.tenant_id, self.year, self.month, self.owner_id, self.filename]
        )


def derive_receipt_key(
    tenant_id: int | str,
    owner_id: int | str,
    filename: str,
    now: Optional[dt.datetime] = None,
) -> str:
    """Build a fresh key for an uploaded receipt original.

    Never looks at file content; every call yields a new key because each
    upload is a new blob.
    """
    now = now or dt.datetime.now(dt.timezone.utc)
    ext = os.path.splitext(filename or "")[1].lower()
    unique_id = uuid.uuid4().hex
    return f"{KeyCategory.RECEIPTS.value}/{tenant_id}/{now.year}/{now.month:02d}/{owner_id}/{unique_id}{ext}"


def _swap_category(key: str, expected: KeyCategory, replacement: KeyCategory) -> str:
    category, sep, rest = (key or "").partition("/")
    if category != expected.value or not sep or not rest:
        raise InvalidKey(f"Expected a '{expected.value}/' key", key=key)
    return f"{replacement.value}/{rest}"


def derive_thumbnail_key(original_key: str) -> str:
    """Map ``receipts/...`` to ``thumbnails/...``.

    Raises :class:`InvalidKey` for anything else, including keys that are
    already thumbnail keys, so a thumbnail can never overwrite an original.
    """
    return _swap_category(original_key, KeyCategory.RECEIPTS, KeyCategory.THUMBNAILS)


def derive_original_key(thumbnail_key: str) -> str:
    """Inverse of :func:`derive_thumbnail_key`."""
    return _swap_category(thumbnail_key, KeyCategory.THUMBNAILS, KeyCategory.RECEIPTS)


def parse_key(key: str) -> ObjectKey:
    parts = (key or "").split("/")
    if len(parts) != _SEGMENTS or not all(parts):
        raise InvalidKey("Malformed object key", key=key)
    try:
        category = KeyCategory(parts[0])
    except ValueError as exc:
        raise InvalidKey("Unknown key category", key=key) from exc
    return ObjectKey(category, *parts[1:])


def key_belongs_to_tenant(key: str, tenant_id: int | str) -> bool:
    try:
        return parse_key(key).tenant_id == str(tenant_id)
    except InvalidKey:
        return False
