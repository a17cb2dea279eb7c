import datetime as dt
import re

import pytest

from buildledger.core.exceptions import InvalidKey
from buildledger.utils.storage_keys import (
    KeyCategory,
    derive_original_key,
    derive_receipt_key,
    derive_thumbnail_key,
    key_belongs_to_tenant,
    parse_key,
)


def test_receipt_key_layout_uses_tenant_month_and_owner():
    now = dt.datetime(2024, 3, 9, tzinfo=dt.timezone.utc)
    key = derive_receipt_key(7, 42, "Home Depot.JPG", now=now)
    assert re.fullmatch(r"receipts/7/2024/03/42/[0-9a-f]{32}\.jpg", key)


def test_receipt_keys_are_unique_per_call():
    now = dt.datetime(2024, 3, 9, tzinfo=dt.timezone.utc)
    keys = {derive_receipt_key(1, 1, "a.png", now=now) for _ in range(50)}
    assert len(keys) == 50


def test_receipt_key_without_extension():
    key = derive_receipt_key(1, 2, "scan")
    assert parse_key(key).filename.isalnum()


def test_thumbnail_key_only_swaps_category():
    original = "receipts/7/2024/03/42/abc123.png"
    thumb = derive_thumbnail_key(original)
    assert thumb == "thumbnails/7/2024/03/42/abc123.png"
    assert thumb.split("/")[1:] == original.split("/")[1:]
    assert derive_original_key(thumb) == original


@pytest.mark.parametrize(
    "bad",
    [
        "thumbnails/7/2024/03/42/abc.png",
        "temp/7/2024/03/42/abc.png",
        "receipts",
        "receipts/",
        "",
        "foo/receipts/7/2024/03/42/abc.png",
    ],
)
def test_thumbnail_key_rejects_non_receipt_keys(bad):
    with pytest.raises(InvalidKey):
        derive_thumbnail_key(bad)


def test_thumbnail_derivation_applied_twice_fails_fast():
    thumb = derive_thumbnail_key("receipts/1/2024/01/1/x.jpg")
    with pytest.raises(InvalidKey):
        derive_thumbnail_key(thumb)


def test_parse_key_roundtrips_to_string():
    key = "receipts/3/2023/12/9/deadbeef.heic"
    parsed = parse_key(key)
    assert parsed.category is KeyCategory.RECEIPTS
    assert (parsed.tenant_id, parsed.year, parsed.month, parsed.owner_id) == ("3", "2023", "12", "9")
    assert str(parsed) == key


@pytest.mark.parametrize("bad", ["receipts/1/2024/01/x.jpg", "receipts//2024/01/1/x.jpg", "other/1/2024/01/1/x.jpg"])
def test_parse_key_rejects_malformed(bad):
    with pytest.raises(InvalidKey):
        parse_key(bad)


def test_key_belongs_to_tenant():
    key = "receipts/3/2023/12/9/deadbeef.jpg"
    assert key_belongs_to_tenant(key, 3)
    assert not key_belongs_to_tenant(key, 4)
    assert not key_belongs_to_tenant("garbage", 3)


def test_invalid_key_message_does_not_echo_the_key():
    with pytest.raises(InvalidKey) as exc:
        derive_thumbnail_key("thumbnails/3/2024/01/1/secret.jpg")
    assert "secret" not in exc.value.message
    assert exc.value.key == "thumbnails/3/2024/01/1/secret.jpg"
