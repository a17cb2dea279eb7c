"""Utility script to inspect a receipt's stored blobs.

Usage (from repo root):

python backend/buildledger/scripts/debug_missing_file.py <receipt_id>

Prints:
- DB record keys and status
- Whether each key exists in the configured object store (size, content type)
- Whether the receipt is marked for deletion
"""
from pathlib import Path
import sys
from sqlalchemy import select
import asyncio

# Directory layout: backend/buildledger/scripts/debug_missing_file.py
# parents[0]=scripts, [1]=buildledger, [2]=backend
_BACKEND_DIR = Path(__file__).resolve().parents[2]
if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

from buildledger.core.database import AsyncSessionLocal  # noqa: E402
from buildledger.models.tables import Receipt  # noqa: E402
from buildledger.services.storage_service import build_object_store  # noqa: E402


async def _run_async(rid: int):
    store = build_object_store()
    async with AsyncSessionLocal() as session:
        rec = (await session.execute(select(Receipt).where(Receipt.id == rid))).scalar_one_or_none()
        if not rec:
            print(f"Receipt {rid} not found")
            return 1
        print(f"Receipt {rec.id} status={rec.status.value} company={rec.company_id}")
        if rec.deleted_at:
            print(f"  marked deleted at {rec.deleted_at.isoformat()} (pending purge)")
        for label, key in (("image", rec.image_key), ("thumbnail", rec.thumbnail_key)):
            if not key:
                print(f"  {label}: <none>")
                continue
            info = await asyncio.to_thread(store.head, key)
            if info is None:
                print(f"  {label}: {key} MISSING")
            else:
                print(f"  {label}: {key} size={info.size} type={info.content_type}")
        return 0


def main():
    if len(sys.argv) != 2:
        print("Usage: debug_missing_file.py <receipt_id>")
        return 2
    return asyncio.run(_run_async(int(sys.argv[1])))


if __name__ == "__main__":
    raise SystemExit(main())
