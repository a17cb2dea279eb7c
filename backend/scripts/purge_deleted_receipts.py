"""Finish receipt deletes whose blob removal did not succeed.

Run periodically (cron / scheduled task):
  python backend/scripts/purge_deleted_receipts.py

Rows marked with ``deleted_at`` are retried: blobs are deleted and the
row is removed only once every blob is gone.  Exits non-zero when rows
remain so the scheduler can alert.
"""
from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from buildledger.core.config import settings  # noqa: E402
from buildledger.core.database import AsyncSessionLocal  # noqa: E402
from buildledger.services.receipt_service import purge_deleted_receipts  # noqa: E402
from buildledger.services.storage_service import build_object_store  # noqa: E402
from buildledger.services.upload_service import UploadService  # noqa: E402


async def _run() -> int:
    uploads = UploadService(build_object_store(settings), settings)
    async with AsyncSessionLocal() as session:
        purged, remaining = await purge_deleted_receipts(session, uploads)
    print(f"purged={purged} remaining={remaining}")
    return 1 if remaining else 0


def main() -> int:
    logging.basicConfig(level=settings.LOG_LEVEL)
    return asyncio.run(_run())


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
