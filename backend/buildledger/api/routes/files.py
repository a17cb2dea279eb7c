"""Signed file downloads for the filesystem storage backend.

With MinIO, signed URLs point straight at the object store and this
route is never hit.
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from buildledger.api.dependencies import get_object_store
from buildledger.services.storage_service import FilesystemObjectStore, ObjectStore

router = APIRouter(prefix="/files", tags=["files"])


@router.get("/{key:path}")
async def download_file(
    key: str,
    exp: int = Query(...),
    sig: str = Query(...),
    store: ObjectStore = Depends(get_object_store),
):
    if not isinstance(store, FilesystemObjectStore):
        raise HTTPException(status_code=404, detail="Not found")
    if not store.verify_signature(key, exp, sig):
        raise HTTPException(status_code=401, detail="Invalid or expired link")

    info = await asyncio.to_thread(store.head, key)
    if info is None:
        raise HTTPException(status_code=404, detail="File not found")
    data = await asyncio.to_thread(store.get, key)
    headers = {"Cache-Control": info.cache_control} if info.cache_control else None
    return Response(content=data, media_type=info.content_type, headers=headers)
