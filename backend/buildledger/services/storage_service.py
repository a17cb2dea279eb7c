"""Object storage abstraction.

Supports two backends selected via ``settings.STORAGE_BACKEND``:

1. **minio** (default): any S3-compatible object store through the MinIO client.
2. **filesystem**: blobs under ``settings.STORAGE_DIRECTORY`` on disk.  Signed
   URLs point back at this API's ``/files/{key}`` route and carry an
   HMAC signature plus expiry.

Stores are constructed explicitly (see :func:`build_object_store`) and
injected into whatever needs them; nothing here holds module-level client
state.  All methods are blocking; async callers should run them in a
worker thread.
"""

from __future__ import annotations

import abc
import base64
import datetime as dt
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from io import BytesIO
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from urllib.parse import quote, urlencode

from minio import Minio
from minio.commonconfig import CopySource
from minio.deleteobjects import DeleteObject
from minio.error import S3Error

from buildledger.core.config import Settings, settings as default_settings
from buildledger.core.exceptions import (
    RECEIPT_FILE_NOT_FOUND,
    InvalidKey,
    ObjectNotFound,
    StorageDeleteFailed,
    StorageReadFailed,
    StorageWriteFailed,
)

logger = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "NoSuchObject", "ResourceNotFound"}


@dataclass
class ObjectInfo:
    key: str
    size: int
    content_type: str
    cache_control: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


class ObjectStore(abc.ABC):
    """Blob store addressed by opaque string keys."""

    @abc.abstractmethod
    def get(self, key: str) -> bytes:
        """Return object bytes or raise ``ObjectNotFound``."""

    @abc.abstractmethod
    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        cache_control: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        """Write an object, raising ``StorageWriteFailed`` on any error."""

    @abc.abstractmethod
    def delete(self, key: str) -> None:
        """Delete one object.  Missing keys are not an error."""

    @abc.abstractmethod
    def copy(self, src_key: str, dst_key: str) -> None: ...

    @abc.abstractmethod
    def head(self, key: str) -> Optional[ObjectInfo]:
        """Return object info, or None when the key does not exist."""

    @abc.abstractmethod
    def signed_url(self, key: str, ttl_seconds: int = 3600) -> str: ...

    def exists(self, key: str) -> bool:
        return self.head(key) is not None

    def delete_many(self, keys: Iterable[str]) -> List[str]:
        """Best-effort bulk delete; returns the keys that could not be removed."""
        failed: List[str] = []
        for key in keys:
            try:
                self.delete(key)
            except Exception as exc:
                logger.warning("[storage] delete failed key=%s err=%s", key, exc)
                failed.append(key)
        return failed

    def ensure_bucket(self) -> None:
        return None


# -----------------------------------------------------------------------------
# MinIO / S3


class MinioObjectStore(ObjectStore):
    """S3-compatible store backed by the MinIO client."""

    def __init__(self, client: Minio, bucket: str) -> None:
        self._client = client
        self.bucket = bucket

    @classmethod
    def from_settings(cls, cfg: Settings) -> "MinioObjectStore":
        client = Minio(
            cfg.MINIO_ENDPOINT,
            access_key=cfg.MINIO_ACCESS_KEY,
            secret_key=cfg.MINIO_SECRET_KEY,
            secure=bool(cfg.MINIO_USE_SSL),
            region=cfg.MINIO_REGION,
        )
        return cls(client, cfg.MINIO_BUCKET_NAME)

    def ensure_bucket(self) -> None:
        # Idempotent; called once at startup
        if not self._client.bucket_exists(self.bucket):
            self._client.make_bucket(self.bucket)

    def get(self, key: str) -> bytes:
        try:
            resp = self._client.get_object(self.bucket, key)
        except S3Error as exc:
            if exc.code in _MISSING_CODES:
                raise ObjectNotFound(RECEIPT_FILE_NOT_FOUND, key=key) from exc
            raise StorageReadFailed(f"Object store read failed ({exc.code})", key=key) from exc
        except Exception as exc:
            raise StorageReadFailed("Object store read failed", key=key) from exc
        try:
            data = resp.read()
            logger.debug("[storage] get ok key=%s bytes=%d", key, len(data))
            return data
        finally:
            resp.close()
            resp.release_conn()

    def put(self, key, data, content_type, cache_control=None, metadata=None) -> None:
        headers: Dict[str, str] = dict(metadata or {})
        if cache_control:
            headers["Cache-Control"] = cache_control
        try:
            self._client.put_object(
                self.bucket,
                key,
                BytesIO(data),
                len(data),
                content_type=content_type or "application/octet-stream",
                metadata=headers or None,
            )
        except Exception as exc:
            raise StorageWriteFailed("Object store upload failed", key=key) from exc
        logger.info("[storage] put key=%s size=%d", key, len(data))

    def delete(self, key: str) -> None:
        try:
            self._client.remove_object(self.bucket, key)
        except S3Error as exc:
            if exc.code in _MISSING_CODES:
                return
            raise StorageDeleteFailed(f"Object store delete failed ({exc.code})", key=key) from exc

    def delete_many(self, keys: Iterable[str]) -> List[str]:
        key_list = list(keys)
        if not key_list:
            return []
        failed: List[str] = []
        try:
            # remove_objects is lazy: errors only surface while iterating
            for err in self._client.remove_objects(self.bucket, [DeleteObject(k) for k in key_list]):
                if err.code in _MISSING_CODES:
                    continue
                logger.warning("[storage] bulk delete failed key=%s code=%s", err.name, err.code)
                failed.append(err.name)
        except Exception as exc:
            logger.warning("[storage] bulk delete request failed: %s", exc)
            return key_list
        return failed

    def copy(self, src_key: str, dst_key: str) -> None:
        try:
            self._client.copy_object(self.bucket, dst_key, CopySource(self.bucket, src_key))
        except S3Error as exc:
            if exc.code in _MISSING_CODES:
                raise ObjectNotFound(RECEIPT_FILE_NOT_FOUND, key=src_key) from exc
            raise StorageWriteFailed(f"Object store copy failed ({exc.code})", key=dst_key) from exc

    def head(self, key: str) -> Optional[ObjectInfo]:
        try:
            stat = self._client.stat_object(self.bucket, key)
        except S3Error as exc:
            if exc.code in _MISSING_CODES:
                return None
            raise StorageReadFailed(f"Object store stat failed ({exc.code})", key=key) from exc
        meta = {k: v for k, v in (stat.metadata or {}).items()}
        return ObjectInfo(
            key=key,
            size=int(stat.size or 0),
            content_type=stat.content_type or "application/octet-stream",
            cache_control=meta.get("Cache-Control"),
            metadata=meta,
        )

    def signed_url(self, key: str, ttl_seconds: int = 3600) -> str:
        return self._client.presigned_get_object(
            self.bucket, key, expires=dt.timedelta(seconds=ttl_seconds)
        )


# -----------------------------------------------------------------------------
# Filesystem


def sign_object_token(key: str, exp_ts: int, secret: str) -> str:
    msg = f"{key}:{exp_ts}".encode()
    digest = hmac.new(secret.encode(), msg, hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


class FilesystemObjectStore(ObjectStore):
    """Stores objects on local disk with a JSON sidecar for headers/metadata."""

    _SIDECAR_DIR = ".meta"

    def __init__(self, base_dir: str | Path, public_base_url: str, signing_secret: str) -> None:
        base_path = Path(base_dir)
        if not base_path.is_absolute():
            repo_root = Path(__file__).resolve().parents[3]
            base_path = (repo_root / base_path).resolve()
        self.base_dir = base_path
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")
        self._secret = signing_secret
        logger.info("[storage] Filesystem base_dir: %s", self.base_dir)

    @classmethod
    def from_settings(cls, cfg: Settings) -> "FilesystemObjectStore":
        return cls(cfg.STORAGE_DIRECTORY, cfg.PUBLIC_BASE_URL, cfg.SIGNING_SECRET)

    def _path(self, key: str) -> Path:
        parts = (key or "").split("/")
        if not key or any(p in ("", ".", "..") for p in parts) or parts[0] == self._SIDECAR_DIR:
            raise InvalidKey("Invalid object key", key=key)
        return self.base_dir.joinpath(*parts)

    def _sidecar(self, key: str) -> Path:
        path = self.base_dir.joinpath(self._SIDECAR_DIR, *key.split("/"))
        return path.with_name(path.name + ".json")

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise ObjectNotFound(RECEIPT_FILE_NOT_FOUND, key=key) from exc
        except OSError as exc:
            raise StorageReadFailed("Filesystem read failed", key=key) from exc

    def put(self, key, data, content_type, cache_control=None, metadata=None) -> None:
        path = self._path(key)
        sidecar = self._sidecar(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            sidecar.parent.mkdir(parents=True, exist_ok=True)
            sidecar.write_text(
                json.dumps(
                    {
                        "content_type": content_type or "application/octet-stream",
                        "cache_control": cache_control,
                        "metadata": dict(metadata or {}),
                    }
                )
            )
        except OSError as exc:
            raise StorageWriteFailed("Filesystem write failed", key=key) from exc
        logger.info("[storage] FS saved key=%s bytes=%d", key, len(data))

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
            self._sidecar(key).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageDeleteFailed("Filesystem delete failed", key=key) from exc

    def copy(self, src_key: str, dst_key: str) -> None:
        info = self.head(src_key)
        if info is None:
            raise ObjectNotFound(RECEIPT_FILE_NOT_FOUND, key=src_key)
        self.put(dst_key, self.get(src_key), info.content_type, info.cache_control, info.metadata)

    def head(self, key: str) -> Optional[ObjectInfo]:
        path = self._path(key)
        if not path.is_file():
            return None
        extra: Dict = {}
        sidecar = self._sidecar(key)
        if sidecar.exists():
            extra = json.loads(sidecar.read_text())
        return ObjectInfo(
            key=key,
            size=path.stat().st_size,
            content_type=extra.get("content_type") or "application/octet-stream",
            cache_control=extra.get("cache_control"),
            metadata=extra.get("metadata") or {},
        )

    def signed_url(self, key: str, ttl_seconds: int = 3600) -> str:
        self._path(key)
        exp_ts = int((dt.datetime.now(dt.timezone.utc) + dt.timedelta(seconds=ttl_seconds)).timestamp())
        q = urlencode({"exp": exp_ts, "sig": sign_object_token(key, exp_ts, self._secret)})
        return f"{self.public_base_url}/files/{quote(key)}?{q}"

    def verify_signature(self, key: str, exp: int, sig: str) -> bool:
        now_ts = int(dt.datetime.now(dt.timezone.utc).timestamp())
        if now_ts > int(exp):
            return False
        expected = sign_object_token(key, int(exp), self._secret)
        return hmac.compare_digest(expected, sig)


def build_object_store(cfg: Settings | None = None) -> ObjectStore:
    """Construct the store configured by ``STORAGE_BACKEND``."""
    cfg = cfg or default_settings
    backend = (cfg.STORAGE_BACKEND or "minio").lower()
    if backend == "filesystem":
        return FilesystemObjectStore.from_settings(cfg)
    if backend == "minio":
        return MinioObjectStore.from_settings(cfg)
    raise ValueError(f"Unknown STORAGE_BACKEND: {cfg.STORAGE_BACKEND!r}")
