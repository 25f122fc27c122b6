"""File storage abstraction.

Supports two backends selected via ``settings.STORAGE_BACKEND``:

1. **minio** (default): Uses the MinIO S3-compatible object storage and
   hands out presigned GET URLs.
2. **filesystem**: Stores files under ``settings.STORAGE_DIRECTORY`` on
   disk and hands out HMAC-signed, expiring URLs served by this API.

All saved objects return a *relative key* (``owner_id/uuid_filename``)
that is persisted on the receipt row as its ``file_id``.  The blocking
client calls run in a worker thread so callers can await them.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import timedelta
from io import BytesIO
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlencode

from minio import Minio
from minio.error import S3Error

from receiptflow.core.config import settings
from receiptflow.core.errors import FileNotFoundInStorage
from receiptflow.core.security import sign_download_token

logger = logging.getLogger(__name__)


def _normalise_filename(filename: str) -> str:
    """Remove potentially dangerous characters and ensure a safe filename."""
    keepchars = {"-", "_", "."}
    return "".join(c for c in filename if c.isalnum() or c in keepchars) or "receipt.pdf"


class StorageService:
    """Unified file store (MinIO or filesystem)."""

    def __init__(self, backend: str | None = None, base_dir: str | None = None) -> None:
        self.backend = (backend or settings.STORAGE_BACKEND or "minio").lower()
        if self.backend == "minio":
            self._client = Minio(
                settings.MINIO_ENDPOINT,
                access_key=settings.MINIO_ACCESS_KEY,
                secret_key=settings.MINIO_SECRET_KEY,
                secure=bool(settings.MINIO_USE_SSL),
            )
            self.bucket = settings.MINIO_BUCKET_NAME
            try:
                if not self._client.bucket_exists(self.bucket):
                    self._client.make_bucket(self.bucket)
            except Exception as e:  # pragma: no cover - startup path
                logger.warning("[storage] MinIO bucket ensure failed: %s", e)
        else:
            self.backend = "filesystem"
            base_path = Path(base_dir or settings.STORAGE_DIRECTORY)
            if not base_path.is_absolute():
                base_path = base_path.resolve()
            self.base_dir = base_path
            self.base_dir.mkdir(parents=True, exist_ok=True)
            logger.info("[storage] Filesystem base_dir: %s", self.base_dir)

    # --- paths ---------------------------------------------------------
    def get_full_path(self, file_id: str) -> Path:
        """Resolve a stored file's full path (filesystem only)."""
        path = (self.base_dir / file_id).resolve()
        if self.base_dir not in path.parents:
            raise FileNotFoundInStorage(f"Invalid file key: {file_id}")
        return path

    # --- write ---------------------------------------------------------
    async def save(self, data: bytes, owner_id: str, filename: str, content_type: str) -> str:
        """Persist ``data`` and return its storage key."""
        if not data:
            raise RuntimeError("Empty upload payload")
        file_id = f"{owner_id}/{uuid.uuid4().hex}_{_normalise_filename(filename)}"
        await asyncio.to_thread(self._save_sync, file_id, data, content_type)
        logger.info("[storage] saved key=%s bytes=%d backend=%s", file_id, len(data), self.backend)
        return file_id

    def _save_sync(self, file_id: str, data: bytes, content_type: str) -> None:
        if self.backend == "minio":
            try:
                self._client.put_object(
                    self.bucket,
                    file_id,
                    BytesIO(data),
                    len(data),
                    content_type=content_type or "application/octet-stream",
                )
            except Exception as e:
                raise RuntimeError(f"MinIO upload failed: {e}") from e
            return
        path = self.get_full_path(file_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    # --- read ----------------------------------------------------------
    async def read(self, file_id: str) -> bytes:
        return await asyncio.to_thread(self._read_sync, file_id)

    def _read_sync(self, file_id: str) -> bytes:
        if self.backend == "minio":
            try:
                resp = self._client.get_object(self.bucket, file_id)
            except S3Error as e:  # pragma: no cover - network path
                raise FileNotFoundInStorage(f"File not found: {file_id}") from e
            try:
                return resp.read()
            finally:
                resp.close()
                resp.release_conn()
        try:
            return self.get_full_path(file_id).read_bytes()
        except FileNotFoundError as e:
            raise FileNotFoundInStorage(f"File not found: {file_id}") from e

    async def exists(self, file_id: str) -> bool:
        return await asyncio.to_thread(self._exists_sync, file_id)

    def _exists_sync(self, file_id: str) -> bool:
        if self.backend == "minio":
            try:
                self._client.stat_object(self.bucket, file_id)
                return True
            except S3Error:
                return False
        try:
            return self.get_full_path(file_id).is_file()
        except FileNotFoundInStorage:
            return False

    async def get_download_url(self, file_id: str, expires_in: int | None = None) -> Optional[str]:
        """Return a fetchable URL for ``file_id`` or ``None`` when it does not exist."""
        ttl = int(expires_in or settings.DOWNLOAD_URL_TTL_SECONDS)
        if not await self.exists(file_id):
            return None
        if self.backend == "minio":
            return await asyncio.to_thread(
                self._client.presigned_get_object, self.bucket, file_id, timedelta(seconds=ttl)
            )
        exp_ts = int(time.time()) + ttl
        sig = sign_download_token(file_id, exp_ts)
        base = settings.PUBLIC_API_URL.rstrip("/")
        return f"{base}/files/{quote(file_id)}?{urlencode({'exp': exp_ts, 'sig': sig})}"

    # --- delete --------------------------------------------------------
    async def delete(self, file_id: str) -> None:
        """Remove ``file_id``.  Raises when the backend refuses the delete."""
        await asyncio.to_thread(self._delete_sync, file_id)
        logger.info("[storage] deleted key=%s backend=%s", file_id, self.backend)

    def _delete_sync(self, file_id: str) -> None:
        if self.backend == "minio":
            self._client.remove_object(self.bucket, file_id)
            return
        try:
            self.get_full_path(file_id).unlink()
        except FileNotFoundError:
            # already gone
            return


_default_storage: StorageService | None = None


def get_storage() -> StorageService:
    """Return the process-wide storage service."""
    global _default_storage
    if _default_storage is None:
        _default_storage = StorageService()
    return _default_storage
