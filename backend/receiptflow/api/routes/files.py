"""Signed file downloads for the filesystem storage backend.

URLs are produced by ``StorageService.get_download_url`` and carry an
expiry timestamp plus an HMAC signature, so no Authorization header is
required.  This is what lets the extraction capability fetch the PDF.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse

from receiptflow.api.dependencies import get_storage_service
from receiptflow.core.errors import FileNotFoundInStorage
from receiptflow.core.security import verify_download_token
from receiptflow.services.storage_service import StorageService

router = APIRouter(prefix="/files", tags=["files"])


@router.get("/{file_id:path}")
async def download_file(
    file_id: str,
    exp: int,
    sig: str,
    storage: StorageService = Depends(get_storage_service),
):
    """Stream a stored file if the token is valid and not expired."""
    if not verify_download_token(file_id, exp, sig):
        raise HTTPException(status_code=401, detail="Invalid or expired link")
    if storage.backend != "filesystem":
        raise HTTPException(status_code=404, detail="File not found")
    try:
        full_path = storage.get_full_path(file_id)
    except FileNotFoundInStorage:
        raise HTTPException(status_code=404, detail="File not found")
    if not full_path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    name = full_path.name.split("_", 1)[-1].replace("\\", "_").replace('"', "")
    return FileResponse(path=str(full_path), filename=name, media_type="application/pdf")
