"""
Generic image uploads and local-storage file serving.

POST /v1/uploads         multipart upload (clay poses, talent faces, ...)
GET  /v1/files/{key}     serve a locally stored object (local mode only)
"""

import logging
import time
import uuid
from pathlib import Path

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse

from ..core.auth import AuthenticatedUser
from ..core.dependencies import get_storage_dep, require_internal
from ..core.errors import InvalidRequest
from ..core.storage import LocalStorage, StorageBackend, get_storage, guess_content_type

logger = logging.getLogger(__name__)

files_router = APIRouter(tags=["files"])

MAX_UPLOAD_SIZE = 30 * 1024 * 1024
ALLOWED_IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp"}
UPLOAD_FOLDERS = {"uploads", "poses", "faces"}


@files_router.post("/uploads")
async def upload_image(
    file: UploadFile = File(...),
    folder: str = Form("uploads"),
    user: AuthenticatedUser = Depends(require_internal),
    storage: StorageBackend = Depends(get_storage_dep),
):
    filename = file.filename or "upload.png"
    ext = Path(filename).suffix.lower()
    if ext not in ALLOWED_IMAGE_EXTENSIONS:
        raise InvalidRequest(
            f"File type '{ext}' not allowed. Supported: {', '.join(sorted(ALLOWED_IMAGE_EXTENSIONS))}"
        )
    if folder not in UPLOAD_FOLDERS:
        raise InvalidRequest(f"Unknown folder '{folder}'")

    file_bytes = await file.read()
    if not file_bytes:
        raise InvalidRequest("Empty file")
    if len(file_bytes) > MAX_UPLOAD_SIZE:
        raise InvalidRequest(f"File too large (max {MAX_UPLOAD_SIZE // (1024 * 1024)}MB)")

    key = f"{folder}/{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}{ext}"
    url = await storage.upload(key, file_bytes, file.content_type or guess_content_type(filename))
    logger.info("Uploaded %s (%d bytes) → %s", filename, len(file_bytes), key)
    return {"success": True, "key": key, "url": url, "size": len(file_bytes)}


@files_router.get("/files/{key:path}")
async def serve_file(key: str):
    """Serve a locally stored object."""
    storage = get_storage()
    if not isinstance(storage, LocalStorage):
        raise HTTPException(status_code=404, detail="Direct file serving only in local mode")

    try:
        path = storage.path_for(key)
    except ValueError:
        raise HTTPException(status_code=404, detail="File not found")
    if not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path, media_type=guess_content_type(path.name))
