"""Signed object endpoints for the local storage backend."""

import logging
import mimetypes
from pathlib import PurePosixPath

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import FileResponse, JSONResponse

from docshare.core.config import settings
from docshare.storage.base import StorageBackend
from docshare.storage.factory import get_storage_backend
from docshare.storage.local import LocalStorageBackend, ObjectTooLargeError, SignatureError

router = APIRouter(prefix="/storage/local", tags=["storage"])
logger = logging.getLogger(__name__)


def _storage_error(status_code: int, code: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"code": code, "detail": detail})


def _local_backend(backend: StorageBackend) -> LocalStorageBackend | None:
    return backend if isinstance(backend, LocalStorageBackend) else None


@router.put("/{storage_key:path}")
async def put_object(
    storage_key: str,
    request: Request,
    expires: int = Query(...),
    signature: str = Query(...),
    backend: StorageBackend = Depends(get_storage_backend),
):
    """Receive a direct upload through a signed URL."""
    local = _local_backend(backend)
    if local is None:
        return _storage_error(404, "NotFound", "Local storage is not enabled")

    content_type = request.headers.get("content-type", "")
    try:
        local.verify_signature("PUT", storage_key, expires, signature, content_type)
    except SignatureError as e:
        logger.warning("Rejected signed upload", extra={"storage_key": storage_key, "code": e.code})
        return _storage_error(403, e.code, e.message)

    try:
        size = await local.write_object(storage_key, request.stream(), settings.max_upload_bytes)
    except ObjectTooLargeError as e:
        return _storage_error(400, "EntityTooLarge", str(e))
    except ValueError as e:
        return _storage_error(400, "InvalidKey", str(e))

    return {"storageKey": storage_key, "size": size}


@router.get("/{storage_key:path}")
async def get_object(
    storage_key: str,
    expires: int = Query(...),
    signature: str = Query(...),
    backend: StorageBackend = Depends(get_storage_backend),
):
    """Serve an object through a signed download URL."""
    local = _local_backend(backend)
    if local is None:
        return _storage_error(404, "NotFound", "Local storage is not enabled")

    try:
        local.verify_signature("GET", storage_key, expires, signature)
        path = local.object_path(storage_key)
    except SignatureError as e:
        return _storage_error(403, e.code, e.message)
    except (FileNotFoundError, ValueError):
        return _storage_error(404, "NoSuchKey", "The specified key does not exist")

    filename = PurePosixPath(storage_key).name.split("-", 1)[-1]
    media_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
    return FileResponse(path, media_type=media_type, filename=filename)
