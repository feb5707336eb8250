"""Local filesystem storage backend.

Objects live under LOCAL_STORAGE_PATH and are reached through the app's own
``/storage/local/{key}`` routes. URLs carry an HMAC signature over the method,
key, expiry and content type, so the pre-signed flow behaves like GCS.
"""

import asyncio
import hashlib
import hmac
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Callable, Optional
from urllib.parse import quote, urlencode

from docshare.core.config import settings
from docshare.storage.base import StorageBackend, StoredObject

logger = logging.getLogger(__name__)

_PARTIAL_SUFFIX = ".part"


class SignatureError(Exception):
    """Signed URL rejected; ``code`` mirrors the object-store error code."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class ObjectTooLargeError(Exception):
    pass


class LocalStorageBackend(StorageBackend):
    """Local filesystem storage backend."""

    def __init__(
        self,
        base_path: Optional[str] = None,
        secret: Optional[str] = None,
        public_base_url: Optional[str] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.base_path = Path(base_path or settings.LOCAL_STORAGE_PATH)
        self._secret = (secret or settings.LOCAL_SIGNING_SECRET).encode("utf-8")
        self.public_base_url = (public_base_url or settings.PUBLIC_BASE_URL).rstrip("/")
        self._clock = clock or time.time

    def _object_path(self, storage_key: str) -> Path:
        base = self.base_path.resolve()
        path = (base / storage_key).resolve()
        if not path.is_relative_to(base) or path == base:
            raise ValueError(f"Storage key escapes storage root: {storage_key}")
        return path

    def _sign(self, method: str, storage_key: str, expires: int, content_type: str) -> str:
        payload = "\n".join([method, storage_key, str(expires), content_type])
        return hmac.new(self._secret, payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def _signed_url(self, method: str, storage_key: str, expires_in: int, content_type: str = "") -> str:
        expires = int(self._clock()) + expires_in
        # The content type is covered by the signature but not carried in the URL;
        # the client must send the same Content-Type header
        query = {"expires": expires, "signature": self._sign(method, storage_key, expires, content_type)}
        return f"{self.public_base_url}/storage/local/{quote(storage_key)}?{urlencode(query)}"

    def generate_upload_url(self, storage_key: str, content_type: str, expires_in: int) -> str:
        return self._signed_url("PUT", storage_key, expires_in, content_type)

    def generate_download_url(
        self, storage_key: str, expires_in: int, filename: Optional[str] = None
    ) -> str:
        return self._signed_url("GET", storage_key, expires_in)

    def verify_signature(
        self,
        method: str,
        storage_key: str,
        expires: int,
        signature: str,
        content_type: str = "",
    ) -> None:
        """Validate a signed request.

        Raises:
            SignatureError: ``ExpiredToken`` when past expiry, ``SignatureDoesNotMatch``
                when the signature does not cover this method/key/content type
        """
        expected = self._sign(method, storage_key, expires, content_type)
        if not hmac.compare_digest(expected, signature):
            raise SignatureError("SignatureDoesNotMatch", "The request signature does not match")
        if self._clock() > expires:
            raise SignatureError("ExpiredToken", "Request has expired")

    async def write_object(self, storage_key: str, chunks: AsyncIterator[bytes], max_bytes: int) -> int:
        """Stream chunks to disk, publishing the object only once fully written.

        Returns:
            Number of bytes written
        """
        target_path = self._object_path(storage_key)
        await asyncio.to_thread(target_path.parent.mkdir, parents=True, exist_ok=True)
        partial_path = target_path.with_name(target_path.name + _PARTIAL_SUFFIX)

        # Disk I/O runs in worker threads; the caller is an async route
        written = 0
        try:
            f = await asyncio.to_thread(open, partial_path, "wb")
            try:
                async for chunk in chunks:
                    written += len(chunk)
                    if written > max_bytes:
                        raise ObjectTooLargeError(f"Object exceeds {max_bytes} bytes")
                    await asyncio.to_thread(f.write, chunk)
            finally:
                await asyncio.to_thread(f.close)
            await asyncio.to_thread(os.replace, partial_path, target_path)
        finally:
            if partial_path.exists():
                partial_path.unlink()

        logger.info("Stored local object", extra={"storage_key": storage_key, "size_bytes": written})
        return written

    def object_path(self, storage_key: str) -> Path:
        """Return the path of an existing object."""
        path = self._object_path(storage_key)
        if not path.is_file():
            raise FileNotFoundError(storage_key)
        return path

    def object_exists(self, storage_key: str) -> bool:
        try:
            return self._object_path(storage_key).is_file()
        except ValueError:
            return False

    def delete_object(self, storage_key: str) -> bool:
        path = self._object_path(storage_key)
        if not path.is_file():
            return False
        path.unlink()
        logger.info("Deleted local object", extra={"storage_key": storage_key})
        return True

    def list_objects(self, prefix: str) -> list[StoredObject]:
        if not self.base_path.exists():
            return []
        objects = []
        for path in self.base_path.rglob("*"):
            if not path.is_file() or path.name.endswith(_PARTIAL_SUFFIX):
                continue
            key = path.relative_to(self.base_path).as_posix()
            if key.startswith(prefix):
                stat = path.stat()
                objects.append(
                    StoredObject(
                        key=key,
                        size=stat.st_size,
                        updated_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    )
                )
        return objects

    def get_backend_name(self) -> str:
        return "local"
