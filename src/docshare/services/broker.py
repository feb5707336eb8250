"""Pre-signed URL broker.

Validates a batch of file descriptors and mints one write-scoped URL and
storage key per file. The broker never touches the database, so an abandoned
batch leaves at worst an unused storage key behind.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from docshare.core.config import settings
from docshare.core.exceptions import RateLimitedError, StorageError, ValidationError
from docshare.core.logging import storage_key_context
from docshare.models.upload import FileDescriptor, PreSignedItem, RequestUrlsResponse
from docshare.storage.base import StorageBackend, sanitize_filename
from docshare.storage.session_store import IssuedKey, UploadSessionStore

logger = logging.getLogger(__name__)


@dataclass
class IssuedUrl:
    storage_key: str
    pre_signed_url: str
    expires_in: int


def parse_storage_key(storage_key: str) -> Optional[tuple[str, str]]:
    """Split a broker-issued key into (owner_id, session_id).

    Returns None when the key does not have the broker's shape.
    """
    parts = storage_key.split("/")
    if len(parts) != 4 or parts[0] != settings.STORAGE_KEY_PREFIX or not all(parts):
        return None
    return parts[1], parts[2]


def file_violations(filename: str, mimetype: str, size: int) -> list[str]:
    """Return human-readable reasons a file is not acceptable."""
    reasons = []
    if not filename or not filename.strip():
        reasons.append("filename is required")
    else:
        if ".." in filename or "/" in filename or "\\" in filename:
            reasons.append("filename must not contain path separators or '..'")
        if len(filename) > settings.MAX_FILENAME_LENGTH:
            reasons.append(f"filename exceeds {settings.MAX_FILENAME_LENGTH} characters")
    if size <= 0:
        reasons.append("file is empty")
    elif size > settings.max_upload_bytes:
        reasons.append(f"file size exceeds maximum allowed size of {settings.MAX_UPLOAD_MB}MB")
    if settings.allowed_mime_types and mimetype not in settings.allowed_mime_types:
        reasons.append(f"content type {mimetype} not allowed")
    return reasons


class PresignedUrlBroker:
    """Issues storage keys and short-lived upload URLs."""

    def __init__(self, backend: StorageBackend, store: UploadSessionStore):
        self.backend = backend
        self.store = store

    def validate_batch(self, files: list[FileDescriptor]) -> None:
        """Validate every file before anything is issued.

        Raises:
            ValidationError: With one entry per rejected file in ``details["files"]``
        """
        if not files:
            raise ValidationError("At least one file is required")
        if len(files) > settings.MAX_FILES_PER_BATCH:
            raise ValidationError(
                f"At most {settings.MAX_FILES_PER_BATCH} files may be uploaded at once",
                details={"count": len(files), "limit": settings.MAX_FILES_PER_BATCH},
            )

        rejected = []
        for index, descriptor in enumerate(files):
            reasons = file_violations(descriptor.filename, descriptor.mimetype, descriptor.size)
            if reasons:
                rejected.append({"index": index, "filename": descriptor.filename, "reasons": reasons})

        if rejected:
            first = rejected[0]
            raise ValidationError(
                f"{first['filename'] or 'file'}: {first['reasons'][0]}",
                details={"files": rejected},
            )

    def check_rate_limit(self, owner_id: str, requested: int) -> None:
        """Refuse a batch that would push the owner past URL_RATE_LIMIT_FILES in the window.

        Raises:
            RateLimitedError: The owner must wait before asking for more links
        """
        limit = settings.URL_RATE_LIMIT_FILES
        if limit <= 0:
            return
        window = settings.URL_RATE_LIMIT_WINDOW_SECONDS
        since = datetime.now(timezone.utc) - timedelta(seconds=window)
        recent = self.store.count_issued_since(owner_id, since)
        if recent + requested > limit:
            logger.warning(
                "Upload link rate limit reached",
                extra={"owner_id": owner_id, "recent": recent, "requested": requested, "limit": limit},
            )
            raise RateLimitedError(
                f"Too many upload links requested; wait {window} seconds and try again",
                details={"limit": limit, "window_seconds": window, "recent": recent},
            )

    def make_storage_key(self, owner_id: str, session_id: str, filename: str) -> str:
        """Reserve a unique key namespaced by owner and session."""
        safe_name = sanitize_filename(filename, settings.MAX_FILENAME_LENGTH)
        return f"{settings.STORAGE_KEY_PREFIX}/{owner_id}/{session_id}/{uuid.uuid4().hex}-{safe_name}"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(StorageError),
        reraise=True,
    )
    def _sign_upload(self, storage_key: str, mimetype: str) -> str:
        return self.backend.generate_upload_url(
            storage_key, mimetype, settings.presigned_url_expiry_seconds
        )

    def issue_single(
        self,
        owner_id: str,
        filename: str,
        mimetype: str,
        size: int,
        session_id: Optional[str] = None,
    ) -> IssuedUrl:
        """Issue one fresh key and URL.

        Args:
            owner_id: Caller's user id
            filename: Original file name
            mimetype: Content type the upload must declare
            size: Declared size in bytes
            session_id: Session to bind the key to; a new one is created when omitted

        Returns:
            The issued key, URL and its lifetime in seconds
        """
        session_id = session_id or uuid.uuid4().hex
        storage_key = self.make_storage_key(owner_id, session_id, filename)
        token = storage_key_context.set(storage_key)
        try:
            url = self._sign_upload(storage_key, mimetype)

            now = datetime.now(timezone.utc)
            self.store.record(
                IssuedKey(
                    storage_key=storage_key,
                    session_id=session_id,
                    owner_id=owner_id,
                    filename=filename,
                    mimetype=mimetype,
                    size=size,
                    issued_at=now,
                    expires_at=now + timedelta(minutes=settings.UPLOAD_SESSION_TTL_MINUTES),
                )
            )
            logger.debug("Issued upload URL", extra={"session_id": session_id, "owner_id": owner_id})
        finally:
            storage_key_context.reset(token)

        return IssuedUrl(
            storage_key=storage_key,
            pre_signed_url=url,
            expires_in=settings.presigned_url_expiry_seconds,
        )

    def request_urls(self, owner_id: str, files: list[FileDescriptor]) -> RequestUrlsResponse:
        """Validate a batch and mint one URL per file, in request order."""
        self.validate_batch(files)
        self.check_rate_limit(owner_id, len(files))

        session_id = uuid.uuid4().hex
        items = []
        for descriptor in files:
            issued = self.issue_single(
                owner_id, descriptor.filename, descriptor.mimetype, descriptor.size, session_id
            )
            items.append(
                PreSignedItem(
                    storage_key=issued.storage_key,
                    pre_signed_url=issued.pre_signed_url,
                    filename=descriptor.filename,
                    size=descriptor.size,
                    mimetype=descriptor.mimetype,
                )
            )

        logger.info(
            "Pre-signed URLs issued",
            extra={
                "session_id": session_id,
                "owner_id": owner_id,
                "file_count": len(items),
                "backend": self.backend.get_backend_name(),
            },
        )
        return RequestUrlsResponse(
            session_id=session_id,
            pre_signed_data=items,
            expires_in=settings.presigned_url_expiry_seconds,
        )
