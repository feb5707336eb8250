"""Single-file retry path for persisted uploads."""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from docshare.core.config import settings
from docshare.core.exceptions import (
    ConflictError,
    NotFoundError,
    RetryLimitExceededError,
    TransactionFailure,
    UploadPipelineError,
)
from docshare.db.models import Upload
from docshare.models.enums import UploadStatus
from docshare.models.upload import RetryResponse
from docshare.services.broker import PresignedUrlBroker
from docshare.storage.session_store import UploadSessionStore

logger = logging.getLogger(__name__)


class UploadRetryService:
    """Re-issues a fresh key and URL for one upload without touching its siblings."""

    def __init__(self, session_factory: sessionmaker, broker: PresignedUrlBroker, store: UploadSessionStore):
        self.session_factory = session_factory
        self.broker = broker
        self.store = store

    def _retryable(self, db: Session, owner_id: str, upload_id: str) -> Upload:
        upload = db.get(Upload, upload_id)
        if upload is None or upload.user_id != owner_id:
            raise NotFoundError("Upload not found", details={"upload_id": upload_id})
        if upload.status == UploadStatus.COMPLETED:
            raise ConflictError("Upload is already completed", details={"upload_id": upload_id})
        if upload.retry_count >= settings.MAX_RETRY_ATTEMPTS:
            raise RetryLimitExceededError(
                f"Upload was retried {upload.retry_count} times; limit is {settings.MAX_RETRY_ATTEMPTS}",
                details={"upload_id": upload_id, "retry_count": upload.retry_count},
            )
        return upload

    def retry_upload(self, owner_id: str, upload_id: str) -> RetryResponse:
        """Point the upload at a new storage key and reset it to PENDING.

        The previous key is abandoned and never handed out again.

        Raises:
            NotFoundError: Upload missing or owned by someone else
            ConflictError: Upload is already verified as completed
            RetryLimitExceededError: MAX_RETRY_ATTEMPTS already used
        """
        try:
            with self.session_factory() as db:
                upload = self._retryable(db, owner_id, upload_id)
                file_name, mime_type, size = upload.file_name, upload.mime_type, upload.size
        except UploadPipelineError:
            raise
        except SQLAlchemyError as e:
            logger.error("Retry lookup failed", exc_info=True, extra={"upload_id": upload_id})
            raise TransactionFailure("Failed to load upload") from e

        # No transaction is held while signing backs off
        issued = self.broker.issue_single(owner_id, file_name, mime_type, size)

        try:
            with self.session_factory() as db, db.begin():
                upload = self._retryable(db, owner_id, upload_id)
                previous_key = upload.storage_key
                upload.storage_key = issued.storage_key
                upload.status = UploadStatus.PENDING
                upload.uploaded_at = None
                upload.retry_count += 1
                retry_count = upload.retry_count
                resource_id = upload.resource_id
        except UploadPipelineError:
            self.store.discard(issued.storage_key)
            raise
        except SQLAlchemyError as e:
            self.store.discard(issued.storage_key)
            logger.error("Retry commit failed", exc_info=True, extra={"upload_id": upload_id})
            raise TransactionFailure("Failed to re-point upload") from e

        self.store.mark_consumed([issued.storage_key], resource_id)
        logger.info(
            "Upload retry issued",
            extra={
                "upload_id": upload_id,
                "previous_storage_key": previous_key,
                "storage_key": issued.storage_key,
                "retry_count": retry_count,
            },
        )
        return RetryResponse(
            upload_id=upload_id,
            storage_key=issued.storage_key,
            pre_signed_url=issued.pre_signed_url,
            expires_in=issued.expires_in,
            retry_count=retry_count,
        )
