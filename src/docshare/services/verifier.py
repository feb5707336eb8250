"""Completion verifier and orphan reconciliation."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from docshare.core.config import settings
from docshare.core.exceptions import NotFoundError, TransactionFailure, UploadPipelineError
from docshare.db.models import Resource, Upload
from docshare.models.enums import UploadStatus
from docshare.models.upload import CompletionReport, OrphanReport
from docshare.storage.base import StorageBackend
from docshare.storage.session_store import UploadSessionStore

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class CompletionVerifier:
    """Confirms storage state for persisted uploads and finds orphaned objects."""

    def __init__(self, session_factory: sessionmaker, backend: StorageBackend, store: UploadSessionStore):
        self.session_factory = session_factory
        self.backend = backend
        self.store = store

    def complete_resource(self, owner_id: str, resource_id: str) -> CompletionReport:
        """Verify every non-completed upload of a resource. Safe to call repeatedly."""
        report = CompletionReport(resource_id=resource_id)
        try:
            with self.session_factory() as db, db.begin():
                resource = db.get(Resource, resource_id)
                if resource is None or resource.owner_id != owner_id:
                    raise NotFoundError("Resource not found", details={"resource_id": resource_id})

                now = datetime.now(timezone.utc)
                for upload in resource.uploads:
                    if upload.status == UploadStatus.COMPLETED:
                        report.already_completed.append(upload.id)
                    elif self.backend.object_exists(upload.storage_key):
                        upload.status = UploadStatus.COMPLETED
                        upload.uploaded_at = now
                        report.completed.append(upload.id)
                    else:
                        upload.status = UploadStatus.MISSING
                        report.missing.append(upload.id)
        except UploadPipelineError:
            raise
        except SQLAlchemyError as e:
            logger.error("Completion check failed", exc_info=True, extra={"resource_id": resource_id})
            raise TransactionFailure("Failed to record upload completion") from e

        log = logger.warning if report.missing else logger.info
        log(
            "Resource uploads verified",
            extra={
                "resource_id": resource_id,
                "completed": len(report.completed),
                "missing": len(report.missing),
                "already_completed": len(report.already_completed),
            },
        )
        return report

    def _verify_unconfirmed(self, report: OrphanReport, cutoff: datetime, owner_id: Optional[str]) -> None:
        conditions = [Upload.status.in_([UploadStatus.PENDING, UploadStatus.MISSING])]
        if owner_id is not None:
            conditions.append(Upload.user_id == owner_id)

        with self.session_factory() as db, db.begin():
            unconfirmed = db.scalars(select(Upload).where(*conditions)).all()
            for upload in unconfirmed:
                if self.backend.object_exists(upload.storage_key):
                    upload.status = UploadStatus.COMPLETED
                    upload.uploaded_at = datetime.now(timezone.utc)
                    report.verified_completed.append(upload.id)
                elif upload.status == UploadStatus.PENDING and _as_utc(upload.created_at) < cutoff:
                    upload.status = UploadStatus.MISSING
                    report.flagged_missing.append(upload.id)

    def sweep_orphans(self, now: Optional[datetime] = None, owner_id: Optional[str] = None) -> OrphanReport:
        """Run one reconciliation pass.

        Pending or missing uploads whose object exists are completed; pending
        ones still missing after the retention window are flagged MISSING.
        Storage objects under the key prefix that no upload row references and
        that are older than the window are orphans: reported, and deleted when
        ORPHAN_AUTO_DELETE is set.

        Args:
            now: Reference time, defaults to the current time
            owner_id: Restrict the pass to one owner's rows and key prefix
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=settings.orphan_retention_seconds)
        report = OrphanReport(
            auto_delete=settings.ORPHAN_AUTO_DELETE,
            retention_hours=settings.ORPHAN_RETENTION_HOURS,
        )

        report.expired_sessions_purged = self.store.purge_expired(now, owner_id=owner_id)
        self._verify_unconfirmed(report, cutoff, owner_id)

        prefix = f"{settings.STORAGE_KEY_PREFIX}/"
        if owner_id is not None:
            prefix = f"{prefix}{owner_id}/"
        objects = self.backend.list_objects(prefix)
        report.scanned = len(objects)
        candidates = {obj.key: obj for obj in objects if _as_utc(obj.updated_at) < cutoff}

        if candidates:
            with self.session_factory() as db:
                referenced = set(
                    db.scalars(select(Upload.storage_key).where(Upload.storage_key.in_(list(candidates))))
                )
            for key in sorted(candidates):
                if key in referenced:
                    continue
                issued = self.store.get(key)
                if issued is not None and not issued.is_expired(now):
                    continue
                report.orphans.append(key)

        if settings.ORPHAN_AUTO_DELETE:
            for key in report.orphans:
                try:
                    if self.backend.delete_object(key):
                        report.deleted.append(key)
                    self.store.discard(key)
                except Exception as e:
                    logger.warning("Failed to delete orphaned object", extra={"storage_key": key, "error": str(e)})

        logger.info(
            "Orphan sweep finished",
            extra={
                "scanned": report.scanned,
                "orphans": len(report.orphans),
                "deleted": len(report.deleted),
                "verified_completed": len(report.verified_completed),
                "flagged_missing": len(report.flagged_missing),
            },
        )
        return report

    async def run_periodic(self, interval_seconds: int, stop_event: asyncio.Event) -> None:
        """Sweep every interval until stop_event is set."""
        logger.info("Periodic reconciliation started", extra={"interval_seconds": interval_seconds})
        while not stop_event.is_set():
            try:
                await asyncio.to_thread(self.sweep_orphans)
            except Exception as e:
                logger.error(f"Reconciliation sweep failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Periodic reconciliation stopped")
