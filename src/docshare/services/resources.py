"""Resource transaction service.

Commits a resource, its uploads and an optional new folder in one database
transaction. Storage objects are never touched by a commit, so a rejected
submission can be corrected and resent with the same storage keys.
"""

import logging
import math
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from docshare.core.config import settings
from docshare.core.exceptions import (
    ConflictError,
    InvalidReferenceError,
    NotFoundError,
    PermissionDeniedError,
    TransactionFailure,
    UploadPipelineError,
    ValidationError,
)
from docshare.db.models import (
    ClassificationLevel,
    Folder,
    FolderResource,
    FolderTag,
    Resource,
    Tag,
    Upload,
)
from docshare.models.enums import ModerationStatus, ResourceStatus, UploadStatus, Visibility
from docshare.models.upload import (
    CreateResourceRequest,
    CreateResourceResponse,
    DownloadResponse,
    FolderManagement,
    MyUploadsResponse,
    Pagination,
    ResourceOut,
    ResourceWithUploads,
    UploadOut,
)
from docshare.services.broker import file_violations, parse_storage_key
from docshare.storage.base import StorageBackend
from docshare.storage.session_store import UploadSessionStore

logger = logging.getLogger(__name__)


class ResourceTransactionService:
    """Creates, lists and deletes resources with their uploads."""

    def __init__(
        self,
        session_factory: sessionmaker,
        store: UploadSessionStore,
        backend: StorageBackend,
    ):
        self.session_factory = session_factory
        self.store = store
        self.backend = backend

    def verify_storage_keys(self, owner_id: str, request: CreateResourceRequest) -> None:
        """Check every referenced key belongs to the caller (and session, when given).

        Raises:
            ValidationError: Duplicate keys or per-file metadata violations
            PermissionDeniedError: Key outside the caller's namespace or session
        """
        seen = set()
        for index, file in enumerate(request.files):
            if file.storage_key in seen:
                raise ValidationError(
                    "Each storage key may appear only once",
                    details={"storage_key": file.storage_key},
                )
            seen.add(file.storage_key)

            reasons = file_violations(file.original_filename, file.mimetype, file.size)
            if reasons:
                raise ValidationError(
                    f"{file.original_filename}: {reasons[0]}",
                    details={"index": index, "reasons": reasons},
                )

            parsed = parse_storage_key(file.storage_key)
            if parsed is None or parsed[0] != owner_id:
                raise PermissionDeniedError(
                    "Storage key does not belong to the current user",
                    details={"storage_key": file.storage_key},
                )
            if request.session_id and parsed[1] != request.session_id:
                raise PermissionDeniedError(
                    "Storage key was not issued in this upload session",
                    details={"storage_key": file.storage_key, "session_id": request.session_id},
                )

            issued = self.store.get(file.storage_key)
            if issued is not None and (issued.size != file.size or issued.mimetype != file.mimetype):
                raise ValidationError(
                    "File metadata does not match the issued upload",
                    details={"storage_key": file.storage_key},
                )

    def _resolve_folder(
        self, db: Session, owner_id: str, management: Optional[FolderManagement]
    ) -> Optional[Folder]:
        if management is None:
            return None

        if management.selected_folder_id is not None:
            folder = db.get(Folder, management.selected_folder_id)
            if folder is None or folder.owner_id != owner_id:
                raise NotFoundError(
                    "Folder not found",
                    details={"folder_id": management.selected_folder_id},
                )
            return folder

        data = management.new_folder_data
        if db.get(ClassificationLevel, data.classification_id) is None:
            raise InvalidReferenceError(
                "Unknown classification level",
                details={"classification_id": data.classification_id},
            )

        tag_ids = list(dict.fromkeys(data.tag_ids))
        if tag_ids:
            found = set(db.scalars(select(Tag.id).where(Tag.id.in_(tag_ids))))
            unknown = [tag_id for tag_id in tag_ids if tag_id not in found]
            if unknown:
                raise InvalidReferenceError("Unknown tag ids", details={"tag_ids": unknown})

        existing = db.scalar(
            select(Folder.id).where(Folder.owner_id == owner_id, Folder.name == data.name)
        )
        if existing is not None:
            raise ConflictError(
                f"A folder named '{data.name}' already exists",
                details={"field": "newFolderData.name", "name": data.name},
            )

        folder = Folder(
            owner_id=owner_id,
            name=data.name,
            description=data.description,
            classification_level_id=data.classification_id,
            visibility=data.visibility,
            tags=[FolderTag(tag_id=tag_id) for tag_id in tag_ids],
        )
        db.add(folder)
        db.flush()
        return folder

    def _replayed_commit(
        self, db: Session, owner_id: str, request: CreateResourceRequest, committed: list[Upload]
    ) -> Optional[CreateResourceResponse]:
        """Return the earlier result when this exact submission was already committed.

        A client whose response was lost resends the same keys; they must map to
        one resource of the caller holding exactly those keys under the same title.
        """
        resource_ids = {upload.resource_id for upload in committed}
        if len(resource_ids) != 1:
            return None
        resource = db.get(Resource, resource_ids.pop())
        if resource is None or resource.owner_id != owner_id or resource.title != request.title:
            return None
        if {upload.storage_key for upload in resource.uploads} != {f.storage_key for f in request.files}:
            return None

        return CreateResourceResponse(
            resource=ResourceOut.model_validate(resource),
            uploads=[UploadOut.model_validate(upload) for upload in resource.uploads],
            folder_id=resource.folder_links[0].folder_id if resource.folder_links else None,
        )

    def create_resource(self, owner_id: str, request: CreateResourceRequest) -> CreateResourceResponse:
        """Commit folder, resource and uploads atomically.

        Resending a submission that was already committed returns the committed
        resource instead of creating a second one.

        Raises:
            ValidationError, InvalidReferenceError, PermissionDeniedError,
            NotFoundError, ConflictError: Input the caller can correct
            TransactionFailure: The database rejected the commit
        """
        self.verify_storage_keys(owner_id, request)
        storage_keys = [file.storage_key for file in request.files]

        try:
            with self.session_factory() as db, db.begin():
                already_committed = db.scalars(
                    select(Upload).where(Upload.storage_key.in_(storage_keys))
                ).all()
                if already_committed:
                    replayed = self._replayed_commit(db, owner_id, request, already_committed)
                    if replayed is not None:
                        logger.info(
                            "Resource commit replayed",
                            extra={"resource_id": replayed.resource.id, "owner_id": owner_id},
                        )
                        return replayed
                    raise ConflictError(
                        "Storage keys are already attached to a resource",
                        details={
                            "storage_keys": [upload.storage_key for upload in already_committed],
                            "resource_ids": sorted({upload.resource_id for upload in already_committed}),
                        },
                    )

                folder = self._resolve_folder(db, owner_id, request.folder_management)

                resource = Resource(
                    owner_id=owner_id,
                    title=request.title,
                    description=request.description,
                    visibility=request.visibility,
                    category=request.category,
                    status=ResourceStatus.PENDING_APPROVAL,
                )
                db.add(resource)
                db.flush()

                if folder is not None:
                    db.add(FolderResource(folder_id=folder.id, resource_id=resource.id))

                uploads = [
                    Upload(
                        user_id=owner_id,
                        resource_id=resource.id,
                        file_name=file.original_filename,
                        title=file.title,
                        description=file.description,
                        category=file.category,
                        visibility=file.visibility,
                        mime_type=file.mimetype,
                        size=file.size,
                        storage_key=file.storage_key,
                        status=UploadStatus.PENDING,
                        moderation_status=ModerationStatus.PENDING,
                    )
                    for file in request.files
                ]
                db.add_all(uploads)
                db.flush()

                response = CreateResourceResponse(
                    resource=ResourceOut.model_validate(resource),
                    uploads=[UploadOut.model_validate(upload) for upload in uploads],
                    folder_id=folder.id if folder is not None else None,
                )
        except UploadPipelineError:
            raise
        except IntegrityError as e:
            if "unique" in str(e.orig).lower() or "duplicate" in str(e.orig).lower():
                logger.warning("Resource commit hit a uniqueness violation", extra={"owner_id": owner_id, "error": str(e.orig)})
                raise ConflictError("Submission conflicts with existing records") from e
            logger.error("Resource commit violated a constraint", exc_info=True, extra={"owner_id": owner_id})
            raise TransactionFailure("Failed to create resource; nothing was saved") from e
        except SQLAlchemyError as e:
            logger.error("Resource commit failed", exc_info=True, extra={"owner_id": owner_id})
            raise TransactionFailure("Failed to create resource; nothing was saved") from e

        self.store.mark_consumed(storage_keys, response.resource.id)
        logger.info(
            "Resource created",
            extra={
                "resource_id": response.resource.id,
                "owner_id": owner_id,
                "upload_count": len(response.uploads),
                "folder_id": response.folder_id,
            },
        )
        return response

    def list_user_uploads(
        self,
        owner_id: str,
        page: int = 1,
        limit: int = 10,
        status: Optional[UploadStatus] = None,
    ) -> MyUploadsResponse:
        """Page through the caller's resources, newest first."""
        page = max(page, 1)
        limit = max(min(limit, 100), 1)

        conditions = [Resource.owner_id == owner_id]
        if status is not None:
            conditions.append(Resource.uploads.any(Upload.status == status))

        with self.session_factory() as db:
            total = db.scalar(select(func.count()).select_from(Resource).where(*conditions)) or 0
            resources = db.scalars(
                select(Resource)
                .where(*conditions)
                .options(selectinload(Resource.uploads))
                .order_by(Resource.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()

            items = []
            for resource in resources:
                uploads = [
                    UploadOut.model_validate(upload)
                    for upload in resource.uploads
                    if status is None or upload.status == status
                ]
                item = ResourceWithUploads.model_validate(resource)
                item.uploads = uploads
                items.append(item)

        return MyUploadsResponse(
            uploads=items,
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                total_pages=math.ceil(total / limit) if total else 0,
            ),
        )

    def download_url(self, user_id: str, upload_id: str) -> DownloadResponse:
        """Mint a short-lived read URL.

        Owners may always download. Anyone else needs a public resource whose
        upload is moderated as approved and verified as completed.
        """
        with self.session_factory() as db:
            upload = db.get(Upload, upload_id)
            if upload is None:
                raise NotFoundError("Upload not found", details={"upload_id": upload_id})

            if upload.user_id != user_id:
                allowed = (
                    upload.resource.visibility == Visibility.PUBLIC
                    and upload.moderation_status == ModerationStatus.APPROVED
                    and upload.status == UploadStatus.COMPLETED
                )
                if not allowed:
                    raise NotFoundError("Upload not found", details={"upload_id": upload_id})

            storage_key = upload.storage_key
            file_name = upload.file_name

        url = self.backend.generate_download_url(
            storage_key, settings.download_url_expiry_seconds, filename=file_name
        )
        return DownloadResponse(download_url=url, expires_in=settings.download_url_expiry_seconds)

    def delete_resource(self, owner_id: str, resource_id: str) -> list[str]:
        """Delete a resource with its uploads and folder links.

        Storage objects are removed after the commit; failures there are left
        for the orphan sweep.

        Returns:
            Storage keys that were released
        """
        try:
            with self.session_factory() as db, db.begin():
                resource = db.get(Resource, resource_id)
                if resource is None or resource.owner_id != owner_id:
                    raise NotFoundError("Resource not found", details={"resource_id": resource_id})
                storage_keys = [upload.storage_key for upload in resource.uploads]
                db.delete(resource)
        except UploadPipelineError:
            raise
        except SQLAlchemyError as e:
            logger.error("Resource delete failed", exc_info=True, extra={"resource_id": resource_id})
            raise TransactionFailure("Failed to delete resource") from e

        for storage_key in storage_keys:
            try:
                self.backend.delete_object(storage_key)
            except Exception as e:
                logger.warning(
                    "Failed to delete storage object, leaving it for the orphan sweep",
                    extra={"storage_key": storage_key, "error": str(e)},
                )

        logger.info("Resource deleted", extra={"resource_id": resource_id, "owner_id": owner_id})
        return storage_keys

    def delete_storage_object(self, owner_id: str, storage_key: str) -> bool:
        """Delete an uncommitted object the caller uploaded.

        Raises:
            PermissionDeniedError: Key outside the caller's namespace
            ConflictError: Key is attached to a committed upload
        """
        parsed = parse_storage_key(storage_key)
        if parsed is None or parsed[0] != owner_id:
            raise PermissionDeniedError(
                "Cannot delete a file belonging to another user",
                details={"storage_key": storage_key},
            )

        with self.session_factory() as db:
            referenced = db.scalar(select(Upload.id).where(Upload.storage_key == storage_key))
        if referenced is not None:
            raise ConflictError(
                "Storage object is attached to a resource; delete the resource instead",
                details={"storage_key": storage_key, "upload_id": referenced},
            )

        deleted = self.backend.delete_object(storage_key)
        self.store.discard(storage_key)
        logger.info(
            "Uncommitted storage object released",
            extra={"storage_key": storage_key, "owner_id": owner_id, "deleted": deleted},
        )
        return deleted

    def delete_storage_objects(self, owner_id: str, storage_keys: list[str]) -> list[str]:
        """Delete several uncommitted objects; every key is checked before any is removed.

        Raises:
            PermissionDeniedError: A key is outside the caller's namespace
            ConflictError: A key is attached to a committed upload

        Returns:
            Keys whose object existed and was deleted
        """
        storage_keys = list(dict.fromkeys(storage_keys))
        foreign = []
        for key in storage_keys:
            parsed = parse_storage_key(key)
            if parsed is None or parsed[0] != owner_id:
                foreign.append(key)
        if foreign:
            raise PermissionDeniedError(
                "Cannot delete files belonging to another user",
                details={"storage_keys": foreign},
            )

        with self.session_factory() as db:
            referenced = list(
                db.scalars(select(Upload.storage_key).where(Upload.storage_key.in_(storage_keys)))
            )
        if referenced:
            raise ConflictError(
                "Storage objects are attached to a resource; delete the resource instead",
                details={"storage_keys": referenced},
            )

        deleted = []
        for storage_key in storage_keys:
            if self.backend.delete_object(storage_key):
                deleted.append(storage_key)
            self.store.discard(storage_key)
        logger.info(
            "Uncommitted storage objects released",
            extra={"owner_id": owner_id, "requested": len(storage_keys), "deleted": len(deleted)},
        )
        return deleted
