"""Upload wizard coordinator.

Drives the three wizard steps, asks the broker for URLs, runs bounded-parallel
transfers and submits the resource. Per-file failures stay on that file's row;
only submission errors surface at the wizard level.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Collection, Optional, Union

from docshare.client.api import UploadApiClient
from docshare.client.config import ClientConfig
from docshare.client.state import (
    Completed,
    Error,
    ErrorKind,
    Pending,
    Requesting,
    UploadFile,
    UploadStateStore,
    Uploading,
)
from docshare.client.uploader import DirectStorageUploader
from docshare.core.exceptions import (
    AuthExpiredError,
    ConflictError,
    NetworkTransientError,
    RateLimitedError,
    RetryLimitExceededError,
    UploadPipelineError,
    ValidationError,
)
from docshare.models.enums import DocumentCategory, Visibility
from docshare.models.upload import (
    CreateResourceRequest,
    CreateResourceResponse,
    FileDescriptor,
    FileMetadata,
    FolderManagement,
    NewFolderData,
)

logger = logging.getLogger(__name__)

Notifier = Callable[[str, str], None]


class WizardStep(str, Enum):
    SELECT_FILES = "select_files"
    METADATA = "metadata"
    REVIEW_SUBMIT = "review_submit"


_STEP_ORDER = [WizardStep.SELECT_FILES, WizardStep.METADATA, WizardStep.REVIEW_SUBMIT]


@dataclass
class ResourceDraft:
    title: str = ""
    description: str = ""
    visibility: Visibility = Visibility.PRIVATE
    category: DocumentCategory = DocumentCategory.OTHER


@dataclass
class FolderDraft:
    """Folder choice: an existing folder id, a new folder, or neither."""

    selected_folder_id: Optional[str] = None
    name: Optional[str] = None
    description: str = ""
    classification_id: Optional[str] = None
    tag_ids: list[str] = field(default_factory=list)

    @property
    def is_new(self) -> bool:
        return self.selected_folder_id is None and self.name is not None


def _log_notify(level: str, message: str) -> None:
    logger.log(logging.ERROR if level == "error" else logging.INFO, message)


def _error_kind(exc: Exception) -> ErrorKind:
    if isinstance(exc, AuthExpiredError):
        return ErrorKind.AUTH_EXPIRED
    if isinstance(exc, NetworkTransientError):
        return ErrorKind.NETWORK
    if isinstance(exc, ValidationError):
        return ErrorKind.VALIDATION
    if isinstance(exc, RetryLimitExceededError):
        return ErrorKind.RETRY_LIMIT
    if isinstance(exc, UploadPipelineError):
        return ErrorKind.STORAGE
    return ErrorKind.UNKNOWN


class UploadCoordinator:
    """Client-owned state machine for one upload wizard."""

    def __init__(
        self,
        api: UploadApiClient,
        uploader: DirectStorageUploader,
        config: Optional[ClientConfig] = None,
        store: Optional[UploadStateStore] = None,
        notify: Optional[Notifier] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.api = api
        self.uploader = uploader
        self.config = config or api.config
        self.store = store or UploadStateStore()
        self.notify = notify or _log_notify
        self._clock = clock
        self._semaphore = asyncio.Semaphore(self.config.parallelism)
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancelled_requests: set[str] = set()
        self.step = WizardStep.SELECT_FILES
        self.resource = ResourceDraft()
        self.folder = FolderDraft()

    # File selection

    def add_file(
        self,
        filename: str,
        size: int,
        mimetype: str,
        source: Union[bytes, Path, None] = None,
    ) -> UploadFile:
        """Add a file as Pending, or as a validation Error if it fails local checks."""
        title = Path(filename).stem or filename
        file = UploadFile(
            id=uuid.uuid4().hex,
            filename=filename,
            size=size,
            mimetype=mimetype,
            source=source,
            title=title,
            visibility=self.resource.visibility,
            category=self.resource.category,
        )
        self.store.add(file)

        problem = self._local_violation(file)
        if problem:
            file = self.store.transition(file.id, Error(problem, ErrorKind.VALIDATION))
        return file

    def _local_violation(self, file: UploadFile) -> Optional[str]:
        if file.size <= 0:
            return f"{file.filename} is empty"
        if file.size > self.config.max_file_bytes:
            return f"{file.filename} exceeds the maximum size of {self.config.max_file_bytes // (1024 * 1024)}MB"
        if self.config.allowed_mime_types and file.mimetype not in self.config.allowed_mime_types:
            return f"{file.filename} has an unsupported type ({file.mimetype})"
        return None

    async def remove_file(self, file_id: str) -> None:
        """Drop a file from the wizard, cancelling its transfer and releasing its object."""
        await self.cancel(file_id)
        file = self.store.remove(file_id)
        if file is not None and file.storage_key and isinstance(file.status, Completed):
            try:
                await self.api.delete_storage_object(file.storage_key)
            except UploadPipelineError as e:
                logger.warning(
                    "Could not release storage object of removed file",
                    extra={"storage_key": file.storage_key, "error": e.message},
                )

    async def clear_files(self) -> list[str]:
        """Drop every file and release the uploaded objects in one call.

        Returns the storage keys the service deleted. When the release is
        refused the files are still dropped and the sweep reclaims the objects.
        """
        for file_id in list(self._tasks):
            await self.cancel(file_id)
        keys = []
        for file in self.store.snapshot():
            self.store.remove(file.id)
            if file.storage_key and isinstance(file.status, Completed):
                keys.append(file.storage_key)
        if not keys:
            return []
        try:
            response = await self.api.delete_storage_objects(keys)
        except UploadPipelineError as e:
            logger.warning(
                "Could not release storage objects of cleared files",
                extra={"storage_keys": keys, "error": e.message},
            )
            return []
        return response.deleted

    # Transfers

    async def start_uploads(self) -> None:
        """Request URLs for every Pending file, in batches the service accepts, then transfer them."""
        pending = [f.id for f in self.store.with_status(Pending)]
        size = max(self.config.max_files_per_batch, 1)
        batches = [pending[i:i + size] for i in range(0, len(pending), size)]
        if batches:
            await asyncio.gather(*(self._request_and_transfer(batch) for batch in batches))

    async def _request_and_transfer(self, file_ids: list[str]) -> None:
        files = [self.store.get(file_id) for file_id in file_ids]
        descriptors = [
            FileDescriptor(filename=f.filename, mimetype=f.mimetype, size=f.size) for f in files
        ]

        error: Optional[UploadPipelineError] = None
        try:
            with self.store.tentative(file_ids, Requesting()):
                response = await self.api.request_urls(descriptors)
        except UploadPipelineError as e:
            error = e
        finally:
            cancelled = self._cancelled_requests.intersection(file_ids)
            self._cancelled_requests.difference_update(file_ids)

        if isinstance(error, ValidationError):
            self._apply_batch_rejection(file_ids, error, skip=cancelled)
            return
        if isinstance(error, RateLimitedError):
            # Files stay Pending; start_uploads can send them once the window passes
            self.notify("error", error.message)
            return
        if error is not None:
            for file_id in file_ids:
                if file_id in self.store and file_id not in cancelled:
                    self.store.transition(file_id, Error(error.message, _error_kind(error)))
            self.notify("error", f"Could not prepare uploads: {error.message}")
            return

        expires_at = self._clock() + response.expires_in
        for file_id, item in zip(file_ids, response.pre_signed_data):
            if file_id not in self.store:
                continue
            if file_id in cancelled:
                # Cancelled while waiting for its link; the issued key is never used
                file = self.store.get(file_id)
                self.store.transition(
                    file_id, Pending(), previous_keys=file.previous_keys + (item.storage_key,)
                )
            else:
                self.store.update(
                    file_id,
                    storage_key=item.storage_key,
                    session_id=response.session_id,
                    upload_url=item.pre_signed_url,
                    url_expires_at=expires_at,
                )

        tasks = []
        for file_id in file_ids:
            if file_id in self.store and isinstance(self.store.get(file_id).status, Requesting):
                task = asyncio.create_task(self._transfer(file_id))
                self._tasks[file_id] = task
                tasks.append(task)
        await asyncio.gather(*tasks, return_exceptions=True)

    def _apply_batch_rejection(
        self, file_ids: list[str], error: ValidationError, skip: Collection[str] = ()
    ) -> None:
        """Mark the files the service rejected by index.

        A rejection of the batch as a whole names no file, so every file stays
        Pending and can be sent again.
        """
        rejected = {entry.get("index"): entry for entry in error.details.get("files", [])}
        for index, file_id in enumerate(file_ids):
            if file_id not in self.store or file_id in skip:
                continue
            if index in rejected:
                reasons = rejected[index].get("reasons") or [error.message]
                self.store.transition(file_id, Error("; ".join(reasons), ErrorKind.VALIDATION))
        self.notify("error", error.message)

    def _on_progress(self, file_id: str, percent: int) -> None:
        if file_id in self.store:
            current = self.store.get(file_id).status
            if isinstance(current, Uploading) and percent > current.progress:
                self.store.transition(file_id, Uploading(percent))

    async def _transfer(self, file_id: str) -> None:
        try:
            async with self._semaphore:
                file = self.store.transition(file_id, Uploading(0))
                await self.uploader.upload(
                    file.upload_url,
                    file.source if file.source is not None else b"",
                    file.mimetype,
                    file.size,
                    expires_at=file.url_expires_at,
                    on_progress=lambda percent: self._on_progress(file_id, percent),
                )
        except asyncio.CancelledError:
            if file_id in self.store:
                file = self.store.get(file_id)
                # The abandoned key is never reused
                previous = file.previous_keys + ((file.storage_key,) if file.storage_key else ())
                self.store.transition(
                    file_id, Pending(), storage_key=None, upload_url=None,
                    url_expires_at=None, previous_keys=previous,
                )
            raise
        except AuthExpiredError:
            self._fail(file_id, "Upload link expired; request a fresh link to retry this file", ErrorKind.AUTH_EXPIRED)
        except UploadPipelineError as e:
            self._fail(file_id, e.message, _error_kind(e))
        except Exception as e:
            logger.error(f"Unexpected transfer failure: {e}", exc_info=True, extra={"file_id": file_id})
            self._fail(file_id, "Upload failed unexpectedly", ErrorKind.UNKNOWN)
        else:
            if file_id in self.store:
                self.store.transition(file_id, Completed())
        finally:
            self._tasks.pop(file_id, None)

    def _fail(self, file_id: str, message: str, kind: ErrorKind) -> None:
        if file_id in self.store:
            file = self.store.transition(file_id, Error(message, kind))
            self.notify("error", f"{file.filename}: {message}")

    async def cancel(self, file_id: str) -> None:
        """Abort one file's link request or transfer; the file returns to Pending.

        A file still waiting for its link goes back to Pending once the service
        answers, and its transfer never starts.
        """
        task = self._tasks.get(file_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        elif file_id in self.store and isinstance(self.store.get(file_id).status, Requesting):
            self._cancelled_requests.add(file_id)

    async def retry_file(self, file_id: str) -> UploadFile:
        """Retry one Error file with a fresh key and URL, leaving siblings alone.

        Raises:
            ValidationError: The file is not in Error
            RetryLimitExceededError: The file used up its retries
        """
        file = self.store.get(file_id)
        if not isinstance(file.status, Error):
            raise ValidationError(f"{file.filename} is not in an error state")
        if file.status.kind == ErrorKind.VALIDATION:
            raise ValidationError(file.status.message)
        if file.attempts >= self.config.max_retries_per_file:
            self.notify("error", f"{file.filename}: retry limit reached")
            raise RetryLimitExceededError(
                f"{file.filename} was retried {file.attempts} times",
                details={"file_id": file_id, "limit": self.config.max_retries_per_file},
            )

        previous = file.previous_keys + ((file.storage_key,) if file.storage_key else ())
        self.store.transition(
            file_id, Pending(), storage_key=None, upload_url=None, url_expires_at=None,
            attempts=file.attempts + 1, previous_keys=previous,
        )
        await self._request_and_transfer([file_id])
        return self.store.get(file_id)

    # Metadata and wizard steps

    def set_resource(self, **fields) -> ResourceDraft:
        for name, value in fields.items():
            if not hasattr(self.resource, name):
                raise AttributeError(f"Unknown resource field {name}")
            setattr(self.resource, name, value)
        return self.resource

    def set_file_metadata(self, file_id: str, **fields) -> UploadFile:
        allowed = {"title", "description", "category", "visibility"}
        unknown = set(fields) - allowed
        if unknown:
            raise AttributeError(f"Unknown file fields {sorted(unknown)}")
        return self.store.update(file_id, **fields)

    def select_folder(self, folder_id: str) -> None:
        self.folder = FolderDraft(selected_folder_id=folder_id)

    def new_folder(self, name: str, classification_id: str, description: str = "", tag_ids: Optional[list[str]] = None) -> None:
        self.folder = FolderDraft(
            name=name, description=description, classification_id=classification_id, tag_ids=list(tag_ids or [])
        )

    def clear_folder(self) -> None:
        self.folder = FolderDraft()

    def completed_files(self) -> list[UploadFile]:
        return self.store.with_status(Completed)

    def metadata_problems(self) -> list[str]:
        """List what still blocks leaving the metadata step."""
        problems = []
        if not self.resource.title.strip():
            problems.append("Resource title is required")
        for file in self.completed_files():
            if not file.title.strip():
                problems.append(f"{file.filename}: title is required")
            if file.category is None:
                problems.append(f"{file.filename}: category is required")
            if file.visibility is None:
                problems.append(f"{file.filename}: visibility is required")
        if self.folder.is_new:
            if not (self.folder.name or "").strip():
                problems.append("Folder name is required")
            if not self.folder.classification_id:
                problems.append("Folder classification is required")
        return problems

    def can_advance(self) -> bool:
        if self.step == WizardStep.SELECT_FILES:
            return bool(self.completed_files())
        if self.step == WizardStep.METADATA:
            return bool(self.completed_files()) and not self.metadata_problems()
        return False

    def advance(self) -> WizardStep:
        if not self.can_advance():
            if self.step == WizardStep.SELECT_FILES:
                raise ValidationError("Upload at least one file before continuing")
            if self.step == WizardStep.METADATA:
                raise ValidationError("; ".join(self.metadata_problems()) or "Upload at least one file")
            raise ValidationError("Already at the last step")
        self.step = _STEP_ORDER[_STEP_ORDER.index(self.step) + 1]
        return self.step

    def back(self) -> WizardStep:
        index = _STEP_ORDER.index(self.step)
        if index > 0:
            self.step = _STEP_ORDER[index - 1]
        return self.step

    def build_payload(self) -> CreateResourceRequest:
        """Build the submission from the Completed files only."""
        completed = self.completed_files()
        sessions = {f.session_id for f in completed}

        folder_management = None
        if self.folder.selected_folder_id is not None:
            folder_management = FolderManagement(selected_folder_id=self.folder.selected_folder_id)
        elif self.folder.is_new:
            folder_management = FolderManagement(
                new_folder_data=NewFolderData(
                    name=self.folder.name,
                    description=self.folder.description,
                    classification_id=self.folder.classification_id,
                    tag_ids=self.folder.tag_ids,
                    visibility=self.resource.visibility,
                )
            )

        return CreateResourceRequest(
            title=self.resource.title,
            description=self.resource.description,
            visibility=self.resource.visibility,
            category=self.resource.category,
            session_id=sessions.pop() if len(sessions) == 1 else None,
            folder_management=folder_management,
            files=[
                FileMetadata(
                    storage_key=f.storage_key,
                    original_filename=f.filename,
                    mimetype=f.mimetype,
                    size=f.size,
                    title=f.title,
                    description=f.description,
                    category=f.category,
                    visibility=f.visibility,
                )
                for f in completed
            ],
        )

    async def submit(self) -> CreateResourceResponse:
        """Commit the Completed files as one resource.

        Nothing is sent when no file is Completed. On a conflict the uploaded
        objects are kept, so the user can fix the input and submit again.
        """
        if not self.completed_files():
            self.notify("error", "Upload at least one file before submitting")
            raise ValidationError("No completed files to submit")
        problems = self.metadata_problems()
        if problems:
            self.notify("error", problems[0])
            raise ValidationError("; ".join(problems), details={"problems": problems})

        payload = self.build_payload()
        try:
            response = await self.api.create_resource(payload)
        except ConflictError as e:
            self.notify("error", f"{e.message}. Rename it and submit again; your files are kept.")
            raise
        except UploadPipelineError as e:
            self.notify("error", f"Could not create the resource: {e.message}")
            raise

        try:
            await self.api.complete(response.resource.id)
        except UploadPipelineError as e:
            # Rows stay PENDING until the reconciliation sweep confirms them
            logger.warning(
                "Completion check failed after submit",
                extra={"resource_id": response.resource.id, "error": e.message},
            )

        submitted = {f.storage_key for f in payload.files}
        for file in self.completed_files():
            if file.storage_key in submitted:
                self.store.remove(file.id)
        self.step = WizardStep.SELECT_FILES
        self.resource = ResourceDraft()
        self.folder = FolderDraft()
        self.notify("success", f"Resource '{response.resource.title}' created with {len(response.uploads)} file(s)")
        return response
