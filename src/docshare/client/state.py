"""Per-file upload state for the wizard.

Each file's status is a small tagged union. The store is owned by one wizard
flow and keyed per file; every change replaces one immutable ``UploadFile``
snapshot and is announced to subscribers.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

from docshare.models.enums import DocumentCategory, Visibility

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Pending:
    pass


@dataclass(frozen=True)
class Requesting:
    pass


@dataclass(frozen=True)
class Uploading:
    progress: int = 0  # 0-100


@dataclass(frozen=True)
class Completed:
    pass


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTH_EXPIRED = "auth_expired"
    NETWORK = "network"
    STORAGE = "storage"
    RETRY_LIMIT = "retry_limit"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Error:
    message: str
    kind: ErrorKind = ErrorKind.UNKNOWN


FileStatus = Union[Pending, Requesting, Uploading, Completed, Error]


class InvalidTransitionError(Exception):
    """Raised for a status change the per-file state machine does not allow."""


# Forward edges plus Error -> Pending (retry) and Requesting/Uploading -> Pending (cancel)
_ALLOWED = {
    Pending: (Requesting, Error),
    Requesting: (Uploading, Error, Pending),
    Uploading: (Uploading, Completed, Error, Pending),
    Completed: (),
    Error: (Pending,),
}


def check_transition(current: FileStatus, new: FileStatus) -> None:
    """Raise InvalidTransitionError unless current -> new is allowed."""
    if current == new:
        return
    if type(new) not in _ALLOWED[type(current)]:
        raise InvalidTransitionError(
            f"{type(current).__name__} -> {type(new).__name__} is not allowed"
        )
    if isinstance(current, Uploading) and isinstance(new, Uploading) and new.progress < current.progress:
        raise InvalidTransitionError("Upload progress cannot go backwards")


@dataclass(frozen=True)
class UploadFile:
    """A file selected in the wizard."""

    id: str
    filename: str
    size: int
    mimetype: str
    source: Union[bytes, Path, None] = None
    status: FileStatus = field(default_factory=Pending)
    storage_key: Optional[str] = None
    session_id: Optional[str] = None
    upload_url: Optional[str] = None
    url_expires_at: Optional[float] = None  # epoch seconds
    attempts: int = 0  # retries used
    previous_keys: tuple[str, ...] = ()
    # Per-file metadata for the submission
    title: str = ""
    description: str = ""
    category: Optional[DocumentCategory] = None
    visibility: Optional[Visibility] = None

    @property
    def progress(self) -> int:
        if isinstance(self.status, Completed):
            return 100
        if isinstance(self.status, Uploading):
            return self.status.progress
        return 0

    @property
    def error_message(self) -> Optional[str]:
        return self.status.message if isinstance(self.status, Error) else None


Listener = Callable[[str, Optional[UploadFile]], None]


class UploadStateStore:
    """Reactive store of UploadFile snapshots keyed by file id."""

    def __init__(self):
        self._files: dict[str, UploadFile] = {}
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener called with (file_id, snapshot or None when removed).

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, file_id: str, snapshot: Optional[UploadFile]) -> None:
        if snapshot is None:
            self._files.pop(file_id, None)
        else:
            self._files[file_id] = snapshot
        for listener in list(self._listeners):
            try:
                listener(file_id, snapshot)
            except Exception:
                logger.exception("Upload state listener failed", extra={"file_id": file_id})

    def add(self, file: UploadFile) -> UploadFile:
        if file.id in self._files:
            raise ValueError(f"Duplicate file id {file.id}")
        self._publish(file.id, file)
        return file

    def remove(self, file_id: str) -> Optional[UploadFile]:
        previous = self._files.get(file_id)
        if previous is not None:
            self._publish(file_id, None)
        return previous

    def get(self, file_id: str) -> UploadFile:
        try:
            return self._files[file_id]
        except KeyError:
            raise KeyError(f"Unknown file id {file_id}") from None

    def __contains__(self, file_id: str) -> bool:
        return file_id in self._files

    def snapshot(self) -> list[UploadFile]:
        """All files in selection order."""
        return list(self._files.values())

    def with_status(self, status_type: type) -> list[UploadFile]:
        return [f for f in self._files.values() if isinstance(f.status, status_type)]

    def transition(self, file_id: str, status: FileStatus, **changes) -> UploadFile:
        """Move one file to a new status, validating the edge."""
        current = self.get(file_id)
        check_transition(current.status, status)
        updated = replace(current, status=status, **changes)
        self._publish(file_id, updated)
        return updated

    def update(self, file_id: str, **changes) -> UploadFile:
        """Change non-status fields of one file."""
        if "status" in changes:
            raise ValueError("Use transition() to change status")
        updated = replace(self.get(file_id), **changes)
        self._publish(file_id, updated)
        return updated

    @contextmanager
    def tentative(self, file_ids: list[str], status: Optional[FileStatus] = None, **changes) -> Iterator[None]:
        """Apply a change optimistically and restore the prior snapshots on failure.

        Files removed while the block runs are not restored.
        """
        previous = {file_id: self.get(file_id) for file_id in file_ids}
        for file_id in file_ids:
            if status is not None:
                self.transition(file_id, status, **changes)
            elif changes:
                self.update(file_id, **changes)
        try:
            yield
        except BaseException:
            for file_id, snapshot in previous.items():
                if file_id in self._files:
                    self._publish(file_id, snapshot)
            raise
