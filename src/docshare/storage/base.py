"""Abstract storage backend interface."""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class StoredObject:
    """Listing entry for an object present in storage."""

    key: str
    size: int
    updated_at: datetime


class StorageBackend(ABC):
    """Abstract base class for storage backends.

    Backends never receive file bytes from the service. Clients write and read
    objects directly through the short-lived URLs minted here.
    """

    @abstractmethod
    def generate_upload_url(self, storage_key: str, content_type: str, expires_in: int) -> str:
        """Mint a write-scoped pre-signed URL for one object.

        Args:
            storage_key: Object key to write
            content_type: MIME type the client must send as Content-Type
            expires_in: URL lifetime in seconds

        Returns:
            Pre-signed PUT URL
        """
        pass

    @abstractmethod
    def generate_download_url(
        self, storage_key: str, expires_in: int, filename: Optional[str] = None
    ) -> str:
        """Mint a read-scoped pre-signed URL for one object."""
        pass

    @abstractmethod
    def object_exists(self, storage_key: str) -> bool:
        pass

    @abstractmethod
    def delete_object(self, storage_key: str) -> bool:
        """Delete an object.

        Returns:
            True if an object was removed, False if none existed
        """
        pass

    @abstractmethod
    def list_objects(self, prefix: str) -> list[StoredObject]:
        """List objects whose key starts with prefix."""
        pass

    @abstractmethod
    def get_backend_name(self) -> str:
        """Return backend identifier."""
        pass


def sanitize_filename(filename: str, max_length: int = 255) -> str:
    """Remove path traversal and characters unsafe in object keys."""
    safe = filename.replace("../", "").replace("..\\", "")
    safe = safe.replace("/", "_").replace("\\", "_")
    safe = re.sub(r"[^a-zA-Z0-9.-]", "_", safe)
    return safe[:max_length] or "file"
