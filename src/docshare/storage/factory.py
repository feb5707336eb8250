"""Storage backend selection."""

from functools import lru_cache

from docshare.core.config import settings
from docshare.storage.base import StorageBackend


@lru_cache(maxsize=1)
def get_storage_backend() -> StorageBackend:
    """Return the configured storage backend.

    Raises:
        ValueError: If STORAGE_BACKEND names an unknown backend
    """
    if settings.STORAGE_BACKEND == "gcs":
        from docshare.storage.gcs import GCSStorageBackend

        return GCSStorageBackend()
    if settings.STORAGE_BACKEND == "local":
        from docshare.storage.local import LocalStorageBackend

        return LocalStorageBackend()
    raise ValueError(f"Unknown storage backend: {settings.STORAGE_BACKEND}")
