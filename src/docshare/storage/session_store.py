"""Correlation store for storage keys issued by the broker."""

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional


@dataclass
class IssuedKey:
    """A storage key handed out inside one upload session."""

    storage_key: str
    session_id: str
    owner_id: str
    filename: str
    mimetype: str
    size: int
    issued_at: datetime
    expires_at: datetime  # End of the session window, not of the URL
    consumed_by: Optional[str] = None  # Resource id once committed

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


class UploadSessionStore:
    """In-memory, thread-safe store of issued storage keys.

    Holds correlation data only. Nothing here is required for a commit to
    succeed once the record has expired or the process restarted.
    """

    def __init__(self):
        self._keys: Dict[str, IssuedKey] = {}
        self._lock = threading.Lock()

    def record(self, issued: IssuedKey) -> None:
        """Store a newly issued key."""
        with self._lock:
            self._keys[issued.storage_key] = issued

    def get(self, storage_key: str) -> Optional[IssuedKey]:
        with self._lock:
            return self._keys.get(storage_key)

    def list_session(self, session_id: str) -> list[IssuedKey]:
        """List keys issued in one session."""
        with self._lock:
            return [k for k in self._keys.values() if k.session_id == session_id]

    def count_issued_since(self, owner_id: str, since: datetime) -> int:
        """Count keys issued to one owner at or after ``since``."""
        with self._lock:
            return sum(
                1 for k in self._keys.values() if k.owner_id == owner_id and k.issued_at >= since
            )

    def mark_consumed(self, storage_keys: list[str], resource_id: str) -> None:
        with self._lock:
            for storage_key in storage_keys:
                issued = self._keys.get(storage_key)
                if issued is not None:
                    issued.consumed_by = resource_id

    def discard(self, storage_key: str) -> None:
        with self._lock:
            self._keys.pop(storage_key, None)

    def purge_expired(self, now: Optional[datetime] = None, owner_id: Optional[str] = None) -> int:
        """Drop expired records, committed or not.

        Args:
            now: Reference time, defaults to the current time
            owner_id: Only purge this owner's records

        Returns:
            Number of records removed
        """
        now = now or datetime.now(timezone.utc)
        with self._lock:
            expired = [
                key for key, issued in self._keys.items()
                if issued.is_expired(now) and (owner_id is None or issued.owner_id == owner_id)
            ]
            for key in expired:
                del self._keys[key]
        return len(expired)

    def list_all(self) -> list[IssuedKey]:
        with self._lock:
            return list(self._keys.values())


# Singleton instance
session_store = UploadSessionStore()
