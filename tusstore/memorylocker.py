"""In-process locking of uploads.

Locks live in memory only and vanish with the locker object or the process.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

from tusstore.errors import FileLockedError


class MemoryLocker:
    """Hands out exclusive, non-blocking locks keyed by upload id."""

    def __init__(self) -> None:
        self._locks: set[str] = set()
        self._mutex = threading.Lock()

    def new_lock(self, upload_id: str) -> MemoryLock:
        """Return a lock handle for ``upload_id``; it is not acquired yet."""
        return MemoryLock(self, upload_id)

    def _acquire(self, upload_id: str) -> None:
        with self._mutex:
            if upload_id in self._locks:
                raise FileLockedError()
            self._locks.add(upload_id)

    def _release(self, upload_id: str) -> None:
        with self._mutex:
            self._locks.discard(upload_id)


@dataclass(frozen=True)
class MemoryLock:
    """A lock on one upload, usable as a context manager."""

    locker: MemoryLocker
    upload_id: str

    def lock(self) -> None:
        """Take the lock, raising FileLockedError if it is already held."""
        self.locker._acquire(self.upload_id)

    def unlock(self) -> None:
        """Release the lock; releasing a lock that is not held does nothing."""
        self.locker._release(self.upload_id)

    def __enter__(self) -> MemoryLock:
        self.lock()
        return self

    def __exit__(self, *args: object) -> None:
        self.unlock()