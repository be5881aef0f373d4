"""In-process single-flight guard for asset uploads."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from threading import Lock

logger = logging.getLogger(__name__)


class UploadInProgressError(Exception):
    """Another upload to the same asset key has not finished yet."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"An upload to {key} is already in progress")


class UploadGuard:
    """Allow at most one in-flight upload per asset key within this process.

    The upload coordinator does not serialize writers itself; request
    handlers claim the key here before starting a transfer.
    """

    def __init__(self) -> None:
        self._in_flight: set[str] = set()
        self._lock = Lock()

    def is_in_flight(self, key: str) -> bool:
        """Check whether an upload to ``key`` is currently claimed."""
        with self._lock:
            return key in self._in_flight

    @asynccontextmanager
    async def claim(self, key: str) -> AsyncIterator[None]:
        """Hold ``key`` for the duration of the block.

        Raises:
            UploadInProgressError: If ``key`` is already claimed.
        """
        with self._lock:
            if key in self._in_flight:
                logger.warning("Rejected concurrent upload to %s", key)
                raise UploadInProgressError(key)
            self._in_flight.add(key)

        try:
            yield
        finally:
            with self._lock:
                self._in_flight.discard(key)


# Global guard instance
_upload_guard: UploadGuard | None = None


def get_upload_guard() -> UploadGuard:
    """Get or create the global upload guard."""
    global _upload_guard
    if _upload_guard is None:
        _upload_guard = UploadGuard()
    return _upload_guard
