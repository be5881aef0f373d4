"""Drives a single asset upload and reports its progress."""

import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass

from src.core.asset_store import AssetPayload, AssetReference, AssetStore, AssetStoreError
from src.services.sync_errors import UploadError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadProgress:
    """Progress of one upload.

    ``ratio`` never decreases across the events of one upload and reaches
    1.0 only on the final event, which is also the only one with a reference.
    """

    bytes_transferred: int
    total_bytes: int
    ratio: float
    reference: AssetReference | None = None

    @property
    def done(self) -> bool:
        """True for the final event of a successful upload."""
        return self.reference is not None


class UploadCoordinator:
    """Runs uploads against an asset store.

    No retries and no timeout are applied here; both belong to the caller
    and the transport. Callers must not start two uploads to the same key
    at once.
    """

    def __init__(self, asset_store: AssetStore) -> None:
        self.asset_store = asset_store

    async def upload(self, asset_key: str, payload: AssetPayload) -> AsyncIterator[UploadProgress]:
        """Upload ``payload`` to ``asset_key``.

        Args:
            asset_key: Non-empty key to store the asset under.
            payload: Non-empty binary payload.

        Yields:
            UploadProgress after each transferred chunk, ending with a single
            event at ratio 1.0 that carries the durable reference.

        Raises:
            UploadError: If the input is invalid or the transfer fails.
        """
        if not asset_key or not asset_key.strip():
            raise UploadError("asset key is empty")
        if payload.size == 0:
            raise UploadError("payload is empty")

        total = payload.size
        transferred = 0
        last_ratio = 0.0
        reference: AssetReference | None = None

        try:
            async with aclosing(self.asset_store.put(asset_key, payload)) as transfer:
                async for snapshot in transfer:
                    if snapshot.reference is not None:
                        reference = snapshot.reference
                        continue

                    transferred = max(transferred, min(snapshot.bytes_transferred, total))
                    ratio = transferred / total
                    # 1.0 is held back for the event that carries the reference
                    if last_ratio < ratio < 1.0:
                        last_ratio = ratio
                        yield UploadProgress(
                            bytes_transferred=transferred,
                            total_bytes=total,
                            ratio=ratio,
                        )
        except AssetStoreError as e:
            logger.error("Upload to %s failed: %s", asset_key, e)
            raise UploadError(e) from e

        if reference is None:
            logger.error("Upload to %s ended without a reference", asset_key)
            raise UploadError("transfer ended without a durable reference")

        logger.info("Uploaded %d bytes to %s", total, asset_key)
        yield UploadProgress(
            bytes_transferred=total,
            total_bytes=total,
            ratio=1.0,
            reference=reference,
        )
