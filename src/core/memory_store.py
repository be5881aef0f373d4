"""In-process asset and record stores for local development and tests."""

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from src.core.asset_store import (
    AssetNotFoundError,
    AssetPayload,
    AssetReference,
    TransferSnapshot,
)

DEFAULT_BASE_URL = "memory://assets"


class InMemoryAssetStore:
    """Asset store holding objects in a dict.

    Uploads are chunked like the remote store so progress reporting behaves
    the same; the object only becomes visible once the last chunk lands.
    """

    def __init__(self, chunk_size: int = 64 * 1024, base_url: str = DEFAULT_BASE_URL) -> None:
        self.chunk_size = chunk_size
        self.base_url = base_url.rstrip("/")
        self._objects: dict[str, AssetPayload] = {}

    def keys(self) -> list[str]:
        """Keys of every stored object."""
        return sorted(self._objects)

    async def put(self, key: str, payload: AssetPayload) -> AsyncIterator[TransferSnapshot]:
        total = payload.size
        offset = 0
        while offset < total:
            offset = min(offset + self.chunk_size, total)
            await asyncio.sleep(0)
            yield TransferSnapshot(bytes_transferred=offset, total_bytes=total)

        self._objects[key] = payload
        yield TransferSnapshot(
            bytes_transferred=total,
            total_bytes=total,
            reference=self._reference(key),
        )

    def _reference(self, key: str) -> AssetReference:
        return AssetReference(key=key, url=f"{self.base_url}/{key}")

    async def delete(self, key: str) -> None:
        if self._objects.pop(key, None) is None:
            raise AssetNotFoundError(key)

    async def resolve(self, key: str) -> AssetReference:
        if key not in self._objects:
            raise AssetNotFoundError(key)
        return self._reference(key)

    async def download(self, key: str) -> bytes:
        try:
            return self._objects[key].data
        except KeyError:
            raise AssetNotFoundError(key) from None

    async def check_connection(self) -> dict[str, Any]:
        return {"healthy": True}


class InMemoryRecordStore:
    """Record store holding documents per collection in insertion order."""

    def __init__(self) -> None:
        self._collections: dict[str, list[dict[str, Any]]] = defaultdict(list)

    async def insert(self, collection: str, document: dict[str, Any]) -> dict[str, Any]:
        stored = {
            **document,
            "id": str(uuid4()),
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self._collections[collection].append(stored)
        return dict(stored)

    async def query_equal(self, collection: str, field: str, value: Any) -> list[dict[str, Any]]:
        return [
            dict(document)
            for document in self._collections.get(collection, [])
            if document.get(field) == value
        ]

    async def check_connection(self, collection: str) -> dict[str, Any]:
        return {"healthy": True}
