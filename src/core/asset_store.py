"""Binary asset storage: interface, reference types and the Supabase Storage client."""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from supabase import Client

from src.core.config import Settings, get_settings
from src.core.supabase import get_service_headers, get_storage_api_url, get_supabase_client

logger = logging.getLogger(__name__)

TUS_VERSION = "1.0.0"

# Keys are rewritten in place on replace, so edge caches must revalidate.
OBJECT_CACHE_CONTROL = "0"


class AssetStoreError(Exception):
    """Asset storage operation failed."""

    pass


class AssetNotFoundError(AssetStoreError):
    """No asset is stored under the requested key."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Asset not found: {key}")


@dataclass(frozen=True)
class AssetPayload:
    """Binary payload to store, with the metadata the upload needs."""

    data: bytes
    content_type: str
    filename: str | None = None

    @property
    def size(self) -> int:
        """Payload size in bytes."""
        return len(self.data)


@dataclass(frozen=True)
class AssetReference:
    """Durable locator for a stored asset.

    The URL stays valid for repeated, independent fetches; it is never a
    short-lived signed URL.
    """

    key: str
    url: str


@dataclass(frozen=True)
class TransferSnapshot:
    """State of an in-flight transfer, reported after each chunk.

    The last snapshot of a successful transfer carries the reference.
    """

    bytes_transferred: int
    total_bytes: int
    reference: AssetReference | None = None


class AssetStore(Protocol):
    """Durable binary storage keyed by caller-chosen paths."""

    def put(self, key: str, payload: AssetPayload) -> AsyncIterator[TransferSnapshot]:
        """Stream a payload to ``key``, overwriting any existing object."""
        ...

    async def delete(self, key: str) -> None:
        """Delete the object at ``key``; raises AssetNotFoundError if absent."""
        ...

    async def resolve(self, key: str) -> AssetReference:
        """Return a durable reference; raises AssetNotFoundError if absent."""
        ...

    async def download(self, key: str) -> bytes:
        """Return the stored bytes; raises AssetNotFoundError if absent."""
        ...

    async def check_connection(self) -> dict[str, Any]:
        """Report whether the backing storage is reachable."""
        ...


def _encode_metadata(values: dict[str, str]) -> str:
    """Encode the TUS Upload-Metadata header (comma-separated "key base64" pairs)."""
    return ",".join(
        f"{name} {base64.b64encode(value.encode('utf-8')).decode('ascii')}"
        for name, value in values.items()
    )


class SupabaseAssetStore:
    """Asset store backed by a public Supabase Storage bucket.

    Uploads use the Storage resumable (TUS) endpoint so that progress can be
    reported per chunk. References are public object URLs, which stay valid
    for as long as the object exists.
    """

    def __init__(
        self,
        client: Client | None = None,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            client: Supabase client for delete/resolve/download calls.
            settings: Application settings (bucket, chunk size, timeouts).
            transport: Optional httpx transport used for resumable uploads.
        """
        self.settings = settings or get_settings()
        self.client = client or get_supabase_client()
        self.bucket = self.settings.profile_images_bucket
        self._transport = transport

    def _bucket(self) -> Any:
        return self.client.storage.from_(self.bucket)

    async def put(self, key: str, payload: AssetPayload) -> AsyncIterator[TransferSnapshot]:
        """Upload ``payload`` to ``key`` in fixed-size chunks.

        Args:
            key: Object path inside the bucket.
            payload: Bytes and content type to store.

        Yields:
            TransferSnapshot after every acknowledged chunk, then a final
            snapshot carrying the durable reference.

        Raises:
            AssetStoreError: If the storage API rejects or fails a request.
        """
        total = payload.size
        chunk_size = self.settings.upload_chunk_size
        headers = {**get_service_headers(self.settings), "Tus-Resumable": TUS_VERSION}

        async with httpx.AsyncClient(
            timeout=self.settings.upload_timeout_seconds,
            transport=self._transport,
        ) as http:
            upload_url = await self._create_upload(http, headers, key, payload)

            offset = 0
            while offset < total:
                chunk = payload.data[offset : offset + chunk_size]
                try:
                    response = await http.patch(
                        upload_url,
                        content=chunk,
                        headers={
                            **headers,
                            "Upload-Offset": str(offset),
                            "Content-Type": "application/offset+octet-stream",
                        },
                    )
                except httpx.HTTPError as e:
                    raise AssetStoreError(f"Chunk upload failed at offset {offset}: {e}") from e

                if response.status_code != 204:
                    raise AssetStoreError(
                        f"Chunk upload rejected at offset {offset}: "
                        f"{response.status_code} {response.text}"
                    )

                offset = self._next_offset(response, offset, len(chunk))
                logger.debug("Uploaded %d/%d bytes to %s", offset, total, key)
                yield TransferSnapshot(bytes_transferred=offset, total_bytes=total)

        yield TransferSnapshot(
            bytes_transferred=total,
            total_bytes=total,
            reference=await self._public_reference(key),
        )

    @staticmethod
    def _next_offset(response: httpx.Response, offset: int, sent: int) -> int:
        """Read the acknowledged offset; it must move past the current one."""
        header = response.headers.get("Upload-Offset")
        try:
            new_offset = int(header) if header is not None else offset + sent
        except ValueError as e:
            raise AssetStoreError(f"Invalid Upload-Offset {header!r} after offset {offset}") from e

        if new_offset <= offset:
            raise AssetStoreError(f"Upload stalled at offset {offset} (server acknowledged {new_offset})")

        return new_offset

    async def _create_upload(
        self,
        http: httpx.AsyncClient,
        headers: dict[str, str],
        key: str,
        payload: AssetPayload,
    ) -> httpx.URL:
        """Open a resumable upload session and return its URL."""
        create_url = httpx.URL(f"{get_storage_api_url(self.settings)}/upload/resumable")
        metadata = _encode_metadata(
            {
                "bucketName": self.bucket,
                "objectName": key,
                "contentType": payload.content_type,
                "cacheControl": OBJECT_CACHE_CONTROL,
            }
        )

        try:
            response = await http.post(
                create_url,
                headers={
                    **headers,
                    "Upload-Length": str(payload.size),
                    "Upload-Metadata": metadata,
                    "x-upsert": "true",
                },
            )
        except httpx.HTTPError as e:
            raise AssetStoreError(f"Could not open upload for {key}: {e}") from e

        location = response.headers.get("Location")
        if response.status_code != 201 or not location:
            raise AssetStoreError(
                f"Upload session for {key} rejected: {response.status_code} {response.text}"
            )

        return create_url.join(location)

    async def _public_reference(self, key: str) -> AssetReference:
        url = await asyncio.to_thread(self._bucket().get_public_url, key)
        return AssetReference(key=key, url=url.rstrip("?"))

    async def delete(self, key: str) -> None:
        """Delete the object stored at ``key``.

        Raises:
            AssetNotFoundError: If nothing was stored at ``key``.
            AssetStoreError: If the storage API call fails.
        """
        try:
            removed = await asyncio.to_thread(self._bucket().remove, [key])
        except Exception as e:
            raise AssetStoreError(f"Failed to delete {key}: {e}") from e

        # Storage answers a delete of a missing object with an empty list.
        if not removed:
            raise AssetNotFoundError(key)

    async def resolve(self, key: str) -> AssetReference:
        """Return the public reference of an existing object.

        Raises:
            AssetNotFoundError: If nothing is stored at ``key``.
            AssetStoreError: If the storage API call fails.
        """
        try:
            exists = await asyncio.to_thread(self._bucket().exists, key)
        except Exception as e:
            raise AssetStoreError(f"Failed to look up {key}: {e}") from e

        if not exists:
            raise AssetNotFoundError(key)

        return await self._public_reference(key)

    async def download(self, key: str) -> bytes:
        """Fetch the bytes stored at ``key``."""
        await self.resolve(key)
        try:
            return await asyncio.to_thread(self._bucket().download, key)
        except Exception as e:
            raise AssetStoreError(f"Failed to download {key}: {e}") from e

    async def check_connection(self) -> dict[str, Any]:
        """Check that the configured bucket is reachable.

        Returns:
            dict: Connection status with 'healthy' boolean and optional 'error' message.
        """
        try:
            await asyncio.to_thread(self.client.storage.get_bucket, self.bucket)
            return {"healthy": True}
        except Exception as e:
            return {"healthy": False, "error": str(e)}
