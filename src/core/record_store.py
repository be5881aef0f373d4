"""Document storage: interface and the Supabase (PostgREST) table client."""

import asyncio
import logging
from typing import Any, Protocol

from supabase import Client

from src.core.supabase import get_supabase_client

logger = logging.getLogger(__name__)


class RecordStoreError(Exception):
    """Record storage operation failed."""

    pass


class RecordStore(Protocol):
    """Collection of documents keyed by generated IDs."""

    async def insert(self, collection: str, document: dict[str, Any]) -> dict[str, Any]:
        """Insert a document and return it with its assigned ``id`` and ``created_at``."""
        ...

    async def query_equal(self, collection: str, field: str, value: Any) -> list[dict[str, Any]]:
        """Return every document whose ``field`` equals ``value`` (order unspecified)."""
        ...

    async def check_connection(self, collection: str) -> dict[str, Any]:
        """Report whether the collection is reachable."""
        ...


class SupabaseRecordStore:
    """Record store backed by Supabase tables.

    ``id`` and ``created_at`` are filled in by column defaults on insert.
    """

    def __init__(self, client: Client | None = None) -> None:
        """Initialize record store with Supabase client."""
        self.client = client or get_supabase_client()

    async def insert(self, collection: str, document: dict[str, Any]) -> dict[str, Any]:
        """Insert a row.

        Args:
            collection: Table name.
            document: Column values.

        Returns:
            dict: The stored row.

        Raises:
            RecordStoreError: If the insert fails or returns no row.
        """
        try:
            response = await asyncio.to_thread(self.client.table(collection).insert(document).execute)
        except Exception as e:
            raise RecordStoreError(f"Insert into {collection} failed: {e}") from e

        if not response.data:
            raise RecordStoreError(f"Insert into {collection} returned no row")

        return response.data[0]

    async def query_equal(self, collection: str, field: str, value: Any) -> list[dict[str, Any]]:
        """Select rows by a single equality filter.

        Raises:
            RecordStoreError: If the query fails.
        """
        try:
            query = self.client.table(collection).select("*").eq(field, value)
            response = await asyncio.to_thread(query.execute)
        except Exception as e:
            raise RecordStoreError(f"Query on {collection}.{field} failed: {e}") from e

        return response.data or []

    async def check_connection(self, collection: str) -> dict[str, Any]:
        """Check if database connection is healthy.

        Returns:
            dict: Connection status with 'healthy' boolean and optional 'error' message.
        """
        try:
            await asyncio.to_thread(self.client.table(collection).select("id").limit(1).execute)
            return {"healthy": True}
        except Exception as e:
            return {"healthy": False, "error": str(e)}
