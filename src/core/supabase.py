"""Supabase client singleton for table and storage operations."""

from functools import lru_cache

from supabase import Client, create_client

from src.core.config import Settings, get_settings


@lru_cache
def get_supabase_client() -> Client:
    """Get cached Supabase client singleton.

    Uses the secret key (sb_secret_) for backend operations, which bypasses
    RLS at the PostgREST and Storage level. Callers must have verified the
    requesting user before touching a row or object on their behalf.

    Returns:
        Client: Supabase client instance.
    """
    settings = get_settings()
    return create_client(
        settings.supabase_url,
        settings.supabase_secret_key,
    )


def get_storage_api_url(settings: Settings | None = None) -> str:
    """Base URL of the Storage REST API for the configured project."""
    settings = settings or get_settings()
    return f"{settings.supabase_url.rstrip('/')}/storage/v1"


def get_service_headers(settings: Settings | None = None) -> dict[str, str]:
    """Headers authenticating raw HTTP calls made with the secret key."""
    settings = settings or get_settings()
    return {
        "apikey": settings.supabase_secret_key,
        "Authorization": f"Bearer {settings.supabase_secret_key}",
    }
