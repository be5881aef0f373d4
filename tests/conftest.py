"""Pytest configuration and fixtures."""

import os
import time
from collections.abc import Generator
from typing import Any

import jwt
import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing application modules
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-with-at-least-32-bytes")
os.environ.setdefault("MOCK_STORAGE", "true")

TEST_OWNER_ID = "550e8400-e29b-41d4-a716-446655440000"
TEST_EMAIL = "test@example.com"

# Smallest valid JPEG header followed by padding; content is never decoded.
JPEG_BYTES = b"\xff\xd8\xff\xe0" + bytes(range(256)) * 20


def create_test_token(
    sub: str = TEST_OWNER_ID,
    email: str | None = TEST_EMAIL,
    exp_offset: int = 3600,
    secret: str | None = None,
    audience: str | None = "authenticated",
) -> str:
    """Create an HS256 access token signed with the test secret."""
    now = int(time.time())
    payload: dict[str, Any] = {
        "sub": sub,
        "email": email,
        "role": "authenticated",
        "exp": now + exp_offset,
        "iat": now,
    }
    if audience is not None:
        payload["aud"] = audience
    return jwt.encode(payload, secret or os.environ["SUPABASE_JWT_SECRET"], algorithm="HS256")


@pytest.fixture(scope="session")
def test_settings() -> Generator[Any, None, None]:
    """Provide test settings with cleared cache.

    Yields:
        Settings: Test configuration settings.
    """
    from src.core.config import get_settings

    # Clear the cache to ensure fresh settings
    get_settings.cache_clear()

    settings = get_settings()
    yield settings

    # Clean up cache after tests
    get_settings.cache_clear()


@pytest.fixture
def asset_store() -> Any:
    """Provide an empty in-memory asset store with small chunks."""
    from src.core.memory_store import InMemoryAssetStore

    return InMemoryAssetStore(chunk_size=1024)


@pytest.fixture
def record_store() -> Any:
    """Provide an empty in-memory record store."""
    from src.core.memory_store import InMemoryRecordStore

    return InMemoryRecordStore()


@pytest.fixture
def sync_service(asset_store: Any, record_store: Any, test_settings: Any) -> Any:
    """Provide a profile sync service over in-memory stores."""
    from src.services.profile_sync_service import ProfileSyncService

    return ProfileSyncService(
        asset_store=asset_store,
        record_store=record_store,
        settings=test_settings,
    )


@pytest.fixture
def upload_guard() -> Any:
    """Provide a fresh upload guard."""
    from src.core.upload_guard import UploadGuard

    return UploadGuard()


@pytest.fixture
def auth_headers() -> dict[str, str]:
    """Authorization header for the test owner."""
    from src.api.middleware.auth import get_verification_key

    get_verification_key.cache_clear()
    return {"Authorization": f"Bearer {create_test_token()}"}


@pytest.fixture
def client(sync_service: Any, upload_guard: Any) -> Generator[TestClient, None, None]:
    """Provide a test client wired to in-memory stores.

    Args:
        sync_service: Profile sync service fixture.
        upload_guard: Upload guard fixture.

    Yields:
        TestClient: FastAPI test client.
    """
    from src.core.upload_guard import get_upload_guard
    from src.main import app
    from src.services.profile_sync_service import get_profile_sync_service

    app.dependency_overrides[get_profile_sync_service] = lambda: sync_service
    app.dependency_overrides[get_upload_guard] = lambda: upload_guard

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def jpeg_payload() -> Any:
    """A 5 KB JPEG payload."""
    from src.core.asset_store import AssetPayload

    return AssetPayload(data=JPEG_BYTES, content_type="image/jpeg", filename="avatar.jpg")
