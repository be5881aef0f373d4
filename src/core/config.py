"""Application configuration management using Pydantic Settings."""

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Required settings will raise validation errors if not provided.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="profile-sync-backend", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/staging/production)")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated list of allowed CORS origins",
    )

    # Supabase
    supabase_url: str = Field(..., description="Supabase project URL")
    supabase_secret_key: str = Field(..., description="Supabase secret key for backend operations")

    # Token verification (one of the two must be set)
    supabase_jwt_secret: str = Field(default="", description="Shared secret for HS256 access tokens")
    supabase_signing_key_jwk: str = Field(default="", description="Signing key JWK (JSON string) for ES256 access tokens")
    jwt_audience: str = Field(default="authenticated", description="Expected 'aud' claim of access tokens")

    # Storage backends
    mock_storage: bool | None = Field(
        default=None,
        description="Use in-process stores instead of Supabase. Auto-enabled outside production.",
    )
    profiles_table: str = Field(default="profiles", description="Collection holding profile records")
    profile_images_bucket: str = Field(default="profile-images", description="Public storage bucket for profile images")
    profile_image_prefix: str = Field(default="profileImages", description="Key prefix for owner-derived image keys")

    # Uploads
    upload_chunk_size: int = Field(
        default=6 * 1024 * 1024,
        description="Resumable upload chunk size in bytes (Supabase requires 6 MiB chunks)",
    )
    upload_timeout_seconds: float = Field(default=60.0, description="Transport timeout per upload request")
    max_image_size_bytes: int = Field(default=5 * 1024 * 1024, description="Largest accepted profile image")
    allowed_image_types: str = Field(
        default="image/jpeg,image/png,image/webp,image/gif",
        description="Comma-separated list of accepted image content types",
    )
    max_request_body_size: int = Field(
        default=6 * 1024 * 1024,
        description="Largest accepted request body in bytes",
    )

    # Client hints
    redirect_delay_seconds: int = Field(
        default=5,
        description="Delay the UI waits before moving to the profile view after creation",
    )

    @model_validator(mode="after")
    def set_mock_storage_default(self) -> "Settings":
        """Default mock_storage to on for every environment except production.

        An explicit MOCK_STORAGE env var always wins; pydantic-settings has
        already parsed it to a bool in that case.
        """
        if self.mock_storage is None:
            self.mock_storage = self.app_env != "production"

        return self

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins string into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def allowed_image_types_set(self) -> frozenset[str]:
        """Parse accepted image content types into a set."""
        return frozenset(
            content_type.strip().lower()
            for content_type in self.allowed_image_types.split(",")
            if content_type.strip()
        )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings: Application settings instance.

    Note:
        Settings are cached using lru_cache for performance.
        Call get_settings.cache_clear() to reload settings.
    """
    return Settings()
