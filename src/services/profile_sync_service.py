"""Profile sync: keeps profile records and their stored images in step."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import aclosing
from dataclasses import dataclass
from typing import NoReturn, TypeVar

from pydantic import ValidationError
from pydantic.alias_generators import to_snake

from src.core.asset_store import (
    AssetNotFoundError,
    AssetPayload,
    AssetReference,
    AssetStore,
    AssetStoreError,
    SupabaseAssetStore,
)
from src.core.config import Settings, get_settings
from src.core.memory_store import InMemoryAssetStore, InMemoryRecordStore
from src.core.record_store import RecordStore, RecordStoreError, SupabaseRecordStore
from src.models.profile import ProfileRecord, ProfileRecordCreate
from src.schemas.profile import ProfileFields
from src.services.notifications import (
    LoggingNotifier,
    NotificationKind,
    Notifier,
    SyncNotification,
)
from src.services.sync_errors import (
    ProfileNotFoundError,
    ProfileValidationError,
    StorageError,
    UploadError,
)
from src.services.upload_coordinator import UploadCoordinator, UploadProgress

logger = logging.getLogger(__name__)

# Validation order; the first empty field is the one reported.
REQUIRED_FIELDS: tuple[str, ...] = ("first_name", "last_name", "address", "profession", "age")

IMAGE_FIELD = "image"

OWNER_FIELD = "owner_id"

T = TypeVar("T")


@dataclass(frozen=True)
class ProfileCreated:
    """Final event of a successful create."""

    record: ProfileRecord
    reference: AssetReference


@dataclass(frozen=True)
class ImageReplaced:
    """Final event of a successful image replacement."""

    reference: AssetReference


@dataclass(frozen=True)
class ResolvedProfile:
    """A profile record with a freshly resolved image reference.

    ``record["image_ref"]`` is None when resolution failed, in which case
    ``image_error`` says why.
    """

    record: ProfileRecord
    image_error: str | None = None


async def run_to_completion(events: AsyncIterator[T]) -> T:
    """Drain a sync event stream and return its final event."""
    final: T | None = None
    async with aclosing(events) as stream:
        async for event in stream:
            final = event
    if final is None:
        raise RuntimeError("sync stream finished without a result")
    return final


class ProfileSyncService:
    """Orchestrates create, fetch and replace-image for user profiles.

    Images live in the asset store under a key derived from the owner id;
    metadata lives in the record store. The two are never committed
    atomically: a record is only written after its image upload succeeds,
    but a failed insert leaves the uploaded image behind.
    """

    def __init__(
        self,
        asset_store: AssetStore,
        record_store: RecordStore,
        coordinator: UploadCoordinator | None = None,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize profile sync service.

        Args:
            asset_store: Binary storage for profile images.
            record_store: Document storage for profile records.
            coordinator: Upload coordinator; built over asset_store if omitted.
            notifier: Receives success/failure signals; logs them if omitted.
            settings: Application settings.
        """
        self.asset_store = asset_store
        self.record_store = record_store
        self.coordinator = coordinator or UploadCoordinator(asset_store)
        self.notifier = notifier or LoggingNotifier()
        self.settings = settings or get_settings()

    @property
    def collection(self) -> str:
        return self.settings.profiles_table

    def asset_key_for(self, owner_id: str) -> str:
        """Storage key of an owner's profile image."""
        return f"{self.settings.profile_image_prefix}/{owner_id}"

    async def _notify(
        self,
        kind: NotificationKind,
        owner_id: str,
        field: str | None = None,
        message: str | None = None,
    ) -> None:
        await self.notifier.notify(
            SyncNotification(kind=kind, owner_id=owner_id, field=field, message=message)
        )

    # === Validation ===

    async def validate_submission(
        self,
        owner_id: str,
        fields: ProfileFields,
        image: AssetPayload | None,
    ) -> AssetPayload:
        """Check a profile submission locally, before any I/O.

        Only the empty string counts as missing; values are otherwise kept
        exactly as submitted.

        Returns:
            AssetPayload: The validated image.

        Raises:
            ProfileValidationError: Naming the first invalid field in form order.
        """
        for name in REQUIRED_FIELDS:
            if getattr(fields, name) == "":
                await self._notify(NotificationKind.VALIDATION_FAILED, owner_id, field=name)
                raise ProfileValidationError(name)

        return await self.validate_image(owner_id, image)

    async def validate_image(self, owner_id: str, image: AssetPayload | None) -> AssetPayload:
        """Check that an image is present, of an accepted type and not too large.

        Returns:
            AssetPayload: The validated image.

        Raises:
            ProfileValidationError: With field ``image``.
        """
        if image is None or image.size == 0:
            await self._reject_image(owner_id, "Profile picture is required")
        elif image.content_type.lower() not in self.settings.allowed_image_types_set:
            await self._reject_image(
                owner_id,
                f"Invalid file type: {image.content_type}. "
                f"Allowed types: {', '.join(sorted(self.settings.allowed_image_types_set))}",
            )
        elif image.size > self.settings.max_image_size_bytes:
            await self._reject_image(
                owner_id,
                f"File too large: {image.size / (1024 * 1024):.1f} MB. "
                f"Maximum size: {self.settings.max_image_size_bytes / (1024 * 1024):.0f} MB",
            )

        return image

    async def _reject_image(self, owner_id: str, message: str) -> NoReturn:
        error = ProfileValidationError(IMAGE_FIELD, message)
        await self._notify(NotificationKind.VALIDATION_FAILED, owner_id, field=IMAGE_FIELD, message=message)
        raise error

    async def _parse_fields(self, owner_id: str, fields: Mapping[str, object]) -> ProfileFields:
        try:
            return ProfileFields.model_validate(dict(fields))
        except ValidationError as e:
            loc = e.errors()[0]["loc"]
            name = to_snake(str(loc[0])) if loc else REQUIRED_FIELDS[0]
            await self._notify(NotificationKind.VALIDATION_FAILED, owner_id, field=name)
            raise ProfileValidationError(name, f"{name} must be a string") from e

    # === Upload relay ===

    async def _relay_upload(
        self,
        owner_id: str,
        asset_key: str,
        image: AssetPayload,
    ) -> AsyncIterator[UploadProgress]:
        try:
            async with aclosing(self.coordinator.upload(asset_key, image)) as uploads:
                async for progress in uploads:
                    yield progress
        except UploadError as e:
            await self._notify(NotificationKind.UPLOAD_FAILED, owner_id, message=str(e))
            raise

    # === Create ===

    async def create_profile(
        self,
        owner_id: str,
        email: str | None,
        fields: ProfileFields | Mapping[str, object],
        image: AssetPayload | None,
    ) -> AsyncIterator[UploadProgress | ProfileCreated]:
        """Validate a submission, upload its image, then insert the record.

        Args:
            owner_id: Identity of the submitting user.
            email: Email from the identity provider.
            fields: Personal details (model or mapping with snake or camel keys).
            image: Profile image payload.

        Yields:
            UploadProgress events while the image uploads, then ProfileCreated.

        Raises:
            ProfileValidationError: If a field or the image is invalid.
            UploadError: If the image upload fails. No record is written.
            StorageError: If the record insert fails. The image stays stored.
        """
        if isinstance(fields, Mapping):
            fields = await self._parse_fields(owner_id, fields)

        payload = await self.validate_submission(owner_id, fields, image)

        asset_key = self.asset_key_for(owner_id)
        reference: AssetReference | None = None

        async for progress in self._relay_upload(owner_id, asset_key, payload):
            if progress.reference is not None:
                reference = progress.reference
            yield progress

        if reference is None:
            raise UploadError("transfer ended without a durable reference")

        document: ProfileRecordCreate = {
            "owner_id": owner_id,
            "first_name": fields.first_name,
            "last_name": fields.last_name,
            "address": fields.address,
            "profession": fields.profession,
            "age": fields.age,
            "email": email,
            "image_ref": reference.url,
        }

        try:
            record = await self.record_store.insert(self.collection, dict(document))
        except RecordStoreError as e:
            logger.error(
                "Profile insert failed after uploading %s; image left in storage: %s",
                asset_key,
                e,
            )
            await self._notify(NotificationKind.STORAGE_FAILED, owner_id, message=str(e))
            raise StorageError("insert", e) from e

        logger.info("Created profile %s for owner %s", record.get("id"), owner_id)
        await self._notify(NotificationKind.PROFILE_CREATED, owner_id)
        yield ProfileCreated(record=record, reference=reference)

    # === Read ===

    async def fetch_profile(self, owner_id: str) -> ResolvedProfile:
        """Load an owner's profile and resolve its current image.

        Raises:
            ProfileNotFoundError: If the owner has no profile record.
            StorageError: If the record query fails.
        """
        try:
            matches = await self.record_store.query_equal(self.collection, OWNER_FIELD, owner_id)
        except RecordStoreError as e:
            logger.error("Profile query failed for owner %s: %s", owner_id, e)
            await self._notify(NotificationKind.STORAGE_FAILED, owner_id, message=str(e))
            raise StorageError("query", e) from e

        if not matches:
            await self._notify(NotificationKind.PROFILE_NOT_FOUND, owner_id)
            raise ProfileNotFoundError(owner_id)

        if len(matches) > 1:
            logger.warning(
                "Found %d profile records for owner %s; using the first",
                len(matches),
                owner_id,
            )

        record: ProfileRecord = dict(matches[0])  # type: ignore[assignment]
        image_error: str | None = None

        try:
            reference = await self.asset_store.resolve(self.asset_key_for(owner_id))
            record["image_ref"] = reference.url
        except AssetNotFoundError:
            image_error = "not_found"
        except AssetStoreError as e:
            logger.error("Image lookup failed for owner %s: %s", owner_id, e)
            image_error = "storage_error"

        if image_error is not None:
            record["image_ref"] = None
            await self._notify(NotificationKind.IMAGE_UNAVAILABLE, owner_id, message=image_error)

        return ResolvedProfile(record=record, image_error=image_error)

    # === Replace image ===

    async def replace_image(
        self,
        owner_id: str,
        image: AssetPayload | None,
    ) -> AsyncIterator[UploadProgress | ImageReplaced]:
        """Delete the owner's current image, then upload the new one.

        The stored record's ``image_ref`` is left untouched; reads always
        resolve the image by key.

        Yields:
            UploadProgress events while the image uploads, then ImageReplaced.

        Raises:
            ProfileValidationError: If the image is missing or invalid.
            UploadError: If the upload fails. The old image is already gone.
        """
        payload = await self.validate_image(owner_id, image)

        asset_key = self.asset_key_for(owner_id)

        try:
            await self.asset_store.delete(asset_key)
            logger.info("Deleted previous image %s", asset_key)
        except AssetNotFoundError:
            logger.warning("No previous image at %s", asset_key)
        except AssetStoreError as e:
            logger.warning("Failed to delete previous image %s: %s", asset_key, e)

        reference: AssetReference | None = None
        async for progress in self._relay_upload(owner_id, asset_key, payload):
            if progress.reference is not None:
                reference = progress.reference
            yield progress

        if reference is None:
            raise UploadError("transfer ended without a durable reference")

        await self._notify(NotificationKind.IMAGE_REPLACED, owner_id)
        yield ImageReplaced(reference=reference)


def build_profile_sync_service(settings: Settings | None = None) -> ProfileSyncService:
    """Wire a sync service to the stores selected by settings."""
    settings = settings or get_settings()

    if settings.mock_storage:
        logger.info("Using in-memory asset and record stores")
        asset_store: AssetStore = InMemoryAssetStore()
        record_store: RecordStore = InMemoryRecordStore()
    else:
        asset_store = SupabaseAssetStore(settings=settings)
        record_store = SupabaseRecordStore()

    return ProfileSyncService(
        asset_store=asset_store,
        record_store=record_store,
        settings=settings,
    )


# Singleton instance
_profile_sync_service: ProfileSyncService | None = None


def get_profile_sync_service() -> ProfileSyncService:
    """Get or create the profile sync service singleton."""
    global _profile_sync_service
    if _profile_sync_service is None:
        _profile_sync_service = build_profile_sync_service()
    return _profile_sync_service
