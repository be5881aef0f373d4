"""Unit tests for ProfileSyncService."""

from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.core.asset_store import AssetPayload, AssetStoreError, TransferSnapshot
from src.core.memory_store import InMemoryAssetStore, InMemoryRecordStore
from src.core.record_store import RecordStoreError
from src.schemas.profile import ProfileFields
from src.services.notifications import NotificationKind, SyncNotification
from src.services.profile_sync_service import (
    ImageReplaced,
    ProfileCreated,
    ProfileSyncService,
    build_profile_sync_service,
    run_to_completion,
)
from src.services.sync_errors import (
    ProfileNotFoundError,
    ProfileValidationError,
    StorageError,
    UploadError,
)
from src.services.upload_coordinator import UploadProgress

OWNER_ID = "550e8400-e29b-41d4-a716-446655440000"
ASSET_KEY = f"profileImages/{OWNER_ID}"


class RecordingNotifier:
    def __init__(self) -> None:
        self.notifications: list[SyncNotification] = []

    async def notify(self, notification: SyncNotification) -> None:
        self.notifications.append(notification)

    @property
    def kinds(self) -> list[NotificationKind]:
        return [n.kind for n in self.notifications]


class FailingInsertRecordStore(InMemoryRecordStore):
    async def insert(self, collection: str, document: dict[str, Any]) -> dict[str, Any]:
        raise RecordStoreError("permission denied for table profiles")


class FailingQueryRecordStore(InMemoryRecordStore):
    async def query_equal(self, collection: str, field: str, value: Any) -> list[dict[str, Any]]:
        raise RecordStoreError("connection refused")


class FailingPutAssetStore(InMemoryAssetStore):
    async def put(self, key: str, payload: AssetPayload) -> AsyncIterator[TransferSnapshot]:
        yield TransferSnapshot(bytes_transferred=1, total_bytes=payload.size)
        raise AssetStoreError("quota exceeded")


class FailingDeleteAssetStore(InMemoryAssetStore):
    async def delete(self, key: str) -> None:
        raise AssetStoreError("storage unavailable")


def complete_fields(**overrides: str) -> ProfileFields:
    values = {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "address": "12 St James's Square, London",
        "profession": "Mathematician",
        "age": "36",
    }
    values.update(overrides)
    return ProfileFields(**values)


def png(size: int = 2048, fill: bytes = b"\x89") -> AssetPayload:
    return AssetPayload(data=fill * size, content_type="image/png", filename="avatar.png")


async def collect(events: AsyncIterator[Any]) -> list[Any]:
    return [event async for event in events]


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(
    asset_store: InMemoryAssetStore,
    record_store: InMemoryRecordStore,
    notifier: RecordingNotifier,
    test_settings: Any,
) -> ProfileSyncService:
    return ProfileSyncService(
        asset_store=asset_store,
        record_store=record_store,
        notifier=notifier,
        settings=test_settings,
    )


class TestValidation:
    """Tests for submission validation."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("blank", "expected_field"),
        [
            (("first_name", "last_name", "address", "profession", "age"), "first_name"),
            (("last_name", "address", "profession", "age"), "last_name"),
            (("address", "profession", "age"), "address"),
            (("profession", "age"), "profession"),
            (("age",), "age"),
        ],
    )
    async def test_first_missing_field_in_form_order_is_reported(
        self,
        test_settings: Any,
        jpeg_payload: AssetPayload,
        blank: tuple[str, ...],
        expected_field: str,
    ) -> None:
        """Test the earliest empty field is named and no store is touched."""
        asset_store = MagicMock()
        record_store = AsyncMock()
        notifier = RecordingNotifier()
        service = ProfileSyncService(
            asset_store=asset_store,
            record_store=record_store,
            notifier=notifier,
            settings=test_settings,
        )
        fields = complete_fields(**{name: "" for name in blank})

        with pytest.raises(ProfileValidationError) as exc_info:
            await collect(service.create_profile(OWNER_ID, None, fields, jpeg_payload))

        assert exc_info.value.field == expected_field
        assert asset_store.method_calls == []
        assert record_store.method_calls == []
        assert notifier.notifications == [
            SyncNotification(
                kind=NotificationKind.VALIDATION_FAILED,
                owner_id=OWNER_ID,
                field=expected_field,
            )
        ]

    @pytest.mark.asyncio
    async def test_whitespace_only_field_is_accepted(
        self,
        service: ProfileSyncService,
        notifier: RecordingNotifier,
        jpeg_payload: AssetPayload,
    ) -> None:
        """Test a field holding only spaces is not empty and is stored unchanged."""
        created = await run_to_completion(
            service.create_profile(OWNER_ID, None, complete_fields(profession="   "), jpeg_payload)
        )

        assert isinstance(created, ProfileCreated)
        assert created.record["profession"] == "   "
        assert NotificationKind.VALIDATION_FAILED not in notifier.kinds

    @pytest.mark.asyncio
    async def test_valid_submission_returns_image(
        self, service: ProfileSyncService, jpeg_payload: AssetPayload
    ) -> None:
        """Test a passing submission hands back the image to upload."""
        assert await service.validate_submission(OWNER_ID, complete_fields(), jpeg_payload) is jpeg_payload

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("fields", "expected_field"),
        [
            ({"firstName": "Ada", "lastName": "Lovelace", "age": 30}, "age"),
            ({"firstName": None, "lastName": "Lovelace"}, "first_name"),
            ({"first_name": "Ada", "profession": ["Mathematician"]}, "profession"),
        ],
    )
    async def test_non_string_mapping_value_is_a_validation_error(
        self,
        test_settings: Any,
        jpeg_payload: AssetPayload,
        fields: dict[str, Any],
        expected_field: str,
    ) -> None:
        """Test a mapping value of the wrong type is reported on its field."""
        asset_store = MagicMock()
        notifier = RecordingNotifier()
        service = ProfileSyncService(
            asset_store=asset_store,
            record_store=AsyncMock(),
            notifier=notifier,
            settings=test_settings,
        )

        with pytest.raises(ProfileValidationError) as exc_info:
            await collect(service.create_profile(OWNER_ID, None, fields, jpeg_payload))

        assert exc_info.value.field == expected_field
        assert asset_store.method_calls == []
        assert notifier.kinds == [NotificationKind.VALIDATION_FAILED]

    @pytest.mark.asyncio
    async def test_missing_image_is_reported_last(self, service: ProfileSyncService) -> None:
        """Test a complete form without an image fails on the image field."""
        with pytest.raises(ProfileValidationError) as exc_info:
            await service.validate_submission(OWNER_ID, complete_fields(), None)

        assert exc_info.value.field == "image"

    @pytest.mark.asyncio
    async def test_empty_image_is_rejected(self, service: ProfileSyncService) -> None:
        """Test a zero-byte image counts as missing."""
        with pytest.raises(ProfileValidationError) as exc_info:
            await service.validate_image(OWNER_ID, AssetPayload(data=b"", content_type="image/png"))

        assert exc_info.value.field == "image"

    @pytest.mark.asyncio
    async def test_unsupported_image_type_is_rejected(self, service: ProfileSyncService) -> None:
        """Test a non-image content type is rejected."""
        payload = AssetPayload(data=b"%PDF-1.7", content_type="application/pdf")

        with pytest.raises(ProfileValidationError) as exc_info:
            await service.validate_image(OWNER_ID, payload)

        assert exc_info.value.field == "image"
        assert "application/pdf" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_oversized_image_is_rejected(self, service: ProfileSyncService, test_settings: Any) -> None:
        """Test an image over the configured limit is rejected."""
        payload = png(size=test_settings.max_image_size_bytes + 1)

        with pytest.raises(ProfileValidationError) as exc_info:
            await service.validate_image(OWNER_ID, payload)

        assert "too large" in str(exc_info.value)


class TestCreateProfile:
    """Tests for ProfileSyncService.create_profile."""

    @pytest.mark.asyncio
    async def test_creates_record_after_upload(
        self,
        service: ProfileSyncService,
        asset_store: InMemoryAssetStore,
        record_store: InMemoryRecordStore,
        notifier: RecordingNotifier,
        jpeg_payload: AssetPayload,
    ) -> None:
        """Test a 5 KB JPEG is stored and the record points at it."""
        events = await collect(
            service.create_profile(OWNER_ID, "ada@example.com", complete_fields(), jpeg_payload)
        )

        progress = [event for event in events if isinstance(event, UploadProgress)]
        created = events[-1]
        assert isinstance(created, ProfileCreated)
        assert [p.ratio for p in progress] == sorted(p.ratio for p in progress)
        assert progress[-1].ratio == 1.0
        assert sum(1 for p in progress if p.ratio == 1.0) == 1

        record = created.record
        assert record["owner_id"] == OWNER_ID
        assert record["first_name"] == "Ada"
        assert record["age"] == "36"
        assert record["email"] == "ada@example.com"
        assert record["image_ref"] == created.reference.url
        assert record["id"]
        assert record["created_at"]

        assert asset_store.keys() == [ASSET_KEY]
        assert await asset_store.download(ASSET_KEY) == jpeg_payload.data
        assert len(await record_store.query_equal("profiles", "owner_id", OWNER_ID)) == 1
        assert notifier.kinds == [NotificationKind.PROFILE_CREATED]

    @pytest.mark.asyncio
    async def test_accepts_camel_case_mapping(
        self, service: ProfileSyncService, jpeg_payload: AssetPayload
    ) -> None:
        """Test form data keyed the way the web form sends it."""
        fields = {
            "firstName": "Grace",
            "lastName": "Hopper",
            "address": "Arlington, VA",
            "profession": "Rear admiral",
            "age": "85",
        }

        created = await run_to_completion(service.create_profile(OWNER_ID, None, fields, jpeg_payload))

        assert isinstance(created, ProfileCreated)
        assert created.record["first_name"] == "Grace"
        assert created.record["email"] is None

    @pytest.mark.asyncio
    async def test_values_are_stored_as_submitted(
        self, service: ProfileSyncService, jpeg_payload: AssetPayload
    ) -> None:
        """Test field values are not trimmed or coerced."""
        created = await run_to_completion(
            service.create_profile(OWNER_ID, None, complete_fields(first_name=" Ada ", age="thirty-six"), jpeg_payload)
        )

        assert created.record["first_name"] == " Ada "
        assert created.record["age"] == "thirty-six"

    @pytest.mark.asyncio
    async def test_upload_failure_writes_no_record(
        self,
        record_store: InMemoryRecordStore,
        notifier: RecordingNotifier,
        test_settings: Any,
        jpeg_payload: AssetPayload,
    ) -> None:
        """Test a failed upload aborts before the insert."""
        service = ProfileSyncService(
            asset_store=FailingPutAssetStore(),
            record_store=record_store,
            notifier=notifier,
            settings=test_settings,
        )

        with pytest.raises(UploadError):
            await collect(service.create_profile(OWNER_ID, None, complete_fields(), jpeg_payload))

        assert await record_store.query_equal("profiles", "owner_id", OWNER_ID) == []
        assert notifier.kinds == [NotificationKind.UPLOAD_FAILED]

    @pytest.mark.asyncio
    async def test_insert_failure_leaves_uploaded_image(
        self,
        asset_store: InMemoryAssetStore,
        notifier: RecordingNotifier,
        test_settings: Any,
        jpeg_payload: AssetPayload,
    ) -> None:
        """Test a failed insert surfaces StorageError and the image stays stored."""
        service = ProfileSyncService(
            asset_store=asset_store,
            record_store=FailingInsertRecordStore(),
            notifier=notifier,
            settings=test_settings,
        )

        with pytest.raises(StorageError) as exc_info:
            await collect(service.create_profile(OWNER_ID, None, complete_fields(), jpeg_payload))

        assert not isinstance(exc_info.value, UploadError)
        assert exc_info.value.operation == "insert"
        assert asset_store.keys() == [ASSET_KEY]
        assert notifier.kinds == [NotificationKind.STORAGE_FAILED]

    @pytest.mark.asyncio
    async def test_second_create_adds_another_record(
        self,
        service: ProfileSyncService,
        record_store: InMemoryRecordStore,
        jpeg_payload: AssetPayload,
    ) -> None:
        """Test repeated creates are not deduplicated."""
        await run_to_completion(service.create_profile(OWNER_ID, None, complete_fields(), jpeg_payload))
        await run_to_completion(service.create_profile(OWNER_ID, None, complete_fields(), jpeg_payload))

        assert len(await record_store.query_equal("profiles", "owner_id", OWNER_ID)) == 2


class TestFetchProfile:
    """Tests for ProfileSyncService.fetch_profile."""

    @pytest.mark.asyncio
    async def test_missing_profile_raises_not_found(
        self, service: ProfileSyncService, notifier: RecordingNotifier
    ) -> None:
        """Test an owner without a record gets ProfileNotFoundError."""
        with pytest.raises(ProfileNotFoundError) as exc_info:
            await service.fetch_profile(OWNER_ID)

        assert exc_info.value.owner_id == OWNER_ID
        assert notifier.kinds == [NotificationKind.PROFILE_NOT_FOUND]

    @pytest.mark.asyncio
    async def test_image_ref_is_resolved_from_storage(
        self,
        service: ProfileSyncService,
        asset_store: InMemoryAssetStore,
        record_store: InMemoryRecordStore,
    ) -> None:
        """Test the stored image_ref is replaced by a fresh reference."""
        await run_to_completion(asset_store.put(ASSET_KEY, png()))
        await record_store.insert(
            "profiles",
            {"owner_id": OWNER_ID, "first_name": "Ada", "image_ref": "https://stale.example/old"},
        )

        resolved = await service.fetch_profile(OWNER_ID)

        assert resolved.record["image_ref"] == f"memory://assets/{ASSET_KEY}"
        assert resolved.image_error is None

    @pytest.mark.asyncio
    async def test_missing_image_yields_null_ref(
        self,
        service: ProfileSyncService,
        record_store: InMemoryRecordStore,
        notifier: RecordingNotifier,
    ) -> None:
        """Test a record whose image is gone is returned with image_ref None."""
        await record_store.insert("profiles", {"owner_id": OWNER_ID, "image_ref": "memory://gone"})

        resolved = await service.fetch_profile(OWNER_ID)

        assert resolved.record["image_ref"] is None
        assert resolved.image_error == "not_found"
        assert notifier.kinds == [NotificationKind.IMAGE_UNAVAILABLE]

    @pytest.mark.asyncio
    async def test_storage_failure_on_resolve_yields_null_ref(
        self,
        record_store: InMemoryRecordStore,
        test_settings: Any,
    ) -> None:
        """Test a storage error during resolution does not fail the read."""
        asset_store = AsyncMock()
        asset_store.resolve.side_effect = AssetStoreError("timeout")
        service = ProfileSyncService(
            asset_store=asset_store,
            record_store=record_store,
            notifier=RecordingNotifier(),
            settings=test_settings,
        )
        await record_store.insert("profiles", {"owner_id": OWNER_ID})

        resolved = await service.fetch_profile(OWNER_ID)

        assert resolved.record["image_ref"] is None
        assert resolved.image_error == "storage_error"

    @pytest.mark.asyncio
    async def test_duplicate_records_return_first(
        self,
        service: ProfileSyncService,
        record_store: InMemoryRecordStore,
    ) -> None:
        """Test the first of several matching records is used."""
        await record_store.insert("profiles", {"owner_id": OWNER_ID, "first_name": "First"})
        await record_store.insert("profiles", {"owner_id": OWNER_ID, "first_name": "Second"})

        resolved = await service.fetch_profile(OWNER_ID)

        assert resolved.record["first_name"] == "First"

    @pytest.mark.asyncio
    async def test_query_failure_raises_storage_error(
        self, asset_store: InMemoryAssetStore, test_settings: Any
    ) -> None:
        """Test a failed record query surfaces as StorageError."""
        service = ProfileSyncService(
            asset_store=asset_store,
            record_store=FailingQueryRecordStore(),
            notifier=RecordingNotifier(),
            settings=test_settings,
        )

        with pytest.raises(StorageError) as exc_info:
            await service.fetch_profile(OWNER_ID)

        assert exc_info.value.operation == "query"


class TestReplaceImage:
    """Tests for ProfileSyncService.replace_image."""

    @pytest.mark.asyncio
    async def test_replace_keeps_only_latest_image(
        self,
        service: ProfileSyncService,
        asset_store: InMemoryAssetStore,
        notifier: RecordingNotifier,
    ) -> None:
        """Test replacing A with B leaves exactly B under the owner key."""
        image_a = png(fill=b"A")
        image_b = png(size=3000, fill=b"B")

        first = await run_to_completion(service.replace_image(OWNER_ID, image_a))
        second = await run_to_completion(service.replace_image(OWNER_ID, image_b))

        assert isinstance(first, ImageReplaced)
        assert isinstance(second, ImageReplaced)
        assert second.reference.key == ASSET_KEY
        assert asset_store.keys() == [ASSET_KEY]
        assert await asset_store.download(ASSET_KEY) == image_b.data
        assert notifier.kinds == [NotificationKind.IMAGE_REPLACED, NotificationKind.IMAGE_REPLACED]

    @pytest.mark.asyncio
    async def test_replace_after_create_changes_fetched_image(
        self,
        service: ProfileSyncService,
        asset_store: InMemoryAssetStore,
        jpeg_payload: AssetPayload,
    ) -> None:
        """Test a later read resolves to the replaced image."""
        await run_to_completion(service.create_profile(OWNER_ID, None, complete_fields(), jpeg_payload))
        replacement = png(fill=b"Z")

        await run_to_completion(service.replace_image(OWNER_ID, replacement))
        resolved = await service.fetch_profile(OWNER_ID)

        assert resolved.record["image_ref"] == f"memory://assets/{ASSET_KEY}"
        assert await asset_store.download(ASSET_KEY) == replacement.data

    @pytest.mark.asyncio
    async def test_replace_reports_progress(self, service: ProfileSyncService) -> None:
        """Test progress events precede the final ImageReplaced."""
        events = await collect(service.replace_image(OWNER_ID, png(size=4096)))

        assert isinstance(events[-1], ImageReplaced)
        progress = [event for event in events if isinstance(event, UploadProgress)]
        assert progress[-1].ratio == 1.0
        assert len(progress) > 1

    @pytest.mark.asyncio
    async def test_delete_failure_does_not_stop_upload(self, test_settings: Any) -> None:
        """Test a failed delete is logged and the new image still uploads."""
        asset_store = FailingDeleteAssetStore()
        service = ProfileSyncService(
            asset_store=asset_store,
            record_store=InMemoryRecordStore(),
            notifier=RecordingNotifier(),
            settings=test_settings,
        )

        replaced = await run_to_completion(service.replace_image(OWNER_ID, png()))

        assert isinstance(replaced, ImageReplaced)
        assert asset_store.keys() == [ASSET_KEY]

    @pytest.mark.asyncio
    async def test_invalid_image_deletes_nothing(
        self, service: ProfileSyncService, asset_store: InMemoryAssetStore
    ) -> None:
        """Test validation runs before the previous image is removed."""
        await run_to_completion(asset_store.put(ASSET_KEY, png()))

        with pytest.raises(ProfileValidationError):
            await collect(service.replace_image(OWNER_ID, None))

        assert asset_store.keys() == [ASSET_KEY]

    @pytest.mark.asyncio
    async def test_upload_failure_raises_upload_error(self, test_settings: Any) -> None:
        """Test an upload failure during replace surfaces as UploadError."""
        notifier = RecordingNotifier()
        service = ProfileSyncService(
            asset_store=FailingPutAssetStore(),
            record_store=InMemoryRecordStore(),
            notifier=notifier,
            settings=test_settings,
        )

        with pytest.raises(UploadError):
            await collect(service.replace_image(OWNER_ID, png()))

        assert notifier.kinds == [NotificationKind.UPLOAD_FAILED]


class TestHelpers:
    """Tests for module-level helpers."""

    def test_asset_key_is_owner_derived(self, service: ProfileSyncService) -> None:
        """Test the image key combines the configured prefix and owner id."""
        assert service.asset_key_for("abc") == "profileImages/abc"

    @pytest.mark.asyncio
    async def test_run_to_completion_requires_an_event(self) -> None:
        """Test draining an empty stream is an error."""

        async def empty() -> AsyncIterator[int]:
            return
            yield

        with pytest.raises(RuntimeError):
            await run_to_completion(empty())

    def test_build_uses_memory_stores_when_mocked(self, test_settings: Any) -> None:
        """Test mock_storage selects the in-process stores."""
        settings = test_settings.model_copy(update={"mock_storage": True})

        service = build_profile_sync_service(settings)

        assert isinstance(service.asset_store, InMemoryAssetStore)
        assert isinstance(service.record_store, InMemoryRecordStore)
