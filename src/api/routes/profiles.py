"""Profile API routes."""

import json
import logging
from collections.abc import AsyncIterator
from typing import Annotated, Any

from fastapi import APIRouter, File, Form, UploadFile, status
from fastapi.responses import StreamingResponse

from src.api.deps import CurrentUser, ProfileSync, Uploads
from src.api.middleware.error_handler import ConflictError
from src.core.asset_store import AssetPayload
from src.core.upload_guard import UploadGuard, UploadInProgressError
from src.schemas.profile import (
    ImageReplacedResponse,
    ProfileCreatedResponse,
    ProfileFields,
    ProfileResponse,
    StreamErrorEvent,
    UploadProgressEvent,
)
from src.services.profile_sync_service import (
    ImageReplaced,
    ProfileCreated,
    ProfileSyncService,
    run_to_completion,
)
from src.services.sync_errors import ProfileSyncError
from src.services.upload_coordinator import UploadProgress

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/profiles", tags=["profiles"])

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
}

FirstName = Annotated[str, Form(description="First name")]
LastName = Annotated[str, Form(description="Last name")]
Address = Annotated[str, Form(description="Postal address")]
Profession = Annotated[str, Form(description="Profession")]
Age = Annotated[str, Form(description="Age, as entered")]
ImageFile = Annotated[UploadFile | None, File(description="Profile image (JPEG, PNG, WebP or GIF)")]


async def _read_image(image: UploadFile | None) -> AssetPayload | None:
    if image is None:
        return None
    data = await image.read()
    return AssetPayload(
        data=data,
        content_type=image.content_type or "application/octet-stream",
        filename=image.filename,
    )


def _profile_response(record: dict[str, Any], image_error: str | None = None) -> ProfileResponse:
    return ProfileResponse(**{**record, "image_error": image_error})


def _created_response(created: ProfileCreated, service: ProfileSyncService) -> ProfileCreatedResponse:
    return ProfileCreatedResponse(
        profile=_profile_response(dict(created.record)),
        redirect_after_seconds=service.settings.redirect_delay_seconds,
    )


def _replaced_response(replaced: ImageReplaced) -> ImageReplacedResponse:
    return ImageReplacedResponse(
        image_ref=replaced.reference.url,
        asset_key=replaced.reference.key,
    )


def _sse(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data)}\n\n"


def _progress_event(progress: UploadProgress) -> str:
    event = UploadProgressEvent(
        progress=progress.ratio,
        bytes_transferred=progress.bytes_transferred,
        total_bytes=progress.total_bytes,
    )
    return _sse(event.model_dump(mode="json"))


def _error_event(error: Exception) -> str:
    if isinstance(error, UploadInProgressError):
        event = StreamErrorEvent(error="conflict", message=str(error))
    else:
        kind = error.kind if isinstance(error, ProfileSyncError) else "internal_error"
        event = StreamErrorEvent(error=kind, message=str(error), field=getattr(error, "field", None))
    return _sse(event.model_dump(mode="json", exclude_none=True))


def _ensure_idle(guard: UploadGuard, asset_key: str) -> None:
    if guard.is_in_flight(asset_key):
        raise ConflictError(f"An upload to {asset_key} is already in progress")


@router.post(
    "/me",
    response_model=ProfileCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create current user's profile",
    responses={
        201: {"description": "Image uploaded and profile stored"},
        409: {"description": "An image upload for this user is already running"},
        422: {"description": "A required field or the image is missing or invalid"},
        502: {"description": "Image upload or record insert failed"},
    },
)
async def create_my_profile(
    user: CurrentUser,
    service: ProfileSync,
    guard: Uploads,
    first_name: FirstName = "",
    last_name: LastName = "",
    address: Address = "",
    profession: Profession = "",
    age: Age = "",
    image: ImageFile = None,
) -> ProfileCreatedResponse:
    """Upload the profile image, then store the profile record.

    The record is written only after the image upload has completed.
    """
    fields = ProfileFields(
        first_name=first_name,
        last_name=last_name,
        address=address,
        profession=profession,
        age=age,
    )
    payload = await _read_image(image)

    try:
        async with guard.claim(service.asset_key_for(user.user_id)):
            created = await run_to_completion(
                service.create_profile(user.user_id, user.email, fields, payload)
            )
    except UploadInProgressError as e:
        raise ConflictError(str(e)) from e

    if not isinstance(created, ProfileCreated):
        raise ProfileSyncError("Profile create finished without a stored record")
    return _created_response(created, service)


@router.post(
    "/me/stream",
    status_code=status.HTTP_200_OK,
    summary="Create current user's profile with upload progress",
    response_class=StreamingResponse,
    responses={
        200: {"description": "Server-sent events: progress, then complete or error"},
        409: {"description": "An image upload for this user is already running"},
        422: {"description": "A required field or the image is missing or invalid"},
    },
)
async def create_my_profile_stream(
    user: CurrentUser,
    service: ProfileSync,
    guard: Uploads,
    first_name: FirstName = "",
    last_name: LastName = "",
    address: Address = "",
    profession: Profession = "",
    age: Age = "",
    image: ImageFile = None,
) -> StreamingResponse:
    """Same as ``POST /me`` but streams upload progress as server-sent events.

    Validation failures are answered with 422 before the stream opens; later
    failures arrive as a final ``error`` event.
    """
    fields = ProfileFields(
        first_name=first_name,
        last_name=last_name,
        address=address,
        profession=profession,
        age=age,
    )
    payload = await _read_image(image)
    await service.validate_submission(user.user_id, fields, payload)

    asset_key = service.asset_key_for(user.user_id)
    _ensure_idle(guard, asset_key)

    async def generate() -> AsyncIterator[str]:
        try:
            async with guard.claim(asset_key):
                async for event in service.create_profile(user.user_id, user.email, fields, payload):
                    if isinstance(event, UploadProgress):
                        yield _progress_event(event)
                    else:
                        created = _created_response(event, service)
                        yield _sse({"type": "complete", **created.model_dump(mode="json")})
        except (ProfileSyncError, UploadInProgressError) as e:
            logger.warning("Profile create stream failed for owner %s: %s", user.user_id, e)
            yield _error_event(e)

    return StreamingResponse(generate(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get(
    "/me",
    response_model=ProfileResponse,
    summary="Get current user's profile",
    responses={
        200: {"description": "Profile found; image_ref is null if the image is unavailable"},
        404: {"description": "The user has not created a profile yet"},
    },
)
async def get_my_profile(user: CurrentUser, service: ProfileSync) -> ProfileResponse:
    """Return the stored profile with a freshly resolved image reference."""
    resolved = await service.fetch_profile(user.user_id)
    return _profile_response(dict(resolved.record), resolved.image_error)


@router.put(
    "/me/image",
    response_model=ImageReplacedResponse,
    summary="Replace current user's profile image",
    responses={
        409: {"description": "An image upload for this user is already running"},
        422: {"description": "The image is missing or invalid"},
        502: {"description": "Image upload failed"},
    },
)
async def replace_my_image(
    user: CurrentUser,
    service: ProfileSync,
    guard: Uploads,
    image: ImageFile = None,
) -> ImageReplacedResponse:
    """Delete the current profile image and upload a new one."""
    payload = await _read_image(image)

    try:
        async with guard.claim(service.asset_key_for(user.user_id)):
            replaced = await run_to_completion(service.replace_image(user.user_id, payload))
    except UploadInProgressError as e:
        raise ConflictError(str(e)) from e

    if not isinstance(replaced, ImageReplaced):
        raise ProfileSyncError("Image replace finished without a reference")
    return _replaced_response(replaced)


@router.put(
    "/me/image/stream",
    status_code=status.HTTP_200_OK,
    summary="Replace current user's profile image with upload progress",
    response_class=StreamingResponse,
    responses={
        200: {"description": "Server-sent events: progress, then complete or error"},
        409: {"description": "An image upload for this user is already running"},
        422: {"description": "The image is missing or invalid"},
    },
)
async def replace_my_image_stream(
    user: CurrentUser,
    service: ProfileSync,
    guard: Uploads,
    image: ImageFile = None,
) -> StreamingResponse:
    """Same as ``PUT /me/image`` but streams upload progress as server-sent events."""
    payload = await _read_image(image)
    await service.validate_image(user.user_id, payload)

    asset_key = service.asset_key_for(user.user_id)
    _ensure_idle(guard, asset_key)

    async def generate() -> AsyncIterator[str]:
        try:
            async with guard.claim(asset_key):
                async for event in service.replace_image(user.user_id, payload):
                    if isinstance(event, UploadProgress):
                        yield _progress_event(event)
                    else:
                        replaced = _replaced_response(event)
                        yield _sse({"type": "complete", **replaced.model_dump(mode="json")})
        except (ProfileSyncError, UploadInProgressError) as e:
            logger.warning("Image replace stream failed for owner %s: %s", user.user_id, e)
            yield _error_event(e)

    return StreamingResponse(generate(), media_type="text/event-stream", headers=SSE_HEADERS)
