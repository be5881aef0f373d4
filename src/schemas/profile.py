"""Profile Pydantic schemas for API request/response models."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ProfileFields(BaseModel):
    """Personal details submitted with a new profile.

    Values are kept exactly as submitted. Emptiness is checked by the sync
    service so that the first missing field can be reported in form order.
    Accepts both snake_case names and the camelCase keys used by the web form.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    first_name: str = Field(default="", description="First name")
    last_name: str = Field(default="", description="Last name")
    address: str = Field(default="", description="Postal address")
    profession: str = Field(default="", description="Profession")
    age: str = Field(default="", description="Age, as entered")


class ProfileResponse(BaseModel):
    """Schema for profile API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Profile record identifier")
    owner_id: str = Field(description="Identity of the profile owner")
    first_name: str = Field(description="First name")
    last_name: str = Field(description="Last name")
    address: str = Field(description="Postal address")
    profession: str = Field(description="Profession")
    age: str = Field(description="Age, as entered")
    email: str | None = Field(default=None, description="Owner email from the identity provider")
    image_ref: str | None = Field(default=None, description="Durable URL of the profile image")
    image_error: str | None = Field(
        default=None,
        description="Why the image could not be resolved (not_found or storage_error)",
    )
    created_at: datetime = Field(description="Record creation timestamp")


class ProfileCreatedResponse(BaseModel):
    """Response after a profile has been created."""

    profile: ProfileResponse = Field(description="The stored profile")
    redirect_after_seconds: int = Field(
        description="How long the client should wait before showing the profile view",
    )
    message: str = Field(default="Profile created successfully")


class ImageReplacedResponse(BaseModel):
    """Response after the profile image has been replaced."""

    image_ref: str = Field(description="Durable URL of the new image")
    asset_key: str = Field(description="Storage key the image was written to")
    message: str = Field(default="Profile picture updated successfully")


class UploadProgressEvent(BaseModel):
    """Server-sent event emitted after each uploaded chunk."""

    type: Literal["progress"] = "progress"
    progress: float = Field(ge=0.0, le=1.0, description="Fraction of bytes transferred")
    bytes_transferred: int = Field(ge=0)
    total_bytes: int = Field(ge=0)


class StreamErrorEvent(BaseModel):
    """Server-sent event emitted when a streamed flow fails mid-way."""

    type: Literal["error"] = "error"
    error: str = Field(description="Error kind")
    message: str = Field(description="Human-readable error description")
    field: str | None = Field(default=None, description="Failing field for validation errors")
