"""Exceptions raised by the profile sync flow."""


class ProfileSyncError(Exception):
    """Base exception for profile sync errors."""

    kind = "sync_error"


class ProfileValidationError(ProfileSyncError):
    """A submitted field failed local validation. Raised before any I/O."""

    kind = "validation_error"

    def __init__(self, field: str, message: str | None = None) -> None:
        self.field = field
        super().__init__(message or f"{field} is required")


class StorageError(ProfileSyncError):
    """A store query, insert, delete or upload failed."""

    kind = "storage_error"

    def __init__(
        self,
        operation: str,
        cause: BaseException | str,
        message: str | None = None,
    ) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(message or f"{operation} failed: {cause}")


class UploadError(StorageError):
    """Asset transfer failed (transport, quota or invalid payload)."""

    kind = "upload_error"

    def __init__(self, cause: BaseException | str, message: str | None = None) -> None:
        super().__init__("upload", cause, message)


class ProfileNotFoundError(ProfileSyncError):
    """No profile record exists for the owner yet."""

    kind = "not_found"

    def __init__(self, owner_id: str) -> None:
        self.owner_id = owner_id
        super().__init__(f"No profile found for owner {owner_id}")
