"""Outcome signals emitted by the profile sync flow."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    """Kinds of outcome the sync flow reports."""

    PROFILE_CREATED = "profile_created"
    IMAGE_REPLACED = "image_replaced"
    VALIDATION_FAILED = "validation_failed"
    UPLOAD_FAILED = "upload_failed"
    STORAGE_FAILED = "storage_failed"
    PROFILE_NOT_FOUND = "profile_not_found"
    IMAGE_UNAVAILABLE = "image_unavailable"

    @property
    def is_failure(self) -> bool:
        return self not in (NotificationKind.PROFILE_CREATED, NotificationKind.IMAGE_REPLACED)


@dataclass(frozen=True)
class SyncNotification:
    """One success or failure signal.

    ``field`` names the failing input on validation failures; ``message``
    carries the underlying error text on storage failures.
    """

    kind: NotificationKind
    owner_id: str
    field: str | None = None
    message: str | None = None


class Notifier(Protocol):
    """Receives sync outcomes for display to the user."""

    async def notify(self, notification: SyncNotification) -> None:
        ...


class LoggingNotifier:
    """Notifier that writes every signal to the application log."""

    async def notify(self, notification: SyncNotification) -> None:
        if notification.kind.is_failure:
            logger.warning(
                "Profile sync %s for owner %s (field=%s): %s",
                notification.kind.value,
                notification.owner_id,
                notification.field,
                notification.message,
            )
        else:
            logger.info(
                "Profile sync %s for owner %s",
                notification.kind.value,
                notification.owner_id,
            )
