"""Database model type definitions."""

from src.models.profile import ProfileRecord, ProfileRecordCreate

__all__ = [
    "ProfileRecord",
    "ProfileRecordCreate",
]
