"""Profile model type definitions for database operations."""

from datetime import datetime
from typing import TypedDict


class ProfileRecord(TypedDict):
    """Profile table row representation.

    Represents one submitted profile stored in the profiles table.
    Maps directly to the database schema. All personal fields are stored
    as submitted strings; ``age`` is never coerced to a number.
    """

    id: str
    owner_id: str
    first_name: str
    last_name: str
    address: str
    profession: str
    age: str
    email: str | None
    image_ref: str | None
    created_at: datetime | str


class ProfileRecordCreate(TypedDict):
    """Columns written when a profile is created.

    ``id`` and ``created_at`` are assigned by the store.
    """

    owner_id: str
    first_name: str
    last_name: str
    address: str
    profession: str
    age: str
    email: str | None
    image_ref: str
