"""Base domain model classes."""

from __future__ import annotations

import secrets
import string
import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field


_ALPHANUMERIC = string.ascii_lowercase + string.digits


def generate_id() -> str:
    """Generate a unique identifier."""
    return str(uuid.uuid4())


def random_string(length: int, alphabet: str = _ALPHANUMERIC) -> str:
    """Generate a random string suitable for identifiers and shared secrets."""
    return "".join(secrets.choice(alphabet) for _ in range(length))


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


class DomainEntity(BaseModel):
    """Base class for all domain entities."""

    id: str = Field(default_factory=generate_id)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = Field(default=1)

    def touch(self) -> None:
        """Update the timestamp and increment version."""
        self.updated_at = utc_now()
        self.version += 1

    model_config = {"frozen": False, "validate_assignment": True}


class ValueObject(BaseModel):
    """Base class for value objects (immutable)."""

    model_config = {"frozen": True}
