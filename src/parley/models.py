"""Pydantic models for Parley entities.

These models bridge between the database (SQLAlchemy Core) and application code,
providing validation and serialization.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from ulid import ULID


# =============================================================================
# Enums
# =============================================================================


class ChannelKind(str, Enum):
    """Channel kinds."""

    CATEGORY = "category"
    DIRECT_MESSAGE = "direct_message"


class ChannelStatus(str, Enum):
    """Channel lifecycle status."""

    OPEN = "open"
    READ_ONLY = "read_only"
    CLOSED = "closed"
    ARCHIVED = "archived"


class RelationshipKind(str, Enum):
    """Ways a user can opt out of hearing from another user."""

    MUTE = "mute"
    IGNORE = "ignore"
    BLOCK = "block"


# =============================================================================
# Helper Functions
# =============================================================================


def generate_id() -> str:
    """Generate a new ULID for entities."""
    return str(ULID())


def utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Ensure a datetime is timezone-aware (UTC).

    SQLite stores datetimes as naive. This helper adds UTC timezone info
    if the datetime is naive.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# =============================================================================
# Users
# =============================================================================


class User(BaseModel):
    """Chat participant."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=generate_id)
    username: str
    is_staff: bool = False
    allow_direct_messages: bool = True
    silenced_until: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        """Usernames are stored lowercase without the @ prefix."""
        v = v.strip().lstrip("@").lower()
        if not v:
            raise ValueError("username must not be empty")
        return v

    def is_silenced(self, now: datetime | None = None) -> bool:
        """Whether the user is currently silenced."""
        until = ensure_utc(self.silenced_until)
        return until is not None and until > (now or utcnow())


class UserRelationship(BaseModel):
    """A user muting, ignoring or blocking another user."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    target_user_id: str
    kind: RelationshipKind
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Channels
# =============================================================================


class Channel(BaseModel):
    """Conversation space holding messages and memberships."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=generate_id)
    name: str | None = None
    kind: ChannelKind = ChannelKind.CATEGORY
    status: ChannelStatus = ChannelStatus.OPEN
    threading_enabled: bool = False
    last_message_id: str | None = None
    last_message_sent_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_direct_message(self) -> bool:
        return self.kind == ChannelKind.DIRECT_MESSAGE


class ChannelMembership(BaseModel):
    """Per-user tracking state for a channel."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=generate_id)
    channel_id: str
    user_id: str
    following: bool = False
    last_read_message_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Messages & Threads
# =============================================================================


class Message(BaseModel):
    """A chat message. Thread reference is filled in during ingestion."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=generate_id)
    channel_id: str
    user_id: str
    in_reply_to_id: str | None = None
    thread_id: str | None = None
    message: str
    cooked: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    deleted_at: datetime | None = None  # Soft delete tombstone


class Thread(BaseModel):
    """Canonical grouping of a conversation root and its transitive replies."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=generate_id)
    channel_id: str
    original_message_id: str
    original_message_user_id: str
    last_message_id: str | None = None
    replies_count: int = Field(0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)


class ThreadMembership(BaseModel):
    """Per-user tracking state for a thread."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=generate_id)
    thread_id: str
    user_id: str
    last_read_message_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Mention(BaseModel):
    """A user mentioned in a message."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=generate_id)
    message_id: str
    user_id: str
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Attachments, Drafts, Webhooks
# =============================================================================


class Upload(BaseModel):
    """Uploaded file that can be attached to messages."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=generate_id)
    user_id: str
    url: str
    filename: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Draft(BaseModel):
    """Unsent message text saved per user and channel."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=generate_id)
    user_id: str
    channel_id: str
    data: str
    created_at: datetime = Field(default_factory=utcnow)


class IncomingWebhook(BaseModel):
    """External integration allowed to post into a channel."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=generate_id)
    channel_id: str
    name: str
    username: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Conversion Helpers
# =============================================================================


T = TypeVar("T", bound=BaseModel)


def row_to_model(row, model_class: type[T]) -> T:
    """Convert SQLAlchemy row to Pydantic model.

    Args:
        row: SQLAlchemy row result.
        model_class: Target Pydantic model class.

    Returns:
        Instance of the model class.
    """
    return model_class.model_validate(row._mapping)


def model_to_dict(model: BaseModel, exclude_none: bool = False) -> dict[str, Any]:
    """Convert Pydantic model to dict for database insert.

    Args:
        model: Pydantic model instance.
        exclude_none: If True, exclude None values.

    Returns:
        Dictionary representation.
    """
    return model.model_dump(mode="python", exclude_none=exclude_none)
