"""Collaborators consumed by message ingestion.

Authorization, rendering, drafts, notification publishing, job dispatch and
domain events sit behind small interfaces here. The defaults are enough to
run Parley on its own: publishing and job dispatch go to the structured log.
"""

from __future__ import annotations

import html
import inspect
import re
from collections import defaultdict
from collections.abc import Callable
from typing import Any, Protocol

from sqlalchemy import delete
from sqlalchemy.engine import Connection

from parley.database import drafts
from parley.logging import get_logger
from parley.models import Channel, ChannelMembership, ChannelStatus, Message, User

log = get_logger("collaborators")


# =============================================================================
# Authorization
# =============================================================================


class Guardian:
    """Permission decisions for one acting user."""

    def __init__(self, user: User) -> None:
        self.user = user

    @property
    def is_staff(self) -> bool:
        return self.user.is_staff

    def is_silenced(self) -> bool:
        return self.user.is_silenced()

    def can_join_channel(self, channel: Channel) -> bool:
        """Direct-message channels can't be joined, only be a member of."""
        if channel.is_direct_message:
            return False
        if channel.status == ChannelStatus.OPEN:
            return True
        return channel.status == ChannelStatus.CLOSED and self.is_staff

    def can_post_in_channel(
        self, channel: Channel, membership: ChannelMembership | None = None
    ) -> bool:
        if channel.is_direct_message and membership is None:
            return False
        if channel.status == ChannelStatus.OPEN:
            return True
        # Staff can still post in closed channels; read-only and archived are final
        return channel.status == ChannelStatus.CLOSED and self.is_staff


# =============================================================================
# Rendering
# =============================================================================


class MessageRenderer:
    """Turns raw message text into HTML and finds @mentions."""

    MENTION_PATTERN = re.compile(r"(?<![\w@])@([\w][\w.\-]*)")

    def cook(self, body: str) -> str:
        paragraphs = [p.strip() for p in re.split(r"\n\s*\n", body) if p.strip()]
        return "".join(
            "<p>" + html.escape(p).replace("\n", "<br>") + "</p>" for p in paragraphs
        )

    def extract_mentions(self, body: str) -> list[str]:
        """Lowercased usernames mentioned in ``body``, in order, without duplicates."""
        seen: dict[str, None] = {}
        for match in self.MENTION_PATTERN.finditer(body):
            seen.setdefault(match.group(1).rstrip(".-").lower(), None)
        return list(seen)


# =============================================================================
# Drafts
# =============================================================================


class DraftStore(Protocol):
    """Storage for unsent drafts."""

    async def delete_for(self, conn: Connection, user_id: str, channel_id: str) -> int:
        """Delete the user's drafts for a channel. Returns rows deleted."""
        ...


class DatabaseDraftStore:
    """Drafts kept in the ``drafts`` table, deleted on the caller's connection."""

    async def delete_for(self, conn: Connection, user_id: str, channel_id: str) -> int:
        result = conn.execute(
            delete(drafts).where(drafts.c.user_id == user_id, drafts.c.channel_id == channel_id)
        )
        return result.rowcount


# =============================================================================
# Notifications
# =============================================================================


class Publisher(Protocol):
    """Realtime notifications to connected clients."""

    async def publish_new(
        self,
        channel: Channel,
        message: Message,
        staged_id: str | None,
        staged_thread_id: str | None = None,
    ) -> None: ...

    async def publish_thread_created(
        self,
        channel: Channel,
        original_message: Message,
        thread_id: str,
        staged_thread_id: str | None = None,
    ) -> None: ...

    async def publish_user_tracking_state(
        self,
        user: User,
        channel: Channel,
        message_id: str,
        thread_id: str | None = None,
    ) -> None: ...

    async def publish_new_channel(self, channel: Channel, user_ids: list[str]) -> None: ...


class LogPublisher:
    """Publisher that writes every notification to the structured log."""

    async def publish_new(self, channel, message, staged_id, staged_thread_id=None) -> None:
        log.info(
            "publish_new_message",
            channel_id=channel.id,
            message_id=message.id,
            thread_id=message.thread_id,
            staged_id=staged_id,
            staged_thread_id=staged_thread_id,
        )

    async def publish_thread_created(
        self, channel, original_message, thread_id, staged_thread_id=None
    ) -> None:
        log.info(
            "publish_thread_created",
            channel_id=channel.id,
            original_message_id=original_message.id,
            thread_id=thread_id,
            staged_thread_id=staged_thread_id,
        )

    async def publish_user_tracking_state(self, user, channel, message_id, thread_id=None) -> None:
        log.info(
            "publish_user_tracking_state",
            user_id=user.id,
            channel_id=channel.id,
            message_id=message_id,
            thread_id=thread_id,
        )

    async def publish_new_channel(self, channel, user_ids) -> None:
        log.info("publish_new_channel", channel_id=channel.id, user_ids=sorted(user_ids))


# =============================================================================
# Jobs & Events
# =============================================================================


class JobQueue(Protocol):
    """Asynchronous background processing."""

    async def enqueue(self, job: str, **args: Any) -> None: ...


class LogJobQueue:
    """Job queue that only records enqueued jobs to the structured log."""

    async def enqueue(self, job: str, **args: Any) -> None:
        log.info("job_enqueued", job=job, **args)


class EventBus:
    """In-process registry of named domain event handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Callable[..., Any]]] = defaultdict(list)

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Callable[..., Any]) -> None:
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    async def trigger(self, event: str, *args: Any) -> None:
        """Call every handler for ``event`` in registration order."""
        for handler in list(self._handlers.get(event, [])):
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
