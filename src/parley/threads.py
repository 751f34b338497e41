"""Thread resolution and reply-chain consistency repair.

A thread groups a conversation root (a message that replies to nothing) with
every message that replies to it, directly or transitively. Reply chains are
treated as a directed graph over ``in_reply_to_id``:

- root discovery follows parent pointers until none remain
- threads are created with insert-or-ignore on (channel_id, original_message_id)
  so concurrent resolvers for one root converge on a single row
- backfill walks reply edges forward from the root, breadth first, and fills
  thread references that are still NULL; it never rewrites a non-NULL one
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection

from parley.config import ChatConfig
from parley.database import generate_id, messages, threads
from parley.errors import ConflictError, NotFoundError
from parley.logging import get_logger
from parley.models import Message, Thread, row_to_model, utcnow

log = get_logger("threads")

# Keeps IN (...) lists under SQLite's bound parameter limit
_CHUNK_SIZE = 500


@dataclass
class ThreadResolution:
    """Outcome of resolving the thread for a new message.

    Attributes:
        thread: The canonical thread, after stats were updated.
        created: True if this call inserted the thread row.
        backfilled: Number of chain messages whose NULL thread was filled.
    """

    thread: Thread
    created: bool = False
    backfilled: int = 0


def _chunks(ids: list[str], size: int = _CHUNK_SIZE) -> Iterator[list[str]]:
    for i in range(0, len(ids), size):
        yield ids[i : i + size]


class ThreadResolver:
    """Assigns messages to the canonical thread of their conversation root.

    All methods operate on the caller's connection and expect to run inside
    the caller's transaction.
    """

    def __init__(self, conn: Connection, config: ChatConfig | None = None) -> None:
        self.conn = conn
        self.config = config or ChatConfig()

    # =========================================================================
    # Resolution
    # =========================================================================

    async def resolve(
        self,
        message: Message,
        in_reply_to_id: str | None = None,
        requested_thread_id: str | None = None,
    ) -> ThreadResolution | None:
        """Resolve and assign the thread for a persisted message.

        Args:
            message: The new message (already inserted). Its ``thread_id`` is
                updated in place.
            in_reply_to_id: Message being replied to, if any.
            requested_thread_id: Thread explicitly requested by the caller.
                Consistency with the reply target is checked by the caller.

        Returns:
            ThreadResolution, or None when the message starts no thread.

        Raises:
            ConflictError: Reply target vanished, reply chain is cyclic, or the
                message already points at a different thread.
            NotFoundError: Requested thread does not exist.
        """
        if in_reply_to_id is None:
            if requested_thread_id is None:
                return None
            thread = self.get_thread(requested_thread_id)
            if thread is None:
                raise NotFoundError("thread", thread_id=requested_thread_id)
            self._attach_message(message, thread)
            thread = await self.record_reply(thread, message)
            return ThreadResolution(thread=thread)

        parent = self.get_message(in_reply_to_id)
        if parent is None or parent.deleted_at is not None:
            raise ConflictError("stale reply target", in_reply_to_id=in_reply_to_id)

        root = await self.find_root(parent)
        thread, created = await self.find_or_create_thread(root, message.channel_id)

        if parent.id != root.id or self.config.original_message_in_thread:
            self.assign_if_unset([parent.id], thread.id)
        self._attach_message(message, thread)
        backfilled = await self.backfill(thread)
        thread = await self.record_reply(thread, message)

        return ThreadResolution(thread=thread, created=created, backfilled=backfilled)

    def _attach_message(self, message: Message, thread: Thread) -> None:
        """Point the new message at ``thread``, refusing to switch threads."""
        if message.thread_id is not None and message.thread_id != thread.id:
            raise ConflictError(
                "stale thread assignment",
                message_id=message.id,
                thread_id=message.thread_id,
                resolved_thread_id=thread.id,
            )
        self.conn.execute(
            update(messages).where(messages.c.id == message.id).values(thread_id=thread.id)
        )
        message.thread_id = thread.id

    async def find_root(self, message: Message) -> Message:
        """Follow reply links back to the conversation root.

        A link to a message that no longer exists ends the walk at the
        message holding it.

        Raises:
            ConflictError: The chain loops or exceeds the configured depth.
        """
        current = message
        seen = {current.id}

        while current.in_reply_to_id is not None:
            parent = self.get_message(current.in_reply_to_id)
            if parent is None:
                log.warning(
                    "reply_chain_broken",
                    message_id=current.id,
                    missing_id=current.in_reply_to_id,
                )
                break
            if parent.id in seen:
                raise ConflictError("reply chain cycle", message_id=parent.id)
            if len(seen) >= self.config.max_reply_chain_depth:
                raise ConflictError("reply chain too deep", message_id=message.id)
            seen.add(parent.id)
            current = parent

        return current

    async def find_or_create_thread(self, root: Message, channel_id: str) -> tuple[Thread, bool]:
        """Return the root's thread, creating it if absent.

        Uses insert-or-ignore on the unique (channel_id, original_message_id)
        index and re-reads, so a resolver that loses a race picks up the
        winner's row.

        Returns:
            Tuple of (thread, created).
        """
        thread = None
        if root.thread_id is not None:
            thread = self.get_thread(root.thread_id)
        if thread is None:
            thread = self.get_thread_for_root(channel_id, root.id)

        if thread is not None:
            log.debug("thread_reused", thread_id=thread.id, original_message_id=root.id)
            return thread, False

        stmt = (
            sqlite_insert(threads)
            .values(
                id=generate_id(),
                channel_id=channel_id,
                original_message_id=root.id,
                original_message_user_id=root.user_id,
                replies_count=0,
                created_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["channel_id", "original_message_id"])
        )
        created = self.conn.execute(stmt).rowcount == 1

        thread = self.get_thread_for_root(channel_id, root.id)
        if thread is None:
            raise ConflictError("thread vanished after create", original_message_id=root.id)

        if created:
            log.info(
                "thread_created",
                thread_id=thread.id,
                channel_id=channel_id,
                original_message_id=root.id,
            )
        else:
            log.info("thread_create_race_lost", thread_id=thread.id, original_message_id=root.id)

        if self.config.original_message_in_thread:
            self.assign_if_unset([root.id], thread.id)

        return thread, created

    # =========================================================================
    # Consistency Repair
    # =========================================================================

    async def backfill(self, thread: Thread) -> int:
        """Attach every orphaned message reachable from the thread's root.

        Walks reply edges breadth first from the original message and fills
        NULL thread references. Idempotent: a second run changes nothing.

        Returns:
            Number of messages updated.
        """
        root_id = thread.original_message_id
        seen = {root_id}
        frontier = [root_id]
        orphans: list[str] = []

        if self.config.original_message_in_thread:
            root_thread_id = self.conn.execute(
                select(messages.c.thread_id).where(messages.c.id == root_id)
            ).scalar_one_or_none()
            if root_thread_id is None:
                orphans.append(root_id)

        while frontier:
            next_frontier: list[str] = []
            for chunk in _chunks(frontier):
                rows = self.conn.execute(
                    select(messages.c.id, messages.c.thread_id).where(
                        messages.c.channel_id == thread.channel_id,
                        messages.c.in_reply_to_id.in_(chunk),
                    )
                ).all()
                for row in rows:
                    if row.id in seen:
                        continue
                    seen.add(row.id)
                    next_frontier.append(row.id)
                    if row.thread_id is None:
                        orphans.append(row.id)
            frontier = next_frontier

        updated = self.assign_if_unset(orphans, thread.id)
        if updated:
            log.info("thread_backfilled", thread_id=thread.id, messages=updated)
        return updated

    def assign_if_unset(self, message_ids: Iterable[str], thread_id: str) -> int:
        """Set ``thread_id`` on messages whose thread is still NULL.

        Returns:
            Number of rows changed.
        """
        ids = list(message_ids)
        updated = 0
        for chunk in _chunks(ids):
            result = self.conn.execute(
                update(messages)
                .where(messages.c.id.in_(chunk), messages.c.thread_id.is_(None))
                .values(thread_id=thread_id)
            )
            updated += result.rowcount
        return updated

    # =========================================================================
    # Thread Stats
    # =========================================================================

    async def record_reply(self, thread: Thread, message: Message) -> Thread:
        """Make ``message`` the thread's last message and refresh its reply count.

        The count is recomputed from thread references rather than
        incremented so that backfilled messages are included.
        """
        values = {"replies_count": self._replies_count_query(thread)}
        if message.id != thread.original_message_id:
            values["last_message_id"] = message.id

        self.conn.execute(update(threads).where(threads.c.id == thread.id).values(**values))
        return self.get_thread(thread.id) or thread

    async def refresh_replies_count(self, thread: Thread) -> Thread:
        """Recompute the cached reply count from message thread references."""
        self.conn.execute(
            update(threads)
            .where(threads.c.id == thread.id)
            .values(replies_count=self._replies_count_query(thread))
        )
        return self.get_thread(thread.id) or thread

    def _replies_count_query(self, thread: Thread):
        return (
            select(func.count())
            .select_from(messages)
            .where(
                messages.c.thread_id == thread.id,
                messages.c.id != thread.original_message_id,
            )
            .scalar_subquery()
        )

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_message(self, message_id: str) -> Message | None:
        row = self.conn.execute(select(messages).where(messages.c.id == message_id)).first()
        return row_to_model(row, Message) if row else None

    def get_thread(self, thread_id: str) -> Thread | None:
        row = self.conn.execute(select(threads).where(threads.c.id == thread_id)).first()
        return row_to_model(row, Thread) if row else None

    def get_thread_for_root(self, channel_id: str, original_message_id: str) -> Thread | None:
        row = self.conn.execute(
            select(threads).where(
                threads.c.channel_id == channel_id,
                threads.c.original_message_id == original_message_id,
            )
        ).first()
        return row_to_model(row, Thread) if row else None
