"""Channel and thread membership bookkeeping.

Memberships are created lazily on first touch. Read pointers only ever move
to the message being ingested; rows are upserted on their unique
(channel_id, user_id) / (thread_id, user_id) indexes.
"""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection

from parley.database import channel_memberships, generate_id, thread_memberships
from parley.logging import get_logger
from parley.models import ChannelMembership, Message, Thread, ThreadMembership, row_to_model, utcnow

log = get_logger("membership")


class MembershipSynchronizer:
    """Maintains per-user read state for channels and threads."""

    def __init__(self, conn: Connection) -> None:
        self.conn = conn

    # =========================================================================
    # Channels
    # =========================================================================

    async def save_channel_membership(self, membership: ChannelMembership) -> ChannelMembership:
        """Insert a membership, or update ``following`` on the existing row."""
        stmt = sqlite_insert(channel_memberships).values(
            id=membership.id,
            channel_id=membership.channel_id,
            user_id=membership.user_id,
            following=membership.following,
            last_read_message_id=membership.last_read_message_id,
            created_at=membership.created_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["channel_id", "user_id"],
            set_={"following": membership.following},
        )
        self.conn.execute(stmt)
        saved = self.get_channel_membership(membership.user_id, membership.channel_id)
        return saved or membership

    async def touch_channel_read(
        self, user_id: str, channel_id: str, message_id: str
    ) -> ChannelMembership:
        """Upsert the user's channel membership with ``last_read_message_id``."""
        stmt = sqlite_insert(channel_memberships).values(
            id=generate_id(),
            channel_id=channel_id,
            user_id=user_id,
            following=False,
            last_read_message_id=message_id,
            created_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["channel_id", "user_id"],
            set_={"last_read_message_id": message_id},
        )
        self.conn.execute(stmt)
        log.debug("channel_read_touched", user_id=user_id, channel_id=channel_id, message_id=message_id)
        return self.get_channel_membership(user_id, channel_id)

    async def follow_channel(self, channel_id: str, user_ids: Iterable[str]) -> int:
        """Mark existing memberships as following.

        Returns:
            Number of memberships changed.
        """
        ids = list(user_ids)
        if not ids:
            return 0
        result = self.conn.execute(
            update(channel_memberships)
            .where(
                channel_memberships.c.channel_id == channel_id,
                channel_memberships.c.user_id.in_(ids),
                channel_memberships.c.following.is_(False),
            )
            .values(following=True)
        )
        return result.rowcount

    def get_channel_membership(self, user_id: str, channel_id: str) -> ChannelMembership | None:
        row = self.conn.execute(
            select(channel_memberships).where(
                channel_memberships.c.channel_id == channel_id,
                channel_memberships.c.user_id == user_id,
            )
        ).first()
        return row_to_model(row, ChannelMembership) if row else None

    def unfollowed_member_ids(self, channel_id: str) -> list[str]:
        """User ids with a membership in the channel that is not following."""
        return list(
            self.conn.execute(
                select(channel_memberships.c.user_id).where(
                    channel_memberships.c.channel_id == channel_id,
                    channel_memberships.c.following.is_(False),
                )
            ).scalars()
        )

    # =========================================================================
    # Threads
    # =========================================================================

    async def add_to_thread(self, user_id: str, thread_id: str) -> ThreadMembership:
        """Ensure a thread membership exists without moving its read pointer."""
        stmt = sqlite_insert(thread_memberships).values(
            id=generate_id(),
            thread_id=thread_id,
            user_id=user_id,
            last_read_message_id=None,
            created_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["thread_id", "user_id"])
        self.conn.execute(stmt)
        return self.get_thread_membership(user_id, thread_id)

    async def touch_thread_read(
        self, user_id: str, thread_id: str, message_id: str
    ) -> ThreadMembership:
        """Upsert the user's thread membership with ``last_read_message_id``.

        This is how a user joins a thread.
        """
        stmt = sqlite_insert(thread_memberships).values(
            id=generate_id(),
            thread_id=thread_id,
            user_id=user_id,
            last_read_message_id=message_id,
            created_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["thread_id", "user_id"],
            set_={"last_read_message_id": message_id},
        )
        self.conn.execute(stmt)
        log.debug("thread_read_touched", user_id=user_id, thread_id=thread_id, message_id=message_id)
        return self.get_thread_membership(user_id, thread_id)

    async def sync_thread_participants(
        self,
        thread: Thread,
        author_id: str,
        message: Message,
        advance_original_author: bool = True,
    ) -> list[ThreadMembership]:
        """Bring the author and the thread's original author into the thread.

        Both read pointers advance to ``message``. With
        ``advance_original_author`` off, the original author is only added, so
        the reply stays unread for them.

        Returns:
            Memberships for the author and, when different, the original author.
        """
        synced = [await self.touch_thread_read(author_id, thread.id, message.id)]
        if thread.original_message_user_id != author_id:
            original_author_id = thread.original_message_user_id
            if advance_original_author:
                synced.append(await self.touch_thread_read(original_author_id, thread.id, message.id))
            else:
                synced.append(await self.add_to_thread(original_author_id, thread.id))
        return synced

    def get_thread_membership(self, user_id: str, thread_id: str) -> ThreadMembership | None:
        row = self.conn.execute(
            select(thread_memberships).where(
                thread_memberships.c.thread_id == thread_id,
                thread_memberships.c.user_id == user_id,
            )
        ).first()
        return row_to_model(row, ThreadMembership) if row else None
