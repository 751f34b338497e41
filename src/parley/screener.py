"""Decides which users accept communication from an acting user."""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.engine import Connection

from parley.database import user_relationships, users
from parley.models import RelationshipKind, User


class Screener:
    """Filters candidate recipients by their opt-outs towards an actor.

    A candidate prevents communication when they mute, ignore or block the
    actor, or have direct messages disabled. Staff actors are never screened.
    Reads relationship data only.
    """

    PREVENTING_KINDS = (
        RelationshipKind.MUTE.value,
        RelationshipKind.IGNORE.value,
        RelationshipKind.BLOCK.value,
    )

    def __init__(self, conn: Connection) -> None:
        self.conn = conn

    async def allowing_actor_communication(
        self, actor: User, candidate_user_ids: Iterable[str]
    ) -> set[str]:
        """Return the candidates who permit communication from ``actor``.

        Args:
            actor: User initiating the communication.
            candidate_user_ids: Potential recipients.

        Returns:
            Subset of candidate ids (never includes unknown users).
        """
        candidates = set(candidate_user_ids)
        if not candidates:
            return set()

        known = set(
            self.conn.execute(select(users.c.id).where(users.c.id.in_(candidates))).scalars()
        )
        if actor.is_staff:
            return known

        return known - await self.preventing_actor_communication(actor, known)

    async def preventing_actor_communication(
        self, actor: User, candidate_user_ids: Iterable[str]
    ) -> set[str]:
        """Return the candidates who opted out of hearing from ``actor``."""
        candidates = set(candidate_user_ids)
        if not candidates or actor.is_staff:
            return set()

        opted_out = set(
            self.conn.execute(
                select(user_relationships.c.user_id).where(
                    user_relationships.c.user_id.in_(candidates),
                    user_relationships.c.target_user_id == actor.id,
                    user_relationships.c.kind.in_(self.PREVENTING_KINDS),
                )
            ).scalars()
        )
        dms_disabled = set(
            self.conn.execute(
                select(users.c.id).where(
                    users.c.id.in_(candidates),
                    users.c.allow_direct_messages.is_(False),
                )
            ).scalars()
        )
        return opted_out | dms_disabled
