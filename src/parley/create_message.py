"""Create a message in a channel.

Validates input, checks permissions, then persists the message, resolves its
thread, and updates read state in one transaction. Notifications go out
after commit; their failures are reported without undoing the message.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine

from parley.collaborators import (
    DatabaseDraftStore,
    DraftStore,
    EventBus,
    Guardian,
    JobQueue,
    LogJobQueue,
    LogPublisher,
    MessageRenderer,
    Publisher,
)
from parley.config import Config
from parley.database import (
    channels,
    generate_id,
    incoming_webhooks,
    mentions,
    message_uploads,
    messages,
    uploads,
    users,
    webhook_events,
)
from parley.errors import NotFoundError
from parley.logging import get_logger
from parley.membership import MembershipSynchronizer
from parley.models import (
    Channel,
    ChannelMembership,
    IncomingWebhook,
    Message,
    Thread,
    Upload,
    User,
    model_to_dict,
    row_to_model,
    utcnow,
)
from parley.pipeline import Context, Contract, Model, Pipeline, PipelineResult, Policy, Step, Transaction
from parley.screener import Screener
from parley.threads import ThreadResolver

log = get_logger("create_message")


class CreateMessageContract(BaseModel):
    """Caller input for creating a message."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=False)

    channel_id: str
    in_reply_to_id: str | None = None
    upload_ids: list[str] = Field(default_factory=list)
    message: str = ""
    staged_id: str | None = None
    thread_id: str | None = None
    staged_thread_id: str | None = None
    incoming_webhook_id: str | None = None

    @field_validator("channel_id")
    @classmethod
    def validate_channel_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("channel_id is required")
        return v

    @field_validator(
        "in_reply_to_id",
        "staged_id",
        "thread_id",
        "staged_thread_id",
        "incoming_webhook_id",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("message")
    @classmethod
    def validate_message(cls, v: str, info: ValidationInfo) -> str:
        """Body is required unless uploads are attached, and bounded in length."""
        if not v.strip() and not info.data.get("upload_ids"):
            raise ValueError("message is required")
        config = (info.context or {}).get("config")
        max_length = config.chat.max_message_length if config else None
        if max_length is not None and len(v) > max_length:
            raise ValueError(f"message is longer than {max_length} characters")
        return v


class CreateMessage:
    """The message ingestion pipeline.

    Attributes:
        engine: SQLAlchemy database engine.
        config: Application configuration.
        publisher: Realtime notification publisher.
        jobs: Background job queue.
        events: Domain event bus ("message_created").
        renderer: Body renderer and mention extractor.
        drafts: Draft storage.
    """

    def __init__(
        self,
        engine: Engine,
        config: Config | None = None,
        publisher: Publisher | None = None,
        jobs: JobQueue | None = None,
        events: EventBus | None = None,
        renderer: MessageRenderer | None = None,
        drafts: DraftStore | None = None,
    ) -> None:
        self.engine = engine
        self.config = config or Config()
        self.publisher = publisher or LogPublisher()
        self.jobs = jobs or LogJobQueue()
        self.events = events or EventBus()
        self.renderer = renderer or MessageRenderer()
        self.drafts = drafts or DatabaseDraftStore()

        self.pipeline = Pipeline(
            "create_message",
            [
                Contract(CreateMessageContract),
                Policy("no_silenced_user", self._no_silenced_user),
                Model("channel", self._fetch_channel),
                Policy("allowed_to_create_message_in_channel", self._allowed_to_create_message),
                Model("channel_membership", self._fetch_channel_membership),
                Model("reply_to", self._fetch_reply_to, optional=True),
                Policy("ensure_reply_consistency", self._ensure_reply_consistency),
                Model("thread", self._fetch_thread, optional=True),
                Policy("ensure_valid_thread_for_channel", self._ensure_valid_thread_for_channel),
                Policy("ensure_thread_matches_parent", self._ensure_thread_matches_parent),
                Model("uploads", self._fetch_uploads),
                Model("incoming_webhook", self._fetch_incoming_webhook, optional=True),
                Model("message", self._instantiate_message),
                Transaction(
                    (
                        Step("save_channel_membership", self._save_channel_membership),
                        Step("create_message", self._create_message),
                        Step("resolve_thread", self._resolve_thread),
                        Step("post_process_thread", self._post_process_thread),
                        Step("create_webhook_event", self._create_webhook_event),
                        Step("delete_drafts", self._delete_drafts),
                        Step("update_channel_last_message", self._update_channel_last_message),
                        Step("update_membership_last_read", self._update_membership_last_read),
                        Step("direct_message_autofollow", self._direct_message_autofollow),
                    )
                ),
                Step("publish_new_channel", self._publish_new_channel, deferred=True),
                Step("publish_thread_created", self._publish_thread_created, deferred=True),
                Step("publish_new_message", self._publish_new_message, deferred=True),
                Step("enqueue_processing", self._enqueue_processing, deferred=True),
                Step("trigger_message_created", self._trigger_message_created, deferred=True),
                Step("publish_user_tracking_state", self._publish_user_tracking_state, deferred=True),
            ],
            engine,
        )

    async def run(self, actor: User, **params: Any) -> PipelineResult:
        """Create a message as ``actor``.

        Args:
            actor: The user posting.
            **params: Raw input, see CreateMessageContract.

        Returns:
            PipelineResult; on success ``result["message"]`` is the created
            message and ``result.get("thread")`` its thread, if any.
        """
        result = await self.pipeline.run(
            params,
            actor=actor,
            guardian=Guardian(actor),
            config=self.config,
        )
        if result.success:
            message = result["message"]
            log.info(
                "message_created",
                message_id=message.id,
                channel_id=message.channel_id,
                thread_id=message.thread_id,
                user_id=actor.id,
            )
        return result

    # =========================================================================
    # Policies & Models
    # =========================================================================

    def _no_silenced_user(self, ctx: Context) -> bool:
        return not ctx["guardian"].is_silenced()

    def _fetch_channel(self, ctx: Context) -> Channel | None:
        row = ctx.conn.execute(
            select(channels).where(channels.c.id == ctx["contract"].channel_id)
        ).first()
        return row_to_model(row, Channel) if row else None

    def _allowed_to_create_message(self, ctx: Context) -> bool:
        guardian: Guardian = ctx["guardian"]
        channel: Channel = ctx["channel"]
        existing = MembershipSynchronizer(ctx.conn).get_channel_membership(
            guardian.user.id, channel.id
        )
        if existing is None and not guardian.can_join_channel(channel):
            return False
        return guardian.can_post_in_channel(channel, existing)

    def _fetch_channel_membership(self, ctx: Context) -> ChannelMembership:
        """Existing membership, or an unsaved one persisted in the transaction."""
        actor: User = ctx["actor"]
        channel: Channel = ctx["channel"]
        membership = MembershipSynchronizer(ctx.conn).get_channel_membership(actor.id, channel.id)
        if membership is None:
            return ChannelMembership(channel_id=channel.id, user_id=actor.id, following=True)
        return membership.model_copy(update={"following": True})

    def _fetch_reply_to(self, ctx: Context) -> Message | None:
        reply_to_id = ctx["contract"].in_reply_to_id
        if reply_to_id is None:
            return None
        message = ThreadResolver(ctx.conn).get_message(reply_to_id)
        if message is None or message.deleted_at is not None:
            raise NotFoundError("reply_to", in_reply_to_id=reply_to_id)
        return message

    def _ensure_reply_consistency(self, ctx: Context) -> bool:
        reply_to: Message | None = ctx["reply_to"]
        return reply_to is None or reply_to.channel_id == ctx["channel"].id

    def _fetch_thread(self, ctx: Context) -> Thread | None:
        thread_id = ctx["contract"].thread_id
        if thread_id is None:
            return None
        thread = ThreadResolver(ctx.conn).get_thread(thread_id)
        if thread is None:
            raise NotFoundError("thread", thread_id=thread_id)
        return thread

    def _ensure_valid_thread_for_channel(self, ctx: Context) -> bool:
        thread: Thread | None = ctx["thread"]
        return thread is None or thread.channel_id == ctx["channel"].id

    async def _ensure_thread_matches_parent(self, ctx: Context) -> bool:
        """A requested thread must be the reply target's eventual thread."""
        thread: Thread | None = ctx["thread"]
        reply_to: Message | None = ctx["reply_to"]
        if thread is None or reply_to is None:
            return True
        if reply_to.thread_id is not None and reply_to.thread_id != thread.id:
            return False

        resolver = ThreadResolver(ctx.conn, self.config.chat)
        root = await resolver.find_root(reply_to)
        canonical = resolver.get_thread_for_root(ctx["channel"].id, root.id)
        if canonical is not None:
            return canonical.id == thread.id
        return thread.original_message_id == root.id

    def _fetch_uploads(self, ctx: Context) -> list[Upload]:
        upload_ids = ctx["contract"].upload_ids
        if not upload_ids or not self.config.chat.allow_uploads:
            return []
        rows = ctx.conn.execute(
            select(uploads).where(
                uploads.c.id.in_(upload_ids),
                uploads.c.user_id == ctx["actor"].id,
            )
        ).all()
        found = [row_to_model(row, Upload) for row in rows]
        missing = set(upload_ids) - {u.id for u in found}
        if missing:
            raise NotFoundError("uploads", missing=sorted(missing))
        return found

    def _fetch_incoming_webhook(self, ctx: Context) -> IncomingWebhook | None:
        webhook_id = ctx["contract"].incoming_webhook_id
        if webhook_id is None:
            return None
        row = ctx.conn.execute(
            select(incoming_webhooks).where(
                incoming_webhooks.c.id == webhook_id,
                incoming_webhooks.c.channel_id == ctx["channel"].id,
            )
        ).first()
        if row is None:
            raise NotFoundError("incoming_webhook", incoming_webhook_id=webhook_id)
        return row_to_model(row, IncomingWebhook)

    def _instantiate_message(self, ctx: Context) -> Message:
        contract: CreateMessageContract = ctx["contract"]
        return Message(
            channel_id=ctx["channel"].id,
            user_id=ctx["actor"].id,
            in_reply_to_id=contract.in_reply_to_id,
            thread_id=contract.thread_id,
            message=contract.message,
        )

    # =========================================================================
    # Transactional Steps
    # =========================================================================

    async def _save_channel_membership(self, ctx: Context) -> None:
        ctx["channel_membership"] = await MembershipSynchronizer(ctx.conn).save_channel_membership(
            ctx["channel_membership"]
        )

    def _create_message(self, ctx: Context) -> None:
        message: Message = ctx["message"]
        message.cooked = self.renderer.cook(message.message)
        ctx.conn.execute(messages.insert().values(**model_to_dict(message)))

        for upload in ctx["uploads"]:
            ctx.conn.execute(
                message_uploads.insert().values(message_id=message.id, upload_id=upload.id)
            )

        usernames = self.renderer.extract_mentions(message.message)
        mentioned: list[str] = []
        if usernames:
            mentioned = list(
                ctx.conn.execute(
                    select(users.c.id).where(
                        users.c.username.in_(usernames),
                        users.c.id != message.user_id,
                    )
                ).scalars()
            )
            for user_id in mentioned:
                stmt = sqlite_insert(mentions).values(
                    id=generate_id(),
                    message_id=message.id,
                    user_id=user_id,
                    created_at=utcnow(),
                )
                ctx.conn.execute(stmt.on_conflict_do_nothing(index_elements=["message_id", "user_id"]))
        ctx["mentioned_user_ids"] = mentioned

    async def _resolve_thread(self, ctx: Context) -> None:
        message: Message = ctx["message"]
        contract: CreateMessageContract = ctx["contract"]
        resolution = await ThreadResolver(ctx.conn, self.config.chat).resolve(
            message,
            in_reply_to_id=contract.in_reply_to_id,
            requested_thread_id=contract.thread_id,
        )
        ctx["thread"] = resolution.thread if resolution else None
        ctx["thread_created"] = bool(resolution and resolution.created)
        ctx["in_thread"] = self._is_thread_reply(ctx["channel"], message, ctx["thread"])

    @staticmethod
    def _is_thread_reply(channel: Channel, message: Message, thread: Thread | None) -> bool:
        """Replies only live apart from the channel when threading is on."""
        return (
            thread is not None
            and channel.threading_enabled
            and message.id != thread.original_message_id
        )

    async def _post_process_thread(self, ctx: Context) -> None:
        thread: Thread | None = ctx["thread"]
        if thread is None:
            return
        await MembershipSynchronizer(ctx.conn).sync_thread_participants(
            thread,
            ctx["actor"].id,
            ctx["message"],
            advance_original_author=self.config.chat.mark_reply_read_for_original_author,
        )

    def _create_webhook_event(self, ctx: Context) -> None:
        webhook: IncomingWebhook | None = ctx["incoming_webhook"]
        if webhook is None:
            return
        ctx.conn.execute(
            webhook_events.insert().values(
                id=generate_id(),
                message_id=ctx["message"].id,
                incoming_webhook_id=webhook.id,
                username=webhook.username,
                created_at=utcnow(),
            )
        )

    async def _delete_drafts(self, ctx: Context) -> None:
        await self.drafts.delete_for(ctx.conn, ctx["actor"].id, ctx["channel"].id)

    def _update_channel_last_message(self, ctx: Context) -> None:
        if ctx["in_thread"]:
            return
        channel: Channel = ctx["channel"]
        message: Message = ctx["message"]
        ctx.conn.execute(
            update(channels)
            .where(channels.c.id == channel.id)
            .values(last_message_id=message.id, last_message_sent_at=message.created_at)
        )
        ctx["channel"] = channel.model_copy(
            update={"last_message_id": message.id, "last_message_sent_at": message.created_at}
        )

    async def _update_membership_last_read(self, ctx: Context) -> None:
        if ctx["in_thread"] and not self.config.chat.advance_channel_read_on_thread_reply:
            return
        ctx["channel_membership"] = await MembershipSynchronizer(ctx.conn).touch_channel_read(
            ctx["actor"].id, ctx["channel"].id, ctx["message"].id
        )

    async def _direct_message_autofollow(self, ctx: Context) -> None:
        """Re-open a direct message for members who allow hearing from the actor."""
        channel: Channel = ctx["channel"]
        actor: User = ctx["actor"]
        ctx["autofollowed_user_ids"] = []
        if not channel.is_direct_message:
            return

        sync = MembershipSynchronizer(ctx.conn)
        candidates = [uid for uid in sync.unfollowed_member_ids(channel.id) if uid != actor.id]
        allowed = await Screener(ctx.conn).allowing_actor_communication(actor, candidates)
        if not allowed:
            return

        await sync.follow_channel(channel.id, allowed)
        ctx["autofollowed_user_ids"] = sorted(allowed)
        log.info("direct_message_autofollow", channel_id=channel.id, user_ids=sorted(allowed))

    # =========================================================================
    # After Commit
    # =========================================================================

    async def _publish_new_channel(self, ctx: Context) -> None:
        user_ids = ctx.get("autofollowed_user_ids")
        if user_ids:
            await self.publisher.publish_new_channel(ctx["channel"], user_ids)

    async def _publish_thread_created(self, ctx: Context) -> None:
        thread: Thread | None = ctx.get("thread")
        channel: Channel = ctx["channel"]
        if thread is None or not ctx.get("thread_created") or not channel.threading_enabled:
            return
        row = ctx.conn.execute(
            select(messages).where(messages.c.id == thread.original_message_id)
        ).first()
        original_message = row_to_model(row, Message)
        await self.publisher.publish_thread_created(
            channel, original_message, thread.id, ctx["contract"].staged_thread_id
        )

    async def _publish_new_message(self, ctx: Context) -> None:
        contract: CreateMessageContract = ctx["contract"]
        await self.publisher.publish_new(
            ctx["channel"],
            ctx["message"],
            contract.staged_id,
            staged_thread_id=contract.staged_thread_id,
        )

    async def _enqueue_processing(self, ctx: Context) -> None:
        await self.jobs.enqueue("process_message", message_id=ctx["message"].id)

    async def _trigger_message_created(self, ctx: Context) -> None:
        await self.events.trigger("message_created", ctx["message"], ctx["channel"], ctx["actor"])

    async def _publish_user_tracking_state(self, ctx: Context) -> None:
        message: Message = ctx["message"]
        thread_id = message.thread_id if ctx["in_thread"] else None
        await self.publisher.publish_user_tracking_state(
            ctx["actor"], ctx["channel"], message.id, thread_id=thread_id
        )

