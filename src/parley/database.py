"""Database schema and connection management for Parley.

Uses SQLAlchemy Core (not ORM) for explicit SQL control. Uniqueness that the
ingestion pipeline relies on for race safety lives in the indexes here, not in
read-then-write checks.
"""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Engine
from ulid import ULID

from parley.config import Config

# Shared metadata for all tables
metadata = MetaData()


# =============================================================================
# Users
# =============================================================================

users = Table(
    "users",
    metadata,
    Column("id", String, primary_key=True),  # ULID
    Column("username", String, nullable=False),
    Column("is_staff", Boolean, nullable=False, default=False),
    Column("allow_direct_messages", Boolean, nullable=False, default=True),
    Column("silenced_until", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Index("ix_users_username", "username", unique=True),
)

user_relationships = Table(
    "user_relationships",
    metadata,
    Column("user_id", String, ForeignKey("users.id"), nullable=False),
    Column("target_user_id", String, ForeignKey("users.id"), nullable=False),
    Column("kind", String, nullable=False),  # mute, ignore, block
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Index("ix_user_relationships_unique", "user_id", "target_user_id", "kind", unique=True),
    Index("ix_user_relationships_target", "target_user_id"),
)


# =============================================================================
# Channels
# =============================================================================

channels = Table(
    "channels",
    metadata,
    Column("id", String, primary_key=True),  # ULID
    Column("name", String, nullable=True),
    Column("kind", String, nullable=False),  # category, direct_message
    Column("status", String, nullable=False, default="open"),  # open, read_only, closed, archived
    Column("threading_enabled", Boolean, nullable=False, default=False),
    # No FK: channels and messages reference each other
    Column("last_message_id", String, nullable=True),
    Column("last_message_sent_at", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
)

channel_memberships = Table(
    "channel_memberships",
    metadata,
    Column("id", String, primary_key=True),  # ULID
    Column("channel_id", String, ForeignKey("channels.id"), nullable=False),
    Column("user_id", String, ForeignKey("users.id"), nullable=False),
    Column("following", Boolean, nullable=False, default=False),
    Column("last_read_message_id", String, nullable=True),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Index("ix_channel_memberships_channel_user", "channel_id", "user_id", unique=True),
)


# =============================================================================
# Messages & Threads
# =============================================================================

messages = Table(
    "messages",
    metadata,
    Column("id", String, primary_key=True),  # ULID
    Column("channel_id", String, ForeignKey("channels.id"), nullable=False),
    Column("user_id", String, ForeignKey("users.id"), nullable=False),
    Column("in_reply_to_id", String, ForeignKey("messages.id"), nullable=True),
    Column("thread_id", String, ForeignKey("threads.id"), nullable=True),
    Column("message", Text, nullable=False),
    Column("cooked", Text, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("deleted_at", DateTime, nullable=True),  # Soft delete tombstone
    Index("ix_messages_channel_created", "channel_id", "created_at"),
    Index("ix_messages_in_reply_to", "in_reply_to_id"),
    Index("ix_messages_thread", "thread_id"),
)

threads = Table(
    "threads",
    metadata,
    Column("id", String, primary_key=True),  # ULID
    Column("channel_id", String, ForeignKey("channels.id"), nullable=False),
    Column("original_message_id", String, nullable=False),
    Column("original_message_user_id", String, ForeignKey("users.id"), nullable=False),
    Column("last_message_id", String, nullable=True),
    Column("replies_count", Integer, nullable=False, default=0),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    # One thread per conversation root
    Index("ix_threads_channel_original", "channel_id", "original_message_id", unique=True),
    CheckConstraint("replies_count >= 0", name="ck_threads_replies_count"),
)

thread_memberships = Table(
    "thread_memberships",
    metadata,
    Column("id", String, primary_key=True),  # ULID
    Column("thread_id", String, ForeignKey("threads.id"), nullable=False),
    Column("user_id", String, ForeignKey("users.id"), nullable=False),
    Column("last_read_message_id", String, nullable=True),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Index("ix_thread_memberships_thread_user", "thread_id", "user_id", unique=True),
)

mentions = Table(
    "mentions",
    metadata,
    Column("id", String, primary_key=True),  # ULID
    Column("message_id", String, ForeignKey("messages.id"), nullable=False),
    Column("user_id", String, ForeignKey("users.id"), nullable=False),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Index("ix_mentions_message_user", "message_id", "user_id", unique=True),
)


# =============================================================================
# Attachments, Drafts, Webhooks
# =============================================================================

uploads = Table(
    "uploads",
    metadata,
    Column("id", String, primary_key=True),  # ULID
    Column("user_id", String, ForeignKey("users.id"), nullable=False),
    Column("url", String, nullable=False),
    Column("filename", String, nullable=True),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
)

message_uploads = Table(
    "message_uploads",
    metadata,
    Column("message_id", String, ForeignKey("messages.id"), nullable=False),
    Column("upload_id", String, ForeignKey("uploads.id"), nullable=False),
    Index("ix_message_uploads_unique", "message_id", "upload_id", unique=True),
)

drafts = Table(
    "drafts",
    metadata,
    Column("id", String, primary_key=True),  # ULID
    Column("user_id", String, ForeignKey("users.id"), nullable=False),
    Column("channel_id", String, ForeignKey("channels.id"), nullable=False),
    Column("data", Text, nullable=False),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Index("ix_drafts_user_channel", "user_id", "channel_id"),
)

incoming_webhooks = Table(
    "incoming_webhooks",
    metadata,
    Column("id", String, primary_key=True),  # ULID
    Column("channel_id", String, ForeignKey("channels.id"), nullable=False),
    Column("name", String, nullable=False),
    Column("username", String, nullable=True),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
)

webhook_events = Table(
    "webhook_events",
    metadata,
    Column("id", String, primary_key=True),  # ULID
    Column("message_id", String, ForeignKey("messages.id"), nullable=False),
    Column("incoming_webhook_id", String, ForeignKey("incoming_webhooks.id"), nullable=False),
    Column("username", String, nullable=True),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Index("ix_webhook_events_message", "message_id"),
)


# =============================================================================
# Schema Version (for migrations)
# =============================================================================

schema_version = Table(
    "_schema_version",
    metadata,
    Column("version", Integer, primary_key=True),
    Column("applied_at", DateTime, nullable=False),
    Column("description", String, nullable=True),
)


# =============================================================================
# Helper Functions
# =============================================================================


def generate_id() -> str:
    """Generate a new ULID for entities."""
    return str(ULID())


def get_engine(config: Config) -> Engine:
    """Create SQLAlchemy engine from config.

    Args:
        config: Application configuration.

    Returns:
        SQLAlchemy Engine instance.
    """
    db_path = config.database_path

    # Ensure data directory exists
    db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        f"sqlite:///{db_path}",
        echo=config.log_level == "DEBUG",
        connect_args={
            "timeout": config.database.busy_timeout_seconds,
            "check_same_thread": False,
        },
    )

    # SQLite enforces foreign keys per connection
    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    # Enable WAL mode for better concurrency
    with engine.connect() as conn:
        conn.execute(text("PRAGMA journal_mode=WAL"))
        conn.commit()

    return engine


def create_tables(engine: Engine) -> None:
    """Create all tables in the database.

    Args:
        engine: SQLAlchemy Engine instance.
    """
    metadata.create_all(engine)
