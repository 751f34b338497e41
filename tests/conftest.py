"""Pytest configuration and shared fixtures."""

from datetime import timedelta
from pathlib import Path

import pytest
import structlog
from click.testing import CliRunner
from sqlalchemy import func, select

from parley.config import Config
from parley.database import (
    channel_memberships,
    channels,
    get_engine,
    messages,
    threads,
    user_relationships,
    users,
)
from parley.migrations import migrate
from parley.models import (
    Channel,
    ChannelKind,
    ChannelMembership,
    Message,
    Thread,
    User,
    model_to_dict,
    row_to_model,
    utcnow,
)


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop logging configured by CLI invocations, which binds a captured stream."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def cli_runner() -> CliRunner:
    """Provide a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def temp_data_dir(tmp_path):
    """Provide a temporary data directory for tests."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Create a test configuration with temp database."""
    return Config(data_dir=tmp_path, log_level="INFO")


@pytest.fixture
def engine(test_config: Config):
    """Create a migrated test database engine."""
    eng = get_engine(test_config)
    migrate(eng)
    yield eng
    eng.dispose()


# =============================================================================
# Row factories
# =============================================================================


@pytest.fixture
def make_user(engine):
    """Insert a user and return its model."""

    def _make(username: str, **kwargs) -> User:
        user = User(username=username, **kwargs)
        with engine.begin() as conn:
            conn.execute(users.insert().values(**model_to_dict(user)))
        return user

    return _make


@pytest.fixture
def make_channel(engine):
    """Insert a channel and return its model."""

    def _make(name: str = "general", **kwargs) -> Channel:
        channel = Channel(name=name, **kwargs)
        with engine.begin() as conn:
            conn.execute(channels.insert().values(**model_to_dict(channel)))
        return channel

    return _make


@pytest.fixture
def make_dm_channel(make_channel):
    """Insert a direct-message channel."""

    def _make(**kwargs) -> Channel:
        return make_channel(name=None, kind=ChannelKind.DIRECT_MESSAGE, **kwargs)

    return _make


@pytest.fixture
def add_member(engine):
    """Insert a channel membership."""

    def _add(channel: Channel, user: User, following: bool = True, **kwargs) -> ChannelMembership:
        membership = ChannelMembership(
            channel_id=channel.id, user_id=user.id, following=following, **kwargs
        )
        with engine.begin() as conn:
            conn.execute(channel_memberships.insert().values(**model_to_dict(membership)))
        return membership

    return _add


@pytest.fixture
def make_message(engine):
    """Insert a message directly, bypassing the ingestion pipeline.

    Each message is stamped one second after the previous one so creation
    order is stable.
    """
    clock = {"now": utcnow() - timedelta(hours=1)}

    def _make(
        channel: Channel,
        user: User,
        body: str = "hello",
        in_reply_to: Message | None = None,
        thread_id: str | None = None,
    ) -> Message:
        clock["now"] += timedelta(seconds=1)
        message = Message(
            channel_id=channel.id,
            user_id=user.id,
            in_reply_to_id=in_reply_to.id if in_reply_to else None,
            thread_id=thread_id,
            message=body,
            created_at=clock["now"],
        )
        with engine.begin() as conn:
            conn.execute(messages.insert().values(**model_to_dict(message)))
        return message

    return _make


@pytest.fixture
def make_thread(engine):
    """Insert a thread for an existing root message."""

    def _make(original_message: Message, **kwargs) -> Thread:
        thread = Thread(
            channel_id=original_message.channel_id,
            original_message_id=original_message.id,
            original_message_user_id=original_message.user_id,
            **kwargs,
        )
        with engine.begin() as conn:
            conn.execute(threads.insert().values(**model_to_dict(thread)))
        return thread

    return _make


@pytest.fixture
def relate(engine):
    """Record that ``user`` mutes/ignores/blocks ``target``."""

    def _relate(user: User, target: User, kind: str = "mute") -> None:
        with engine.begin() as conn:
            conn.execute(
                user_relationships.insert().values(
                    user_id=user.id, target_user_id=target.id, kind=kind, created_at=utcnow()
                )
            )

    return _relate


# =============================================================================
# Readers
# =============================================================================


@pytest.fixture
def fetch_message(engine):
    """Re-read a message row."""

    def _fetch(message_id: str) -> Message:
        with engine.connect() as conn:
            row = conn.execute(select(messages).where(messages.c.id == message_id)).first()
        return row_to_model(row, Message)

    return _fetch


@pytest.fixture
def fetch_thread(engine):
    """Re-read a thread row."""

    def _fetch(thread_id: str) -> Thread:
        with engine.connect() as conn:
            row = conn.execute(select(threads).where(threads.c.id == thread_id)).first()
        return row_to_model(row, Thread)

    return _fetch


@pytest.fixture
def count_rows(engine):
    """Count rows in a table, optionally filtered."""

    def _count(table, *where) -> int:
        query = select(func.count()).select_from(table)
        if where:
            query = query.where(*where)
        with engine.connect() as conn:
            return conn.execute(query).scalar()

    return _count
