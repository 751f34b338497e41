"""Initial schema - create all tables for message ingestion.

Creates users and their relationships, channels and memberships, messages,
threads and thread memberships, mentions, uploads, drafts and webhooks.
"""

from sqlalchemy import inspect

from parley.database import create_tables

VERSION = 1
DESCRIPTION = "Initial chat schema"


def upgrade(engine):
    """Create all tables defined in the schema."""
    create_tables(engine)


def check(engine) -> bool:
    """Check if this migration has been applied.

    Returns True if the core tables exist.
    """
    inspector = inspect(engine)
    table_names = set(inspector.get_table_names())

    required = {"users", "channels", "messages", "threads", "thread_memberships"}
    return required.issubset(table_names)
