"""Database migrations for Parley.

Migrations are forward-only modules named NNN_description.py, each defining:

    VERSION = N            # matches the file prefix
    DESCRIPTION = "..."

    def upgrade(engine): ...
    def check(engine) -> bool: ...   # True if the change is already present
"""

from parley.migrations.runner import (
    get_current_version,
    get_migrations,
    get_pending_migrations,
    migrate,
)

__all__ = ["get_current_version", "get_migrations", "get_pending_migrations", "migrate"]
