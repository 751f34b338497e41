"""Migration runner for Parley database schema evolution.

Discovers numbered migration modules, tracks applied versions in
``_schema_version``, and applies pending ones in order. A migration whose
``check()`` reports the change already present is recorded without running.
"""

from __future__ import annotations

import importlib
from datetime import datetime, timezone
from pathlib import Path
from types import ModuleType

from sqlalchemy import func, inspect, select
from sqlalchemy.engine import Engine

from parley.database import schema_version
from parley.logging import get_logger

log = get_logger("migrations")

PACKAGE = "parley.migrations"


def get_migrations() -> list[tuple[int, ModuleType]]:
    """Discover all migration modules in this package.

    Returns:
        List of (version, module) tuples, sorted by version.

    Raises:
        ValueError: If two modules declare the same version.
    """
    migrations: dict[int, ModuleType] = {}

    for path in sorted(Path(__file__).parent.glob("[0-9][0-9][0-9]_*.py")):
        module = importlib.import_module(f"{PACKAGE}.{path.stem}")
        version = getattr(module, "VERSION", None)
        if version is None:
            log.warning("migration_missing_version", file=path.stem)
            continue
        if version in migrations:
            raise ValueError(f"Duplicate migration version {version}: {path.stem}")
        migrations[version] = module

    return sorted(migrations.items())


def get_current_version(engine: Engine) -> int:
    """Get current schema version, or 0 if nothing was applied."""
    if schema_version.name not in inspect(engine).get_table_names():
        return 0

    with engine.connect() as conn:
        return conn.execute(select(func.max(schema_version.c.version))).scalar() or 0


def get_pending_migrations(engine: Engine) -> list[tuple[int, ModuleType]]:
    """Migrations newer than the current version."""
    current = get_current_version(engine)
    return [(v, m) for v, m in get_migrations() if v > current]


def migrate(engine: Engine, target_version: int | None = None) -> int:
    """Apply pending migrations up to ``target_version``.

    Args:
        engine: SQLAlchemy engine.
        target_version: Maximum version to apply. If None, apply all.

    Returns:
        Current version after migrating.
    """
    schema_version.create(engine, checkfirst=True)
    applied = 0

    for version, module in get_pending_migrations(engine):
        if target_version is not None and version > target_version:
            break

        description = getattr(module, "DESCRIPTION", "No description")
        check = getattr(module, "check", None)

        if check is not None and check(engine):
            log.info("migration_already_present", version=version)
        else:
            log.info("applying_migration", version=version, description=description)
            try:
                module.upgrade(engine)
            except Exception as e:
                log.error("migration_failed", version=version, error=str(e))
                raise

        with engine.begin() as conn:
            conn.execute(
                schema_version.insert().values(
                    version=version,
                    applied_at=datetime.now(timezone.utc),
                    description=description,
                )
            )
        applied += 1

    if applied:
        log.info("migrations_complete", count=applied)
    else:
        log.debug("no_pending_migrations")

    return get_current_version(engine)
