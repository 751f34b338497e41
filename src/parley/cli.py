"""Command-line interface for Parley."""

import asyncio
from pathlib import Path

import click

from parley import __version__
from parley.config import Config
from parley.logging import get_logger, setup_logging

log = get_logger("cli")


@click.group()
@click.option(
    "-c",
    "--config-file",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to configuration file.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Set logging level (overrides config).",
)
@click.option(
    "--log-json/--no-log-json",
    default=None,
    help="Output logs as JSON or human-readable format (overrides config).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_file: Path | None,
    log_level: str | None,
    log_json: bool | None,
) -> None:
    """Parley - threaded chat message ingestion.

    Stores channel messages, groups replies into threads, and keeps read
    state consistent.
    """
    ctx.ensure_object(dict)

    config = Config.load_or_default(config_file)
    ctx.obj["config"] = config
    ctx.obj["config_file"] = config_file

    # CLI overrides config
    effective_log_level = log_level or config.log_level
    effective_log_json = log_json if log_json is not None else config.log_json
    setup_logging(json_output=effective_log_json, level=effective_log_level)


@cli.command()
def version() -> None:
    """Print version information."""
    click.echo(f"parley {__version__}")


@cli.group()
def db() -> None:
    """Database management commands."""


@db.command(name="status")
@click.pass_context
def db_status(ctx: click.Context) -> None:
    """Show database migration status."""
    from parley.database import get_engine
    from parley.migrations import get_current_version, get_migrations, get_pending_migrations

    config = ctx.obj["config"]
    engine = get_engine(config)

    click.echo(f"Database: {config.database_path}")
    click.echo(f"Current version: {get_current_version(engine)}")
    click.echo(f"Available migrations: {len(get_migrations())}")

    pending = get_pending_migrations(engine)
    if not pending:
        click.echo("No pending migrations")
        return

    click.echo(f"Pending migrations: {len(pending)}")
    for version, module in pending:
        click.echo(f"  {version}: {getattr(module, 'DESCRIPTION', 'No description')}")


@db.command(name="migrate")
@click.option(
    "--target",
    type=int,
    default=None,
    help="Target version (default: latest).",
)
@click.pass_context
def db_migrate(ctx: click.Context, target: int | None) -> None:
    """Apply pending database migrations."""
    from parley.database import get_engine
    from parley.migrations import get_current_version, migrate

    engine = get_engine(ctx.obj["config"])

    before = get_current_version(engine)
    after = migrate(engine, target_version=target)

    if before == after:
        click.echo(f"Database already at version {after}")
    else:
        click.echo(f"Migrated from version {before} to {after}")


@cli.group()
def config() -> None:
    """Configuration management commands."""


@config.command(name="check")
@click.option(
    "-c",
    "--config-file",
    type=click.Path(exists=True, path_type=Path),
    default="config.yaml",
    help="Path to configuration file.",
)
def config_check(config_file: Path) -> None:
    """Validate configuration file."""
    try:
        cfg = Config.load(config_file)
    except Exception as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Configuration valid: {config_file}")
    click.echo(f"  Data directory: {cfg.data_dir}")
    click.echo(f"  Database path: {cfg.database_path}")
    click.echo(f"  Log level: {cfg.log_level}")
    click.echo(f"  Max message length: {cfg.chat.max_message_length}")
    click.echo(f"  Uploads allowed: {'yes' if cfg.chat.allow_uploads else 'no'}")


@cli.group()
def threads() -> None:
    """Thread maintenance commands."""


@threads.command(name="repair")
@click.option("--channel", "channel_id", default=None, help="Only repair threads in this channel.")
@click.pass_context
def threads_repair(ctx: click.Context, channel_id: str | None) -> None:
    """Attach orphaned reply-chain messages to their threads.

    Walks every thread's reply chain, fills missing thread references and
    recomputes reply counts. Safe to run repeatedly.
    """
    from sqlalchemy import select

    from parley.database import get_engine, threads as threads_table
    from parley.migrations import migrate
    from parley.models import Thread, row_to_model
    from parley.threads import ThreadResolver

    config = ctx.obj["config"]
    engine = get_engine(config)
    migrate(engine)

    log.info("threads_repair_invoked", channel_id=channel_id)

    async def run() -> tuple[int, int]:
        with engine.begin() as conn:
            query = select(threads_table).order_by(threads_table.c.created_at)
            if channel_id is not None:
                query = query.where(threads_table.c.channel_id == channel_id)
            found = [row_to_model(row, Thread) for row in conn.execute(query).all()]

            resolver = ThreadResolver(conn, config.chat)
            attached = 0
            for thread in found:
                attached += await resolver.backfill(thread)
                await resolver.refresh_replies_count(thread)
            return len(found), attached

    checked, attached = asyncio.run(run())
    click.echo(f"Checked {checked} threads, attached {attached} messages")
