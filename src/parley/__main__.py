"""CLI entrypoint for running parley as a module."""

from parley.cli import cli
from parley.logging import setup_logging

if __name__ == "__main__":
    setup_logging()
    cli()
