"""Parley - threaded chat message ingestion."""

__version__ = "0.1.0"
