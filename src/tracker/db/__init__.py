"""Tracker database layer."""

from tracker.db.connection import Database
from tracker.db.migrations import MIGRATIONS, run_migrations
from tracker.db.repository import Repository
from tracker.db.schema import initialize

__all__ = [
    "Database",
    "Repository",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
]
