"""Schema version bookkeeping."""

from __future__ import annotations

import sqlite3

from tracker.db.migrations import MIGRATIONS, run_migrations
from tracker.log import get_logger

logger = get_logger(__name__)

CURRENT_VERSION = MIGRATIONS[-1][0]


def schema_version(conn: sqlite3.Connection) -> int:
    """Highest applied migration, 0 for a database never initialized."""
    table = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'schema_version'"
    ).fetchone()
    if table is None:
        return 0
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] or 0


def initialize(conn: sqlite3.Connection) -> int:
    """Bring the schema up to CURRENT_VERSION (idempotent) and return it."""
    before = schema_version(conn)
    run_migrations(conn)
    if before < CURRENT_VERSION:
        logger.info("Database schema migrated from v%d to v%d", before, CURRENT_VERSION)
    return CURRENT_VERSION
