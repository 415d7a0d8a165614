"""SQLite connection layer."""

from __future__ import annotations

import sqlite3
from pathlib import Path

# Seconds a writer waits on a locked database before raising.
_BUSY_TIMEOUT = 30


class Database:
    """The tracker database file: WAL journal, foreign keys enforced.

    Args:
        db_path: Database file; it and its parent directory are created on
            first connect.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Open a new connection with rows addressable by column name.

        ``check_same_thread`` is off so a connection opened by the CLI can be
        handed to the job worker; each job still opens its own connection.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=_BUSY_TIMEOUT, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    def __enter__(self) -> sqlite3.Connection:
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
