"""Forward-only migration runner for the tracker database schema."""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS projects (
    id              TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    name            TEXT NOT NULL,
    description     TEXT NOT NULL DEFAULT '',
    domain          TEXT NOT NULL DEFAULT '',
    goals           TEXT NOT NULL DEFAULT '[]',
    interests       TEXT NOT NULL DEFAULT '[]',
    progress        TEXT NOT NULL DEFAULT 'Not Started',
    milestones      TEXT NOT NULL DEFAULT '[]',
    last_updated    TEXT,
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_projects_user ON projects(user_id);

CREATE TABLE IF NOT EXISTS discoveries (
    id                TEXT PRIMARY KEY,
    project_id        TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    title             TEXT NOT NULL,
    description       TEXT NOT NULL DEFAULT '',
    source            TEXT NOT NULL,
    relevance_score   INTEGER NOT NULL DEFAULT 5,
    categories        TEXT NOT NULL DEFAULT '[]',
    type              TEXT NOT NULL DEFAULT 'Other',
    discovered_at     TEXT NOT NULL,
    publication_date  TEXT,
    viewed            INTEGER NOT NULL DEFAULT 0,
    viewed_at         TEXT,
    hidden            INTEGER NOT NULL DEFAULT 0,
    presented         INTEGER NOT NULL DEFAULT 0,
    feedback          TEXT NOT NULL DEFAULT '{}',
    search_context    TEXT NOT NULL DEFAULT '{}',
    UNIQUE (project_id, source)
);

CREATE INDEX IF NOT EXISTS idx_discoveries_score
    ON discoveries(project_id, relevance_score DESC, discovered_at DESC);

CREATE TABLE IF NOT EXISTS project_contexts (
    id                   TEXT PRIMARY KEY,
    project_id           TEXT NOT NULL UNIQUE REFERENCES projects(id) ON DELETE CASCADE,
    current_phase        TEXT NOT NULL DEFAULT 'initial',
    progress_percentage  INTEGER NOT NULL DEFAULT 0,
    last_updated         TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS context_entries (
    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
    id          TEXT NOT NULL UNIQUE,
    context_id  TEXT NOT NULL REFERENCES project_contexts(id) ON DELETE CASCADE,
    type        TEXT NOT NULL,
    content     TEXT NOT NULL,
    metadata    TEXT NOT NULL DEFAULT '{}',
    timestamp   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_context_entries_context ON context_entries(context_id, seq);

CREATE TABLE IF NOT EXISTS schedules (
    id          TEXT PRIMARY KEY,
    project_id  TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    task_type   TEXT NOT NULL,
    frequency   TEXT NOT NULL,
    last_run    TEXT,
    next_run    TEXT NOT NULL,
    active      INTEGER NOT NULL DEFAULT 1,
    parameters  TEXT NOT NULL DEFAULT '{}',
    created_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_schedules_due ON schedules(active, next_run);
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            conn.commit()
