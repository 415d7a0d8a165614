"""Repository pattern for all tracker database operations.

Single interface for: projects, discoveries, project contexts (and their
append-only entries), and schedules. List and map fields are stored as JSON.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Sequence

from tracker.db.models import (
    ContextEntry,
    Discovery,
    Milestone,
    Project,
    ProjectContext,
    Schedule,
    UserFeedback,
)
from tracker.errors import NotFoundError

# Filter name -> WHERE fragment. Feedback filters read the JSON column.
_DISCOVERY_FILTERS: dict[str, str] = {
    "new": "viewed = 0 AND hidden = 0",
    "viewed": "viewed = 1 AND hidden = 0",
    "hidden": "hidden = 1",
    "useful": "json_extract(feedback, '$.useful') = 1",
    "notUseful": "json_extract(feedback, '$.not_useful') = 1",
    "all": "hidden = 0",
}

_DISCOVERY_SORTS: dict[str, str] = {
    "relevance": "relevance_score DESC, discovered_at DESC",
    "date": "discovered_at DESC",
    "feedback": "json_extract(feedback, '$.relevance') DESC, relevance_score DESC",
}

BULK_FILTERS: tuple[str, ...] = ("new", "viewed", "all")
BULK_ACTIONS: tuple[str, ...] = ("markViewed", "markUnviewed", "hide", "unhide")

_DISCOVERY_COLUMNS = (
    "id, project_id, title, description, source, relevance_score, categories, type, "
    "discovered_at, publication_date, viewed, viewed_at, hidden, presented, feedback, "
    "search_context"
)


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string (the format every timestamp column uses)."""
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


class Repository:
    """Data access layer for all tracker database entities.

    Wraps an open sqlite3.Connection and provides typed methods for projects,
    discoveries, contexts and schedules. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with the schema initialised
                (see tracker.db.schema.initialize).
        """
        self._conn = conn

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def add_project(self, project: Project) -> Project:
        """Insert a new project. Fills ``created_at`` when unset.

        Args:
            project: Project dataclass instance to persist.

        Returns:
            The stored project.
        """
        if project.created_at is None:
            project.created_at = now_iso()
        self._conn.execute(
            """
            INSERT INTO projects (id, user_id, name, description, domain, goals,
                                  interests, progress, milestones, last_updated, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                project.id,
                project.user_id,
                project.name,
                project.description,
                project.domain,
                json.dumps(project.goals),
                json.dumps(project.interests),
                project.progress,
                json.dumps([asdict(m) for m in project.milestones]),
                project.last_updated,
                project.created_at,
            ),
        )
        self._conn.commit()
        return project

    def get_project(self, project_id: str) -> Project | None:
        """Return a project by ID, or None if not found."""
        row = self._conn.execute(
            "SELECT * FROM projects WHERE id = ?", (project_id,)
        ).fetchone()
        return _row_to_project(row) if row else None

    def list_projects(self, user_id: str | None = None) -> list[Project]:
        """Return projects ordered by creation time, optionally for one user."""
        if user_id is None:
            rows = self._conn.execute(
                "SELECT * FROM projects ORDER BY created_at"
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM projects WHERE user_id = ? ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [_row_to_project(r) for r in rows]

    def update_project(self, project: Project, *, commit: bool = True) -> None:
        """Persist every mutable field of *project*."""
        self._conn.execute(
            """
            UPDATE projects SET name = ?, description = ?, domain = ?, goals = ?,
                   interests = ?, progress = ?, milestones = ?, last_updated = ?
            WHERE id = ?
            """,
            (
                project.name,
                project.description,
                project.domain,
                json.dumps(project.goals),
                json.dumps(project.interests),
                project.progress,
                json.dumps([asdict(m) for m in project.milestones]),
                project.last_updated,
                project.id,
            ),
        )
        if commit:
            self._conn.commit()

    def delete_project(self, project_id: str) -> bool:
        """Delete a project; discoveries, context and schedules cascade.

        Returns:
            True if a row was deleted.
        """
        cur = self._conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        self._conn.commit()
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Discoveries
    # ------------------------------------------------------------------

    def upsert_discovery(self, discovery: Discovery) -> tuple[Discovery, bool]:
        """Insert *discovery* or merge it into the existing (project, source) row.

        An existing row only takes the new relevance_score and categories when
        the new score is strictly higher; every other field is left untouched.
        The statement is a single atomic ``INSERT ... ON CONFLICT``.

        Returns:
            (stored discovery, True if a new row was created).
        """
        candidate_id = discovery.id or new_id()
        self._conn.execute(
            """
            INSERT INTO discoveries (id, project_id, title, description, source,
                                     relevance_score, categories, type, discovered_at,
                                     publication_date, search_context)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(project_id, source) DO UPDATE SET
                relevance_score = excluded.relevance_score,
                categories = excluded.categories
            WHERE excluded.relevance_score > discoveries.relevance_score
            """,
            (
                candidate_id,
                discovery.project_id,
                discovery.title,
                discovery.description,
                discovery.source,
                discovery.relevance_score,
                json.dumps(discovery.categories),
                discovery.type,
                discovery.discovered_at or now_iso(),
                discovery.publication_date,
                json.dumps(discovery.search_context),
            ),
        )
        self._conn.commit()
        row = self._conn.execute(
            f"SELECT {_DISCOVERY_COLUMNS} FROM discoveries WHERE project_id = ? AND source = ?",
            (discovery.project_id, discovery.source),
        ).fetchone()
        stored = _row_to_discovery(row)
        return stored, stored.id == candidate_id

    def get_discovery(self, discovery_id: str) -> Discovery | None:
        """Return a discovery by ID, or None if not found."""
        row = self._conn.execute(
            f"SELECT {_DISCOVERY_COLUMNS} FROM discoveries WHERE id = ?",
            (discovery_id,),
        ).fetchone()
        return _row_to_discovery(row) if row else None

    def list_discoveries(
        self,
        project_id: str,
        filter: str = "all",
        sort: str = "relevance",
        limit: int | None = 50,
    ) -> list[Discovery]:
        """Return a project's discoveries.

        Args:
            project_id: Owning project.
            filter: One of new, viewed, hidden, useful, notUseful, all.
                Unknown names behave like ``all`` (hidden excluded).
            sort: One of relevance, date, feedback. Unknown names sort by relevance.
            limit: Maximum rows, or None for all.
        """
        where = _DISCOVERY_FILTERS.get(filter, _DISCOVERY_FILTERS["all"])
        order = _DISCOVERY_SORTS.get(sort, _DISCOVERY_SORTS["relevance"])
        sql = (
            f"SELECT {_DISCOVERY_COLUMNS} FROM discoveries "
            f"WHERE project_id = ? AND {where} ORDER BY {order}"
        )
        params: list[Any] = [project_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [_row_to_discovery(r) for r in self._conn.execute(sql, params).fetchall()]

    def recent_discoveries(self, project_id: str, limit: int = 5) -> list[Discovery]:
        """Most recently discovered items, hidden ones included."""
        rows = self._conn.execute(
            f"SELECT {_DISCOVERY_COLUMNS} FROM discoveries WHERE project_id = ? "
            "ORDER BY discovered_at DESC LIMIT ?",
            (project_id, limit),
        ).fetchall()
        return [_row_to_discovery(r) for r in rows]

    def unpresented_discoveries(self, project_id: str, limit: int = 10) -> list[Discovery]:
        """Top-scoring discoveries not yet included in a summary."""
        rows = self._conn.execute(
            f"SELECT {_DISCOVERY_COLUMNS} FROM discoveries "
            "WHERE project_id = ? AND presented = 0 "
            "ORDER BY relevance_score DESC, discovered_at DESC LIMIT ?",
            (project_id, limit),
        ).fetchall()
        return [_row_to_discovery(r) for r in rows]

    def count_discoveries(self, project_id: str) -> dict[str, int]:
        """Return counts per filter name plus ``total``."""
        counts = {
            "total": self._conn.execute(
                "SELECT COUNT(*) FROM discoveries WHERE project_id = ?", (project_id,)
            ).fetchone()[0]
        }
        for name in ("new", "viewed", "hidden", "useful", "notUseful"):
            counts[name] = self._conn.execute(
                f"SELECT COUNT(*) FROM discoveries WHERE project_id = ? AND {_DISCOVERY_FILTERS[name]}",
                (project_id,),
            ).fetchone()[0]
        return counts

    def mark_presented(self, discovery_ids: Sequence[str]) -> int:
        """Set presented=1 on all *discovery_ids* in one statement."""
        if not discovery_ids:
            return 0
        placeholders = ",".join("?" * len(discovery_ids))
        cur = self._conn.execute(
            f"UPDATE discoveries SET presented = 1 WHERE id IN ({placeholders})",
            list(discovery_ids),
        )
        self._conn.commit()
        return cur.rowcount

    def update_discovery_flags(self, discovery: Discovery) -> None:
        """Persist viewed/viewed_at/hidden/feedback of *discovery*."""
        self._conn.execute(
            """
            UPDATE discoveries SET viewed = ?, viewed_at = ?, hidden = ?, feedback = ?
            WHERE id = ?
            """,
            (
                int(discovery.viewed),
                discovery.viewed_at,
                int(discovery.hidden),
                json.dumps(discovery.feedback.to_dict()),
                discovery.id,
            ),
        )
        self._conn.commit()

    def bulk_update_discoveries(
        self,
        project_id: str,
        action: str,
        ids: Sequence[str] | None = None,
        filter: str | None = None,
    ) -> int:
        """Apply *action* to the selected discoveries of one project.

        Selection is by explicit *ids* when given, otherwise by *filter*
        (new, viewed, all).

        Returns:
            Number of rows changed.

        Raises:
            ValueError: Unknown action or filter, or neither ids nor filter given.
        """
        updates = {
            "markViewed": ("viewed = 1, viewed_at = ?", [now_iso()]),
            "markUnviewed": ("viewed = 0, viewed_at = NULL", []),
            "hide": ("hidden = 1", []),
            "unhide": ("hidden = 0", []),
        }
        if action not in updates:
            raise ValueError(f"Invalid bulk action '{action}'")
        set_sql, params = updates[action]

        if ids:
            placeholders = ",".join("?" * len(ids))
            where = f"project_id = ? AND id IN ({placeholders})"
            params = params + [project_id, *ids]
        elif filter:
            if filter not in BULK_FILTERS:
                raise ValueError(f"Invalid filter for bulk update '{filter}'")
            where = f"project_id = ? AND {_DISCOVERY_FILTERS[filter]}"
            params = params + [project_id]
        else:
            raise ValueError("Either ids or filter must be provided")

        cur = self._conn.execute(f"UPDATE discoveries SET {set_sql} WHERE {where}", params)
        self._conn.commit()
        return cur.rowcount

    # ------------------------------------------------------------------
    # Project contexts
    # ------------------------------------------------------------------

    def get_context(self, project_id: str) -> ProjectContext | None:
        """Return the project's context with all entries in insertion order."""
        row = self._conn.execute(
            "SELECT * FROM project_contexts WHERE project_id = ?", (project_id,)
        ).fetchone()
        if row is None:
            return None
        entries = self._conn.execute(
            "SELECT id, type, content, metadata, timestamp FROM context_entries "
            "WHERE context_id = ? ORDER BY seq",
            (row["id"],),
        ).fetchall()
        return ProjectContext(
            id=row["id"],
            project_id=row["project_id"],
            current_phase=row["current_phase"],
            progress_percentage=row["progress_percentage"],
            entries=[_row_to_entry(e) for e in entries],
            last_updated=row["last_updated"],
        )

    def create_context(self, project_id: str, seed: ContextEntry) -> ProjectContext:
        """Create the project's context with *seed* as its first entry.

        A context that already exists is returned unchanged and *seed* is
        discarded, so concurrent creators converge on one context.
        """
        ts = now_iso()
        with self._conn:
            cur = self._conn.execute(
                """
                INSERT INTO project_contexts (id, project_id, last_updated)
                VALUES (?, ?, ?)
                ON CONFLICT(project_id) DO NOTHING
                """,
                (new_id(), project_id, ts),
            )
            if cur.rowcount:
                context_id = self._conn.execute(
                    "SELECT id FROM project_contexts WHERE project_id = ?", (project_id,)
                ).fetchone()[0]
                self._insert_entry(context_id, seed)
        context = self.get_context(project_id)
        if context is None:
            raise NotFoundError(f"Context for project '{project_id}' vanished after create")
        return context

    def append_entry(self, context_id: str, entry: ContextEntry) -> ContextEntry:
        """Append *entry* to a context and bump its last_updated."""
        with self._conn:
            self._insert_entry(context_id, entry)
        return entry

    def save_progress(
        self,
        context: ProjectContext,
        new_entries: Sequence[ContextEntry],
        project: Project | None = None,
    ) -> None:
        """Write phase, percentage, new entries and project state in one transaction.

        Either every write lands or none does.
        """
        with self._conn:
            self._conn.execute(
                """
                UPDATE project_contexts
                SET current_phase = ?, progress_percentage = ?, last_updated = ?
                WHERE id = ?
                """,
                (context.current_phase, context.progress_percentage, now_iso(), context.id),
            )
            for entry in new_entries:
                self._insert_entry(context.id, entry)
            if project is not None:
                self.update_project(project, commit=False)

    def _insert_entry(self, context_id: str, entry: ContextEntry) -> None:
        if entry.timestamp is None:
            entry.timestamp = now_iso()
        self._conn.execute(
            """
            INSERT INTO context_entries (id, context_id, type, content, metadata, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                context_id,
                entry.type,
                entry.content,
                json.dumps(entry.metadata),
                entry.timestamp,
            ),
        )
        self._conn.execute(
            "UPDATE project_contexts SET last_updated = ? WHERE id = ?",
            (entry.timestamp, context_id),
        )

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def add_schedule(self, schedule: Schedule) -> Schedule:
        """Insert a new schedule."""
        if schedule.created_at is None:
            schedule.created_at = now_iso()
        self._conn.execute(
            """
            INSERT INTO schedules (id, project_id, task_type, frequency, last_run,
                                   next_run, active, parameters, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                schedule.id,
                schedule.project_id,
                schedule.task_type,
                schedule.frequency,
                schedule.last_run,
                schedule.next_run,
                int(schedule.active),
                json.dumps(schedule.parameters),
                schedule.created_at,
            ),
        )
        self._conn.commit()
        return schedule

    def get_schedule(self, schedule_id: str) -> Schedule | None:
        row = self._conn.execute(
            "SELECT * FROM schedules WHERE id = ?", (schedule_id,)
        ).fetchone()
        return _row_to_schedule(row) if row else None

    def list_schedules(self, project_id: str | None = None) -> list[Schedule]:
        if project_id is None:
            rows = self._conn.execute(
                "SELECT * FROM schedules ORDER BY next_run"
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM schedules WHERE project_id = ? ORDER BY next_run",
                (project_id,),
            ).fetchall()
        return [_row_to_schedule(r) for r in rows]

    def list_due_schedules(self, now: str) -> list[Schedule]:
        """Active schedules whose next_run is at or before *now* (ISO string)."""
        rows = self._conn.execute(
            "SELECT * FROM schedules WHERE active = 1 AND next_run <= ? ORDER BY next_run",
            (now,),
        ).fetchall()
        return [_row_to_schedule(r) for r in rows]

    def update_schedule(self, schedule: Schedule) -> None:
        self._conn.execute(
            """
            UPDATE schedules SET task_type = ?, frequency = ?, last_run = ?, next_run = ?,
                   active = ?, parameters = ?
            WHERE id = ?
            """,
            (
                schedule.task_type,
                schedule.frequency,
                schedule.last_run,
                schedule.next_run,
                int(schedule.active),
                json.dumps(schedule.parameters),
                schedule.id,
            ),
        )
        self._conn.commit()

    def delete_schedule(self, schedule_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM schedules WHERE id = ?", (schedule_id,))
        self._conn.commit()
        return cur.rowcount > 0


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------

def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        description=row["description"],
        domain=row["domain"],
        goals=json.loads(row["goals"]),
        interests=json.loads(row["interests"]),
        progress=row["progress"],
        milestones=[Milestone(**m) for m in json.loads(row["milestones"])],
        last_updated=row["last_updated"],
        created_at=row["created_at"],
    )


def _row_to_discovery(row: sqlite3.Row) -> Discovery:
    return Discovery(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"],
        source=row["source"],
        relevance_score=row["relevance_score"],
        categories=json.loads(row["categories"]),
        type=row["type"],
        discovered_at=row["discovered_at"],
        publication_date=row["publication_date"],
        viewed=bool(row["viewed"]),
        viewed_at=row["viewed_at"],
        hidden=bool(row["hidden"]),
        presented=bool(row["presented"]),
        feedback=UserFeedback.from_dict(json.loads(row["feedback"])),
        search_context=json.loads(row["search_context"]),
    )


def _row_to_entry(row: sqlite3.Row) -> ContextEntry:
    return ContextEntry(
        id=row["id"],
        type=row["type"],
        content=row["content"],
        metadata=json.loads(row["metadata"]),
        timestamp=row["timestamp"],
    )


def _row_to_schedule(row: sqlite3.Row) -> Schedule:
    return Schedule(
        id=row["id"],
        project_id=row["project_id"],
        task_type=row["task_type"],
        frequency=row["frequency"],
        last_run=row["last_run"],
        next_run=row["next_run"],
        active=bool(row["active"]),
        parameters=json.loads(row["parameters"]),
        created_at=row["created_at"],
    )
