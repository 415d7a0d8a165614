"""Tests for the Repository data access layer."""

from __future__ import annotations

import sqlite3

import pytest

from tracker.db.models import ContextEntry, Discovery, Milestone, Project, Schedule, UserFeedback
from tracker.db.repository import Repository
from tracker.errors import NotFoundError


def _discovery(project_id: str, source: str, score: int = 5, **kw) -> Discovery:
    return Discovery(project_id=project_id, title=kw.pop("title", source), source=source,
                     relevance_score=score, **kw)


def _entry(entry_id: str, type: str = "user_update", content: str = "x") -> ContextEntry:
    return ContextEntry(id=entry_id, type=type, content=content)


# ------------------------------------------------------------------
# Projects
# ------------------------------------------------------------------


def test_add_and_get_project_round_trips_json_fields(repo: Repository, project: Project) -> None:
    stored = repo.get_project(project.id)
    assert stored is not None
    assert stored.goals == ["auto-cut long recordings"]
    assert stored.interests == ["video generation", "speech-to-text"]
    assert stored.progress == "Not Started"
    assert stored.created_at is not None


def test_get_project_missing_returns_none(repo: Repository) -> None:
    assert repo.get_project("nope") is None


def test_list_projects_filters_by_user(repo: Repository, project: Project) -> None:
    repo.add_project(Project(id="other", user_id="user-2", name="Other"))
    assert [p.id for p in repo.list_projects("user-1")] == [project.id]
    assert len(repo.list_projects()) == 2


def test_update_project_persists_milestones(repo: Repository, project: Project) -> None:
    project.progress = "In Progress"
    project.milestones.append(Milestone("Entered testing phase", achieved=True, date="2026-01-01"))
    repo.update_project(project)

    stored = repo.get_project(project.id)
    assert stored.progress == "In Progress"
    assert stored.milestones == [Milestone("Entered testing phase", True, "2026-01-01")]


def test_delete_project_cascades(repo: Repository, project: Project, tmp_db) -> None:
    repo.upsert_discovery(_discovery(project.id, "https://a.example"))
    ctx = repo.create_context(project.id, _entry("seed", "agent_question"))
    repo.append_entry(ctx.id, _entry("e1"))
    repo.add_schedule(Schedule(id="s1", project_id=project.id, task_type="search",
                               frequency="daily", next_run="2026-01-01T00:00:00+00:00"))

    assert repo.delete_project(project.id) is True

    for table in ("discoveries", "project_contexts", "context_entries", "schedules"):
        assert tmp_db.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0] == 0, table


def test_delete_project_missing_returns_false(repo: Repository) -> None:
    assert repo.delete_project("nope") is False


# ------------------------------------------------------------------
# Discovery upsert
# ------------------------------------------------------------------


def test_upsert_creates_new_discovery(repo: Repository, project: Project) -> None:
    stored, created = repo.upsert_discovery(_discovery(project.id, "https://a.example", 7))
    assert created is True
    assert stored.id
    assert stored.relevance_score == 7


def test_upsert_keeps_one_row_per_source(repo: Repository, project: Project, tmp_db) -> None:
    repo.upsert_discovery(_discovery(project.id, "https://a.example", 6))
    _, created = repo.upsert_discovery(_discovery(project.id, "https://a.example", 6))
    assert created is False
    assert tmp_db.execute("SELECT COUNT(*) FROM discoveries").fetchone()[0] == 1


def test_upsert_higher_score_replaces_score_and_categories(repo: Repository, project: Project) -> None:
    repo.upsert_discovery(_discovery(project.id, "https://a.example", 5, categories=["old"]))
    stored, _ = repo.upsert_discovery(_discovery(project.id, "https://a.example", 8, categories=["new"]))
    assert stored.relevance_score == 8
    assert stored.categories == ["new"]


def test_upsert_lower_or_equal_score_changes_nothing(repo: Repository, project: Project) -> None:
    first, _ = repo.upsert_discovery(
        _discovery(project.id, "https://a.example", 7, categories=["keep"], title="Original")
    )
    repo.upsert_discovery(_discovery(project.id, "https://a.example", 7, categories=["eq"]))
    stored, _ = repo.upsert_discovery(
        _discovery(project.id, "https://a.example", 3, categories=["low"], title="Changed")
    )
    assert stored.id == first.id
    assert stored.relevance_score == 7
    assert stored.categories == ["keep"]
    assert stored.title == "Original"


def test_upsert_score_is_max_of_submissions(repo: Repository, project: Project) -> None:
    for score in (4, 9, 2, 6, 9, 1):
        stored, _ = repo.upsert_discovery(_discovery(project.id, "https://a.example", score))
    assert stored.relevance_score == 9


def test_same_source_in_two_projects_is_two_rows(repo: Repository, project: Project) -> None:
    repo.add_project(Project(id="proj-2", user_id="user-1", name="Second"))
    _, a = repo.upsert_discovery(_discovery(project.id, "https://a.example"))
    _, b = repo.upsert_discovery(_discovery("proj-2", "https://a.example"))
    assert a and b


# ------------------------------------------------------------------
# Discovery listing, filters, bulk updates
# ------------------------------------------------------------------


@pytest.fixture
def three(repo: Repository, project: Project) -> list[Discovery]:
    items = [repo.upsert_discovery(_discovery(project.id, f"https://{n}.example", s))[0]
             for n, s in (("a", 3), ("b", 9), ("c", 6))]
    items[0].viewed = True
    repo.update_discovery_flags(items[0])
    items[1].feedback = UserFeedback(useful=True)
    repo.update_discovery_flags(items[1])
    items[2].hidden = True
    repo.update_discovery_flags(items[2])
    return items


def test_list_discoveries_sorted_by_relevance_excludes_hidden(repo, project, three) -> None:
    listed = repo.list_discoveries(project.id)
    assert [d.source for d in listed] == ["https://b.example", "https://a.example"]


@pytest.mark.parametrize(
    "filter, expected",
    [
        ("new", ["https://b.example"]),
        ("viewed", ["https://a.example"]),
        ("hidden", ["https://c.example"]),
        ("useful", ["https://b.example"]),
        ("notUseful", []),
    ],
)
def test_list_discoveries_filters(repo, project, three, filter, expected) -> None:
    assert [d.source for d in repo.list_discoveries(project.id, filter=filter)] == expected


def test_count_discoveries(repo, project, three) -> None:
    counts = repo.count_discoveries(project.id)
    assert counts == {"total": 3, "new": 1, "viewed": 1, "hidden": 1, "useful": 1, "notUseful": 0}


def test_unpresented_and_mark_presented(repo, project, three) -> None:
    top = repo.unpresented_discoveries(project.id, limit=2)
    assert [d.relevance_score for d in top] == [9, 6]
    assert repo.mark_presented([d.id for d in top]) == 2
    assert [d.relevance_score for d in repo.unpresented_discoveries(project.id)] == [3]


def test_mark_presented_empty_is_noop(repo) -> None:
    assert repo.mark_presented([]) == 0


def test_bulk_update_by_ids(repo, project, three) -> None:
    assert repo.bulk_update_discoveries(project.id, "hide", ids=[three[0].id, three[1].id]) == 2
    assert repo.count_discoveries(project.id)["hidden"] == 3


def test_bulk_update_by_filter(repo, project, three) -> None:
    assert repo.bulk_update_discoveries(project.id, "markViewed", filter="new") == 1
    assert repo.count_discoveries(project.id)["new"] == 0


def test_bulk_update_ignores_other_projects(repo, project, three) -> None:
    repo.add_project(Project(id="proj-2", user_id="user-1", name="Second"))
    assert repo.bulk_update_discoveries("proj-2", "hide", ids=[three[0].id]) == 0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"action": "explode", "filter": "all"},
        {"action": "hide", "filter": "useful"},
        {"action": "hide"},
    ],
)
def test_bulk_update_rejects_bad_input(repo, project, kwargs) -> None:
    with pytest.raises(ValueError):
        repo.bulk_update_discoveries(project.id, **kwargs)


# ------------------------------------------------------------------
# Contexts
# ------------------------------------------------------------------


def test_create_context_seeds_once(repo: Repository, project: Project) -> None:
    first = repo.create_context(project.id, _entry("seed-1", "agent_question", "Q1"))
    second = repo.create_context(project.id, _entry("seed-2", "agent_question", "Q2"))
    assert first.id == second.id
    assert [e.id for e in second.entries] == ["seed-1"]


def test_create_context_missing_after_insert_raises_not_found(
    repo: Repository, project: Project, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(repo, "get_context", lambda project_id: None)
    with pytest.raises(NotFoundError):
        repo.create_context(project.id, _entry("seed", "agent_question"))


def test_append_entry_keeps_insertion_order(repo: Repository, project: Project) -> None:
    ctx = repo.create_context(project.id, _entry("seed", "agent_question"))
    for i in range(5):
        repo.append_entry(ctx.id, _entry(f"e{i}", content=f"update {i}"))
    stored = repo.get_context(project.id)
    assert [e.id for e in stored.entries] == ["seed", "e0", "e1", "e2", "e3", "e4"]
    assert stored.latest_question().id == "seed"


def test_save_progress_writes_context_entries_and_project(repo: Repository, project: Project) -> None:
    ctx = repo.create_context(project.id, _entry("seed", "agent_question"))
    ctx.current_phase = "development"
    ctx.progress_percentage = 40
    project.progress = "In Progress"
    repo.save_progress(ctx, [_entry("m1", "milestone", "reached 40%")], project)

    stored = repo.get_context(project.id)
    assert (stored.current_phase, stored.progress_percentage) == ("development", 40)
    assert stored.entries[-1].type == "milestone"
    assert repo.get_project(project.id).progress == "In Progress"


def test_save_progress_is_atomic(repo: Repository, project: Project) -> None:
    ctx = repo.create_context(project.id, _entry("seed", "agent_question"))
    ctx.progress_percentage = 70
    # duplicate entry id violates UNIQUE; nothing from the batch may land
    with pytest.raises(sqlite3.IntegrityError):
        repo.save_progress(ctx, [_entry("dup", "milestone"), _entry("dup", "milestone")])

    stored = repo.get_context(project.id)
    assert stored.progress_percentage == 0
    assert [e.id for e in stored.entries] == ["seed"]


# ------------------------------------------------------------------
# Schedules
# ------------------------------------------------------------------


def test_list_due_schedules_only_active_and_due(repo: Repository, project: Project) -> None:
    repo.add_schedule(Schedule(id="due", project_id=project.id, task_type="search",
                               frequency="daily", next_run="2026-01-01T00:00:00+00:00"))
    repo.add_schedule(Schedule(id="later", project_id=project.id, task_type="search",
                               frequency="daily", next_run="2026-12-01T00:00:00+00:00"))
    repo.add_schedule(Schedule(id="paused", project_id=project.id, task_type="search",
                               frequency="daily", next_run="2026-01-01T00:00:00+00:00",
                               active=False))
    due = repo.list_due_schedules("2026-06-01T00:00:00+00:00")
    assert [s.id for s in due] == ["due"]
