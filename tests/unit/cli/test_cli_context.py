"""Tests for tracker context commands."""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from tracker.cli.main import app
from tracker.context.agent import SEED_QUESTION
from tracker.db.models import Project, ProjectContext
from tracker.errors import BackendError

runner = CliRunner()


@pytest.fixture(autouse=True)
def project(cli_env) -> Project:
    conn, repo = cli_env.repo()
    try:
        return repo.add_project(Project(id="p1", user_id="local", name="Clipper", domain="AI video"))
    finally:
        conn.close()


def _context(env) -> ProjectContext:
    conn, repo = env.repo()
    try:
        return repo.get_context("p1")
    finally:
        conn.close()


def test_show_seeds_context(cli_env) -> None:
    result = runner.invoke(app, ["context", "show", "p1"])
    assert result.exit_code == 0, result.output
    assert "Phase: initial" in result.output
    assert "Progress: 0%" in result.output
    assert [e.content for e in _context(cli_env).entries] == [SEED_QUESTION]


def test_update_records_and_asks(cli_env) -> None:
    cli_env.llm.replies = ["Which editor did you integrate first?"]

    result = runner.invoke(app, ["context", "update", "p1", "Wired up the cutter"])

    assert result.exit_code == 0, result.output
    assert "Update recorded" in result.output
    assert "Which editor did you integrate first?" in result.output
    types = [e.type for e in _context(cli_env).entries]
    assert types == ["agent_question", "user_update", "agent_question"]


def test_respond_updates_progress(cli_env) -> None:
    cli_env.llm.replies = [
        json.dumps({"phase": "development", "progressPercentage": 40, "reasoning": "core works"}),
        "How is the UI coming along?",
    ]

    result = runner.invoke(app, ["context", "respond", "p1", "Core pipeline works"])

    assert result.exit_code == 0, result.output
    assert "development" in result.output
    assert "40%" in result.output
    assert "How is the UI coming along?" in result.output
    context = _context(cli_env)
    assert context.progress_percentage == 40
    assert len(context.entries_of("milestone")) == 1


def test_respond_to_named_question(cli_env) -> None:
    runner.invoke(app, ["context", "show", "p1"])
    seed_id = _context(cli_env).entries[0].id
    cli_env.llm.replies = [
        json.dumps({"phase": "initial", "progressPercentage": 5, "reasoning": "started"}),
        "Next?",
    ]

    result = runner.invoke(app, ["context", "respond", "p1", "Just started", "--question", seed_id])

    assert result.exit_code == 0
    response = _context(cli_env).entries_of("user_response")[0]
    assert response.metadata["question_id"] == seed_id


def test_question_falls_back_when_backend_fails(cli_env) -> None:
    cli_env.llm.replies = [BackendError("down")]
    result = runner.invoke(app, ["context", "question", "p1"])
    assert result.exit_code == 0
    assert _context(cli_env).entries[-1].metadata["generated"] is False


def test_queries_are_listed(cli_env) -> None:
    cli_env.llm.replies = [json.dumps({"queries": ["latest video models 2024", "speech alignment"]})]
    result = runner.invoke(app, ["context", "queries", "p1"])
    assert result.exit_code == 0
    assert "1. video models" in result.output
    assert "2. speech alignment" in result.output


def test_other_user_cannot_update(cli_env) -> None:
    result = runner.invoke(app, ["context", "update", "p1", "hi", "--user", "mallory"])
    assert result.exit_code == 1
    assert "does not belong" in result.output
    assert _context(cli_env) is None
