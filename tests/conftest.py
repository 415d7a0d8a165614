"""Shared pytest fixtures and backend doubles."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path

import pytest

from tracker.db.connection import Database
from tracker.db.models import Project
from tracker.db.repository import Repository
from tracker.db.schema import initialize
from tracker.discovery.store import DiscoveryStore
from tracker.discovery.transformer import DiscoveryTransformer
from tracker.errors import BackendError, SearchError
from tracker.ingest.mailbox import MailboxPoller
from tracker.ingest.urls import UrlCheck
from tracker.llm.client import parse_json_object
from tracker.search.web import SearchResult
from tracker.services import build_services, open_connection


class StubLLM:
    """Scripted LLMClient double.

    Replies are returned in order; an Exception instance in the queue is
    raised instead. An empty queue raises BackendError.
    """

    def __init__(self, *replies) -> None:
        self.replies = list(replies)
        self.calls: list[list[dict]] = []

    def _next(self, messages):
        self.calls.append(messages)
        if not self.replies:
            raise BackendError("no scripted reply")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def complete(self, messages, *, json_mode=False, max_tokens=2048):
        return self._next(messages)

    def complete_json(self, messages, *, max_tokens=2048):
        return parse_json_object(self.complete(messages, json_mode=True, max_tokens=max_tokens))

    def chat(self, messages, tools):
        return self._next(list(messages))


class StubWeb:
    """WebSearch double: canned results per query; queries in ``failing`` raise."""

    def __init__(self) -> None:
        self.results: dict[str, list[SearchResult]] = {}
        self.failing: set[str] = set()
        self.queries: list[str] = []

    def search(self, query: str) -> list[SearchResult]:
        self.queries.append(query)
        if query in self.failing:
            raise SearchError(f"search for {query!r} failed")
        return list(self.results.get(query, []))


def always_valid(url: str, timeout: float) -> UrlCheck:
    return UrlCheck(True)


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / "tracker.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)


@pytest.fixture
def project(repo):
    return repo.add_project(
        Project(
            id="proj-1",
            user_id="user-1",
            name="Clip editor",
            description="Short-form video editing assistant",
            domain="AI video",
            goals=["auto-cut long recordings"],
            interests=["video generation", "speech-to-text"],
        )
    )


@pytest.fixture
def llm():
    return StubLLM()


@pytest.fixture
def web():
    return StubWeb()


@pytest.fixture
def transformer(llm):
    return DiscoveryTransformer(llm, probe=always_valid)


@pytest.fixture
def store(repo):
    return DiscoveryStore(repo)


# ---------------------------------------------------------------------------
# CLI workspace
# ---------------------------------------------------------------------------


@dataclass
class CliEnv:
    db: Path
    llm: StubLLM
    web: StubWeb
    poller: MailboxPoller | None = None

    def repo(self) -> tuple[sqlite3.Connection, Repository]:
        conn = open_connection(self.db)
        return conn, Repository(conn)


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Working directory in tmp_path, private global config and stub backends.

    Commands get services built over the scripted ``env.llm`` and ``env.web``.
    """
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("tracker.config._GLOBAL_CONFIG_PATH", tmp_path / "home" / "config.yaml")
    for var in ("TRACKER_DB", "TRACKER_USER", "TRACKER_GENERATION_MODEL", "TRACKER_SCORING_MODEL"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

    env = CliEnv(db=tmp_path / "tracker.db", llm=StubLLM(), web=StubWeb())

    def _build(cfg, conn):
        return build_services(
            cfg,
            conn,
            llm=env.llm,
            scoring_llm=env.llm,
            web=env.web,
            poller=env.poller,
            probe=always_valid,
        )

    monkeypatch.setattr("tracker.cli.common.build_services", _build)
    monkeypatch.setattr("tracker.cli.run.build_services", _build)
    open_connection(env.db).close()
    return env
