"""Wires config, database connection and backends into the service objects.

Used by the CLI commands and by background jobs; every job builds its own
``Services`` over its own connection.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from tracker.config import TrackerConfig
from tracker.context.agent import ContextAgent
from tracker.db.connection import Database
from tracker.db.repository import Repository
from tracker.db.schema import initialize
from tracker.discovery.store import DiscoveryStore
from tracker.discovery.transformer import DiscoveryTransformer
from tracker.ingest.urls import UrlCheck, probe_url
from tracker.ingest.mailbox import MailboxPoller
from tracker.ingest.pipeline import NewsletterIngestor
from tracker.llm.client import LLMClient
from tracker.scheduler import Scheduler
from tracker.search.orchestrator import SearchOrchestrator
from tracker.search.web import GoogleSearch, WebSearch


@dataclass
class Services:
    conn: sqlite3.Connection
    repo: Repository
    store: DiscoveryStore
    transformer: DiscoveryTransformer
    agent: ContextAgent
    orchestrator: SearchOrchestrator
    scheduler: Scheduler
    ingestor: NewsletterIngestor
    poller: MailboxPoller

    def close(self) -> None:
        self.conn.close()


def open_connection(db_path: Path | str) -> sqlite3.Connection:
    """Open *db_path* and bring its schema up to date."""
    conn = Database(db_path).connect()
    initialize(conn)
    return conn


def build_services(
    cfg: TrackerConfig,
    conn: sqlite3.Connection,
    *,
    llm: LLMClient | None = None,
    scoring_llm: LLMClient | None = None,
    web: WebSearch | None = None,
    poller: MailboxPoller | None = None,
    probe: Callable[[str, float], UrlCheck] = probe_url,
) -> Services:
    """Build every service over *conn*. Backends can be swapped for tests."""
    repo = Repository(conn)
    llm = llm or LLMClient(cfg.generation.model, timeout=cfg.generation.timeout)
    scoring_llm = scoring_llm or LLMClient(
        cfg.generation.scoring_model, timeout=cfg.generation.timeout
    )
    web = web or GoogleSearch(cx=cfg.search.cx or None, timeout=cfg.search.timeout)

    store = DiscoveryStore(repo)
    transformer = DiscoveryTransformer(
        scoring_llm,
        probe=probe,
        max_content_chars=cfg.generation.max_content_chars,
        probe_timeout=cfg.discovery.probe_timeout,
    )
    agent = ContextAgent(repo, llm)
    orchestrator = SearchOrchestrator(
        repo,
        llm,
        agent,
        transformer,
        store,
        web,
        relevance_threshold=cfg.discovery.relevance_threshold,
        summary_limit=cfg.discovery.summary_limit,
        max_iterations=cfg.search.max_iterations,
    )
    return Services(
        conn=conn,
        repo=repo,
        store=store,
        transformer=transformer,
        agent=agent,
        orchestrator=orchestrator,
        scheduler=Scheduler(repo, orchestrator, agent),
        ingestor=NewsletterIngestor(repo, transformer, store),
        poller=poller or MailboxPoller(),
    )
