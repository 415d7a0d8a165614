"""Project search and summaries.

A project search runs every query against the web provider, scores each result
against the project, and stores the ones scoring at or above the relevance
threshold. Summaries describe the best unpresented discoveries and mark them
presented once the summary exists.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from tracker.context.agent import ContextAgent, MAX_QUERIES, scrub_queries
from tracker.db.models import Discovery, Project
from tracker.db.repository import Repository
from tracker.discovery.store import DiscoveryStore
from tracker.discovery.transformer import (
    DEFAULT_SCORE,
    DiscoveryCandidate,
    DiscoveryTransformer,
)
from tracker.errors import BackendError
from tracker.ingest.urls import normalize_url
from tracker.llm.client import LLMClient
from tracker.log import get_logger
from tracker.search.assistant import AssistantSearch
from tracker.search.web import SearchResult, WebSearch

logger = get_logger(__name__)

_NUMBERING_RE = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s*")


@dataclass
class ScoredResult:
    title: str
    description: str
    url: str
    relevance_score: int = DEFAULT_SCORE
    categories: list[str] = field(default_factory=list)


@dataclass
class SearchReport:
    queries: list[str] = field(default_factory=list)
    results: list[ScoredResult] = field(default_factory=list)
    stored: list[Discovery] = field(default_factory=list)
    failed_queries: list[str] = field(default_factory=list)


def default_queries(project: Project) -> list[str]:
    """Queries built from the project fields alone, for when the backend is down."""
    topics = project.interests or project.goals or [project.name]
    base = project.domain.strip()
    queries = [f"{base} {topic}".strip() for topic in topics if topic]
    return scrub_queries(queries or [base or project.name])


class SearchOrchestrator:
    """Coordinates query generation, web search, scoring and summaries.

    Args:
        repo: Repository over an open connection.
        llm: Client for metadata queries and summaries.
        agent: Context agent that writes contextual queries.
        transformer: Scores results and validates assistant candidates.
        store: Persists discoveries.
        web: Search provider.
        relevance_threshold: Minimum score a result needs to be stored.
        summary_limit: Discoveries considered per summary.
        max_iterations: Rounds allowed to the assistant search.
    """

    def __init__(
        self,
        repo: Repository,
        llm: LLMClient,
        agent: ContextAgent,
        transformer: DiscoveryTransformer,
        store: DiscoveryStore,
        web: WebSearch,
        relevance_threshold: int = 5,
        summary_limit: int = 10,
        max_iterations: int = 5,
    ) -> None:
        self._repo = repo
        self._llm = llm
        self._agent = agent
        self._transformer = transformer
        self._store = store
        self._web = web
        self.relevance_threshold = relevance_threshold
        self.summary_limit = summary_limit
        self.max_iterations = max_iterations

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def generate_search_queries(self, project: Project) -> list[str]:
        """Contextual queries, else metadata queries, else :func:`default_queries`."""
        try:
            return self._agent.generate_contextual_search_queries(project.id)
        except BackendError as exc:
            logger.warning("Contextual queries failed for %s: %s", project.id, exc)
        try:
            return self._metadata_queries(project)
        except BackendError as exc:
            logger.warning("Metadata queries failed for %s: %s", project.id, exc)
        return default_queries(project)

    def _metadata_queries(self, project: Project) -> list[str]:
        messages = [
            {
                "role": "system",
                "content": (
                    f"You generate web search queries that find advancements in "
                    f"{project.domain} for a project's goals and interests."
                ),
            },
            {
                "role": "user",
                "content": (
                    f"Generate {MAX_QUERIES} search queries for the project goals: "
                    f"{', '.join(project.goals)} and interests: {', '.join(project.interests)}.\n"
                    "Put one query per line. Do not include dates, months or years. "
                    "Focus on the core topics and technologies."
                ),
            },
        ]
        raw = self._llm.complete(messages, max_tokens=512)
        lines = [_NUMBERING_RE.sub("", line).strip().strip('"') for line in raw.splitlines()]
        queries = scrub_queries([line for line in lines if line])
        if not queries:
            raise BackendError("No usable metadata queries")
        return queries

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def perform_project_search(self, project: Project) -> SearchReport:
        """Search, score and store results for *project*.

        A failing query is logged and skipped; a failing score falls back to
        the default score with no categories. Stored sources are normalized
        so a result dedups against the same article from a newsletter.
        """
        report = SearchReport(queries=self.generate_search_queries(project))

        raw: list[SearchResult] = []
        for query in report.queries:
            try:
                raw.extend(self._web.search(query))
            except Exception as exc:  # one bad query never aborts the batch
                logger.warning("Search %r failed, skipping: %s", query, exc)
                report.failed_queries.append(query)

        for result in raw:
            try:
                score, categories = self._transformer.score_result(
                    project, result.title, result.description, result.url
                )
            except BackendError as exc:
                logger.warning("Scoring %s failed, using default: %s", result.url, exc)
                score, categories = DEFAULT_SCORE, []
            report.results.append(
                ScoredResult(result.title, result.description, result.url, score, categories)
            )
        report.results.sort(key=lambda r: r.relevance_score, reverse=True)

        for result in report.results:
            if result.relevance_score < self.relevance_threshold:
                continue
            candidate = DiscoveryCandidate(
                title=result.title,
                description=result.description,
                source=normalize_url(result.url),
                relevance_score=result.relevance_score,
                categories=result.categories,
                search_context={"source": "web_search", "queries": report.queries},
            )
            try:
                report.stored.append(self._store.upsert(project.id, candidate))
            except Exception as exc:  # one bad result never aborts the batch
                logger.error("Storing %s failed: %s", result.url, exc)

        logger.info(
            "Project search %s: %d queries, %d results, %d stored",
            project.id,
            len(report.queries),
            len(report.results),
            len(report.stored),
        )
        return report

    def perform_assistant_search(self, project: Project, query: str) -> list[Discovery]:
        """Run the assistant tool loop for *query* and store what it finds."""
        assistant = AssistantSearch(self._llm, self._web, self._transformer, self.max_iterations)
        stored = []
        for candidate in assistant.run(project, query):
            candidate.search_context = {"source": "assistant", "query": query}
            try:
                stored.append(self._store.upsert(project.id, candidate))
            except Exception as exc:  # one bad result never aborts the batch
                logger.error("Storing %s failed: %s", candidate.source, exc)
        return stored

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def generate_project_summary(self, project: Project) -> str | None:
        """Summarise the top unpresented discoveries, then mark them presented.

        Returns None, without calling the backend, when nothing is unpresented.

        Raises:
            BackendError: The summary call failed; nothing is marked presented.
        """
        discoveries = self._repo.unpresented_discoveries(project.id, limit=self.summary_limit)
        if not discoveries:
            logger.info("No unpresented discoveries for %s", project.id)
            return None

        listing = "\n".join(
            f"- {d.title}: {d.description} (Relevance: {d.relevance_score}/10)" for d in discoveries
        )
        messages = [
            {
                "role": "system",
                "content": f"You summarise recent discoveries for a project in {project.domain}.",
            },
            {
                "role": "user",
                "content": (
                    f"Summarise these discoveries for a project with the goals: "
                    f"{', '.join(project.goals)} and interests: {', '.join(project.interests)}.\n\n"
                    f"Discoveries:\n{listing}\n\n"
                    "Highlight the most relevant findings and why they matter to this project."
                ),
            },
        ]
        summary = self._llm.complete(messages, max_tokens=1024).strip()
        if not summary:
            raise BackendError("Empty summary from backend")

        marked = self._store.mark_presented([d.id for d in discoveries if d.id])
        logger.info("Summary for %s covered %d discoveries", project.id, marked)
        return summary
