"""Content-to-discovery transformer.

Turns newsletter content, assistant answers and single web-search results into
scored discovery candidates. Backend output is untrusted: every field is
coerced to a safe default, and a response that cannot be read yields no
candidates rather than an error.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable

from tracker.db.models import DISCOVERY_TYPES, Project
from tracker.errors import BackendError, SourceValidationError
from tracker.ingest.urls import UrlCheck, normalize_url, probe_url
from tracker.llm.client import LLMClient, parse_json_object
from tracker.log import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_CONTENT_CHARS = 15_000
TRUNCATION_MARKER = "\n\n[Content truncated]"
DEFAULT_SCORE = 5

_URL_RE = re.compile(r"^https?://", re.IGNORECASE)

_EXTRACT_SYSTEM = (
    "You analyse newsletter and web content for a user's project and pick out "
    "items (articles, tools, research, news, discussions) relevant to it. "
    "Respond with a single JSON object only."
)

_EXTRACT_USER = """Project:
{project}

Content:
{content}

Return JSON of the form:
{{"discoveries": [{{"title": "...", "description": "...", "source": "<exact URL from the content>",
"relevanceScore": <0-10>, "type": "Article|Discussion|News|Research|Tool|Other",
"categories": ["..."]}}]}}
Use only URLs that appear in the content. Return {{"discoveries": []}} if nothing is relevant."""

_SCORE_SYSTEM = "You evaluate how relevant a search result is to a project."

_SCORE_USER = """Project:
{project}

Search result:
Title: {title}
Description: {description}
Source: {url}

Give a relevance score from 0-10 (10 = extremely relevant) and categorise the result.
Respond as JSON: {{"relevanceScore": <number>, "categories": ["category1", "category2"]}}"""


@dataclass
class DiscoveryCandidate:
    """A discovery not yet stored."""

    title: str
    description: str = ""
    source: str = ""
    relevance_score: int = DEFAULT_SCORE
    categories: list[str] = field(default_factory=list)
    type: str = "Other"
    publication_date: str | None = None
    search_context: dict[str, Any] = field(default_factory=dict)


# ------------------------------------------------------------------
# Coercion helpers
# ------------------------------------------------------------------


def coerce_score(value: Any, default: int = DEFAULT_SCORE) -> int:
    """Integer score in 0..10, or *default* when absent, non-numeric or out of range."""
    if isinstance(value, bool) or value is None:
        return default
    try:
        score = float(value)
    except (TypeError, ValueError):
        return default
    if score != score or not 0 <= score <= 10:  # NaN or out of range
        return default
    return int(round(score))


def coerce_type(value: Any) -> str:
    if isinstance(value, str):
        for known in DISCOVERY_TYPES:
            if value.strip().lower() == known.lower():
                return known
    return "Other"


def coerce_categories(value: Any) -> list[str]:
    """Unique, non-empty category strings in first-seen order."""
    if not isinstance(value, list):
        return []
    seen: list[str] = []
    for item in value:
        if isinstance(item, str) and item.strip() and item.strip() not in seen:
            seen.append(item.strip())
    return seen


def truncate_content(content: str, max_chars: int = DEFAULT_MAX_CONTENT_CHARS) -> str:
    if len(content) <= max_chars:
        return content
    return content[:max_chars] + TRUNCATION_MARKER


def project_brief(project: Project, **extra: Any) -> dict[str, Any]:
    """Project fields the prompts describe, plus any *extra* context."""
    brief: dict[str, Any] = {
        "name": project.name,
        "description": project.description,
        "domain": project.domain,
        "goals": project.goals,
        "interests": project.interests,
    }
    brief.update({k: v for k, v in extra.items() if v is not None})
    return brief


def candidates_from_payload(payload: dict) -> list[DiscoveryCandidate]:
    """Build candidates from a ``{"discoveries": [...]}`` object.

    Entries without a title are skipped; other fields fall back to defaults.
    """
    entries = payload.get("discoveries")
    if not isinstance(entries, list):
        raise BackendError("Response has no 'discoveries' list")

    candidates: list[DiscoveryCandidate] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        title = str(entry.get("title") or "").strip()
        if not title:
            continue
        candidates.append(
            DiscoveryCandidate(
                title=title,
                description=str(entry.get("description") or "").strip(),
                source=str(entry.get("source") or entry.get("url") or "").strip(),
                relevance_score=coerce_score(entry.get("relevanceScore")),
                categories=coerce_categories(entry.get("categories")),
                type=coerce_type(entry.get("type")),
                publication_date=entry.get("date") if isinstance(entry.get("date"), str) else None,
            )
        )
    return candidates


# ------------------------------------------------------------------
# Transformer
# ------------------------------------------------------------------


class DiscoveryTransformer:
    """Sends content to the backend and validates the candidates it returns.

    Args:
        llm: Client used for extraction and scoring.
        probe: Reachability check for candidate sources.
        max_content_chars: Content longer than this is cut before sending.
        probe_timeout: Per-probe timeout in seconds.
    """

    def __init__(
        self,
        llm: LLMClient,
        probe: Callable[[str, float], UrlCheck] = probe_url,
        max_content_chars: int = DEFAULT_MAX_CONTENT_CHARS,
        probe_timeout: float = 5.0,
    ) -> None:
        self._llm = llm
        self._probe = probe
        self.max_content_chars = max_content_chars
        self.probe_timeout = probe_timeout

    def extract_discoveries(
        self,
        content: str,
        project_context: dict[str, Any],
        source_fallback: str | None = None,
    ) -> list[DiscoveryCandidate]:
        """Ask the backend for discoveries in *content* and return the valid ones.

        Args:
            content: Newsletter or page content (cut to ``max_content_chars``).
            project_context: Project description from :func:`project_brief`.
            source_fallback: Textual source for candidates that carry no
                source at all (e.g. ``"Newsletter: <sender>"``). Without it
                such candidates are dropped.

        Returns:
            Candidates whose source passed validation. Empty when the backend
            fails or returns an unreadable shape.
        """
        messages = [
            {"role": "system", "content": _EXTRACT_SYSTEM},
            {
                "role": "user",
                "content": _EXTRACT_USER.format(
                    project=json.dumps(project_context, indent=2, default=str),
                    content=truncate_content(content, self.max_content_chars),
                ),
            },
        ]
        try:
            payload = self._llm.complete_json(messages, max_tokens=4096)
            candidates = candidates_from_payload(payload)
        except BackendError as exc:
            logger.warning("Discovery extraction returned nothing usable: %s", exc)
            return []
        return self.validate_candidates(candidates, source_fallback)

    def parse_candidates(self, raw: str) -> list[DiscoveryCandidate]:
        """Parse a free-form backend answer holding a ``discoveries`` object."""
        try:
            return candidates_from_payload(parse_json_object(raw))
        except BackendError as exc:
            logger.warning("Could not parse discoveries from answer: %s", exc)
            return []

    def validate_candidates(
        self,
        candidates: list[DiscoveryCandidate],
        source_fallback: str | None = None,
    ) -> list[DiscoveryCandidate]:
        """Normalise each source and drop candidates whose URL fails the probe."""
        valid: list[DiscoveryCandidate] = []
        for candidate in candidates:
            if not candidate.source:
                if source_fallback:
                    candidate.source = source_fallback
                    valid.append(candidate)
                else:
                    logger.info("Dropping %r: no source", candidate.title)
                continue
            try:
                candidate.source = self.check_source(candidate.source)
            except SourceValidationError as exc:
                logger.info("Dropping %r: %s", candidate.title, exc)
                continue
            valid.append(candidate)
        return valid

    def check_source(self, source: str) -> str:
        """Return the normalised *source* URL if it is well-formed and reachable.

        Raises:
            SourceValidationError: Not an http(s) URL, or the probe failed.
        """
        if not _URL_RE.match(source):
            raise SourceValidationError(source, "malformed")
        url = normalize_url(source)
        check = self._probe(url, self.probe_timeout)
        if not check.valid:
            raise SourceValidationError(url, check.reason)
        return url

    def score_result(
        self, project: Project, title: str, description: str, url: str
    ) -> tuple[int, list[str]]:
        """Relevance score and categories for one web-search result.

        Raises:
            BackendError: The call failed or the answer has no numeric score.
        """
        messages = [
            {"role": "system", "content": _SCORE_SYSTEM},
            {
                "role": "user",
                "content": _SCORE_USER.format(
                    project=json.dumps(project_brief(project), indent=2),
                    title=title,
                    description=description,
                    url=url,
                ),
            },
        ]
        data = self._llm.complete_json(messages, max_tokens=256)
        score = coerce_score(data.get("relevanceScore"), default=-1)
        if score < 0:
            raise BackendError(f"No usable relevanceScore in {data!r}")
        return score, coerce_categories(data.get("categories"))
