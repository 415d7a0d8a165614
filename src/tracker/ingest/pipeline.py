"""Newsletter ingestion: extract → transform → store, per project of the mailbox owner."""

from __future__ import annotations

from dataclasses import dataclass

from tracker.db.models import Project
from tracker.db.repository import Repository
from tracker.discovery.store import DiscoveryStore
from tracker.discovery.transformer import (
    DiscoveryCandidate,
    DiscoveryTransformer,
    project_brief,
)
from tracker.ingest import newsletters
from tracker.ingest.mailbox import NewsletterMessage
from tracker.ingest.newsletters import ExtractedItem, Extraction
from tracker.ingest.urls import decode_quoted_printable
from tracker.log import get_logger

logger = get_logger(__name__)

# (keywords, type) checked in order; the first hit wins.
_TYPE_KEYWORDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("announces", "launches", "introduces", "reveals"), "News"),
    (("research", "paper"), "Research"),
    (("tutorial", "guide", "how to", "case study"), "Article"),
    (("discussion", "debate", "forum"), "Discussion"),
)

# (keywords, category, score); a later hit overrides the score of an earlier one.
_CATEGORY_KEYWORDS: tuple[tuple[tuple[str, ...], str, int], ...] = (
    (("ai", "ml", "model", "gpt", "llm"), "AI Tools", 6),
    (("image", "video", "render", "visual"), "Visual Processing", 7),
    (("3d", "animation", "motion"), "Animation", 8),
    (("api", "sdk", "developer"), "Development Tools", 6),
    (("editing", "generation"), "Content Creation", 7),
)


@dataclass
class IngestResult:
    projects: int = 0
    discoveries: int = 0


def build_content(message: NewsletterMessage, extraction: Extraction) -> str:
    """Model-facing text: the body plus extracted links and items."""
    body = message.body
    if newsletters.looks_like_html(body):
        text = newsletters.html_to_markdown(decode_quoted_printable(body))
    else:
        text = body
    parts = [text]

    links = newsletters.extract_links(body)
    if links:
        parts.append("### EXTRACTED LINKS ###")
        parts.extend(f"[Link {i}] {url}" for i, url in enumerate(links, 1))

    if extraction.items:
        parts.append("### NEWSLETTER ITEMS ###")
        for i, item in enumerate(extraction.items, 1):
            lines = [f"[Item {i}] {item.title}"]
            if item.url:
                lines.append(f"URL: {item.url}")
            if item.category:
                lines.append(f"Category: {item.category}")
            if item.popularity:
                lines.append(f"Popularity: {item.popularity} Likes")
            if item.description:
                lines.append(f"Description: {item.description}")
            parts.append("\n".join(lines))
    return "\n\n".join(parts)


def item_candidate(item: ExtractedItem, project: Project, newsletter: str) -> DiscoveryCandidate:
    """Keyword-scored candidate for an extracted item, used when the backend yields nothing."""
    lowered = item.title.lower()
    words = set(lowered.replace("-", " ").split())

    kind = "Tool"
    for keywords, type_name in _TYPE_KEYWORDS:
        if any(k in lowered for k in keywords):
            kind = type_name
            break

    categories = [item.category] if item.category else []
    score = 5
    for keywords, category, keyword_score in _CATEGORY_KEYWORDS:
        # short keywords must match whole words ("ai" is not in "email")
        if any((k in words) if len(k) <= 3 else (k in lowered) for k in keywords):
            categories.append(category)
            score = keyword_score
    if any(i and i.lower() in lowered for i in project.interests):
        score += 2
    score = min(score, 10)

    categories.extend(["AI", "Technology"])
    description = item.description or f"Mentioned in the {newsletter} newsletter."
    if item.category:
        description += f" Category: {item.category}."
    if item.popularity:
        description += f" {item.popularity} likes."

    return DiscoveryCandidate(
        title=item.title,
        description=description,
        source=item.url,
        relevance_score=score,
        categories=list(dict.fromkeys(categories)),
        type=kind,
    )


class NewsletterIngestor:
    """Feeds parsed newsletter messages into every project of one user."""

    def __init__(
        self,
        repo: Repository,
        transformer: DiscoveryTransformer,
        store: DiscoveryStore,
    ) -> None:
        self._repo = repo
        self._transformer = transformer
        self._store = store

    def handler_for(self, user_id: str):
        """Message handler bound to *user_id*, for :meth:`MailboxPoller.check_mailbox`."""
        return lambda message: self.ingest_message(message, user_id)

    def ingest_message(self, message: NewsletterMessage, user_id: str) -> IngestResult:
        """Extract, transform and store one newsletter for each of the user's projects."""
        result = IngestResult()
        projects = self._repo.list_projects(user_id)
        if not projects:
            logger.info("No projects for user %s; skipping %r", user_id, message.subject)
            return result

        extraction = newsletters.extract(message.body, message.sender)
        content = build_content(message, extraction)
        logger.info(
            "Newsletter %r (%s): %d items, %d sections",
            message.subject,
            extraction.format_name,
            len(extraction.items),
            len(extraction.sections),
        )

        for project in projects:
            result.projects += 1
            result.discoveries += self._ingest_for_project(project, message, extraction, content)
        return result

    def _ingest_for_project(
        self,
        project: Project,
        message: NewsletterMessage,
        extraction: Extraction,
        content: str,
    ) -> int:
        context = project_brief(
            project,
            newsletterName=message.sender,
            newsletterSubject=message.subject,
            newsletterDate=message.date,
        )
        candidates = self._transformer.extract_discoveries(
            content, context, source_fallback=f"Newsletter: {message.sender}"
        )
        if not candidates and extraction.items:
            logger.info("Using %d extracted items directly for %s", len(extraction.items), project.id)
            candidates = [
                item_candidate(item, project, extraction.format_name)
                for item in extraction.items
                if item.url
            ]

        stored = 0
        for candidate in candidates:
            candidate.publication_date = candidate.publication_date or message.date
            candidate.search_context = {
                "source": "newsletter",
                "newsletterName": message.sender,
                "newsletterSubject": message.subject,
            }
            self._store.upsert(project.id, candidate)
            stored += 1
        return stored
