"""Discovery store writer: dedup-aware persistence and user-state updates."""

from __future__ import annotations

from typing import Any, Sequence

from tracker.db.models import Discovery, Project, UserFeedback
from tracker.db.repository import Repository, now_iso
from tracker.discovery.transformer import DiscoveryCandidate, coerce_score
from tracker.errors import AuthorizationError, NotFoundError
from tracker.log import get_logger

logger = get_logger(__name__)


class DiscoveryStore:
    """Writes discoveries for a project and applies user feedback.

    Every write goes through :meth:`Repository.upsert_discovery`, so the
    (project, source) pair stays unique even with concurrent ingestion paths.
    """

    def __init__(self, repo: Repository) -> None:
        self._repo = repo

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    def get_project(self, project_id: str, user_id: str | None = None) -> Project:
        """Return the project, checking ownership when *user_id* is given.

        Raises:
            NotFoundError: Unknown project.
            AuthorizationError: Project owned by another user.
        """
        project = self._repo.get_project(project_id)
        if project is None:
            raise NotFoundError(f"Project not found: {project_id}")
        if user_id is not None and project.user_id != user_id:
            raise AuthorizationError(f"Project {project_id} is not owned by {user_id}")
        return project

    def get_discovery(self, discovery_id: str, user_id: str | None = None) -> Discovery:
        discovery = self._repo.get_discovery(discovery_id)
        if discovery is None:
            raise NotFoundError(f"Discovery not found: {discovery_id}")
        self.get_project(discovery.project_id, user_id)
        return discovery

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, project_id: str, candidate: DiscoveryCandidate) -> Discovery:
        """Insert *candidate* or merge it into the stored (project, source) record.

        A stored record only takes the candidate's score and categories when
        the candidate scores strictly higher. Re-submitting the same candidate
        changes nothing.
        """
        stored, created = self._repo.upsert_discovery(
            Discovery(
                project_id=project_id,
                title=candidate.title,
                description=candidate.description,
                source=candidate.source,
                relevance_score=coerce_score(candidate.relevance_score),
                categories=list(candidate.categories),
                type=candidate.type,
                publication_date=candidate.publication_date,
                search_context=dict(candidate.search_context),
            )
        )
        if created:
            logger.info("New discovery for %s: %r (%d)", project_id, stored.title, stored.relevance_score)
        else:
            logger.debug("Merged discovery %s (score now %d)", stored.source, stored.relevance_score)
        return stored

    def mark_presented(self, discovery_ids: Sequence[str]) -> int:
        return self._repo.mark_presented(discovery_ids)

    def mark_viewed(self, discovery_id: str, user_id: str | None = None) -> Discovery:
        discovery = self.get_discovery(discovery_id, user_id)
        discovery.viewed = True
        discovery.viewed_at = now_iso()
        self._repo.update_discovery_flags(discovery)
        return discovery

    def toggle_hidden(self, discovery_id: str, user_id: str | None = None) -> Discovery:
        discovery = self.get_discovery(discovery_id, user_id)
        discovery.hidden = not discovery.hidden
        self._repo.update_discovery_flags(discovery)
        return discovery

    def record_feedback(
        self,
        discovery_id: str,
        feedback: dict[str, Any],
        user_id: str | None = None,
    ) -> Discovery:
        """Merge *feedback* keys (useful, not_useful, relevance, notes) into the record.

        Giving feedback also marks the discovery viewed.
        """
        discovery = self.get_discovery(discovery_id, user_id)
        merged = discovery.feedback.to_dict()
        merged.update({k: v for k, v in feedback.items() if k in merged})
        discovery.feedback = UserFeedback.from_dict(merged)
        if not discovery.viewed:
            discovery.viewed = True
            discovery.viewed_at = now_iso()
        self._repo.update_discovery_flags(discovery)
        return discovery

    def bulk_update(
        self,
        project_id: str,
        action: str,
        ids: Sequence[str] | None = None,
        filter: str | None = None,
        user_id: str | None = None,
    ) -> int:
        """Apply markViewed, markUnviewed, hide or unhide to many discoveries.

        Raises:
            ValueError: Unknown action/filter or no selection.
        """
        self.get_project(project_id, user_id)
        count = self._repo.bulk_update_discoveries(project_id, action, ids=ids, filter=filter)
        logger.info("Bulk %s on %s: %d discoveries", action, project_id, count)
        return count

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list(
        self,
        project_id: str,
        filter: str = "all",
        sort: str = "relevance",
        limit: int | None = 50,
        user_id: str | None = None,
    ) -> list[Discovery]:
        self.get_project(project_id, user_id)
        return self._repo.list_discoveries(project_id, filter=filter, sort=sort, limit=limit)

    def counts(self, project_id: str) -> dict[str, int]:
        return self._repo.count_discoveries(project_id)
