"""Project context agent: append-only context log, progress analysis, follow-up questions.

Every mutation of one project's context runs under that project's lock, so
entries keep their issuance order and read-modify-write updates are not lost
when the CLI and the background worker touch the same project.
"""

from __future__ import annotations

import json
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator

from tracker.db.models import ContextEntry, Milestone, Project, ProjectContext
from tracker.db.repository import Repository, new_id, now_iso
from tracker.errors import BackendError, NotFoundError, ProgressAnalysisFailed
from tracker.llm.client import LLMClient, parse_json_object
from tracker.log import get_logger

logger = get_logger(__name__)

SEED_QUESTION = "What is your current progress on this project?"
MILESTONE_STEP = 10
MAX_QUERIES = 5

# Checked in order against the lower-cased phase; first substring hit wins.
FALLBACK_QUESTIONS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("initial", "planning"), "What are your initial goals and requirements for this project?"),
    (
        ("development", "implementation"),
        "What challenges are you facing in the current development phase?",
    ),
    (("testing",), "How is the testing process going, and what issues have you identified?"),
    (("deployment", "launch"), "What are your plans for deployment and launch?"),
    (
        ("maintenance", "completed"),
        "What outcomes have you achieved, and what are your next steps?",
    ),
)

_YEAR_RE = re.compile(r"\b\d{4}\b")
_TEMPORAL_RE = re.compile(
    r"\bthis\s+year\b|\b(?:recent|latest|new|current|today|upcoming|modern|emerging)\b",
    re.IGNORECASE,
)
_QUOTED_RE = re.compile(r'"([^"\n]+)"')

_PROGRESS_SYSTEM = (
    "You analyse project progress from the user's own words. Determine the current "
    "phase of the project and estimate a progress percentage from 0 to 100."
)

_QUESTION_SYSTEM = (
    "You help users track their progress on projects in {domain}. Ask one relevant, "
    "specific, actionable follow-up question that builds on their recent answers, asks "
    "about useful discoveries, and fits the project phase. Do not repeat recent questions. "
    "Reply with the question only."
)

_QUERY_SYSTEM = (
    "You write web search queries for a project from its context and the user's feedback. "
    "Focus on core topics and technologies. Never include dates, years or time words "
    "such as recent, latest, new or current."
)


# ------------------------------------------------------------------
# Per-project locks
# ------------------------------------------------------------------

_LOCKS: dict[str, threading.RLock] = {}
_LOCKS_GUARD = threading.Lock()


@contextmanager
def project_lock(project_id: str) -> Iterator[None]:
    """Serialise context mutations for *project_id* across threads."""
    with _LOCKS_GUARD:
        lock = _LOCKS.setdefault(project_id, threading.RLock())
    with lock:
        yield


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def scrub_query(query: str) -> str:
    """Remove year tokens and temporal words, then collapse whitespace."""
    cleaned = _YEAR_RE.sub(" ", query)
    cleaned = _TEMPORAL_RE.sub(" ", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned)
    return cleaned.strip(" ,;:-")


def scrub_queries(queries: list[Any], limit: int = MAX_QUERIES) -> list[str]:
    """Scrub, drop empties and duplicates, and cap at *limit*."""
    result: list[str] = []
    for query in queries:
        if not isinstance(query, str):
            continue
        cleaned = scrub_query(query)
        if cleaned and cleaned.lower() not in (q.lower() for q in result):
            result.append(cleaned)
        if len(result) >= limit:
            break
    return result


def fallback_question(phase: str | None) -> str:
    lowered = (phase or "").lower()
    for keys, question in FALLBACK_QUESTIONS:
        if any(k in lowered for k in keys):
            return question
    return SEED_QUESTION


def progress_state(percentage: int) -> str:
    if percentage >= 100:
        return "Completed"
    if percentage > 0:
        return "In Progress"
    return "Not Started"


def _format_entries(entries: list[ContextEntry]) -> str:
    return "\n".join(f"{e.type}: {e.content}" for e in entries) or "(none)"


def _bullets(lines: list[str]) -> str:
    return "\n".join(f"- {line}" for line in lines) or "(none)"


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class ProgressAnalysis:
    phase: str
    percentage: int
    reasoning: str = ""


def parse_progress_analysis(raw: str) -> ProgressAnalysis:
    """Read ``{phase, progressPercentage, reasoning}`` from a backend answer.

    Raises:
        ProgressAnalysisFailed: Not JSON, or phase/percentage missing or invalid.
    """
    try:
        data = parse_json_object(raw)
    except BackendError as exc:
        raise ProgressAnalysisFailed(f"Unparseable progress analysis: {exc}") from exc

    phase = data.get("phase")
    pct = data.get("progressPercentage")
    if not isinstance(phase, str) or not phase.strip():
        raise ProgressAnalysisFailed("Progress analysis has no phase")
    if isinstance(pct, bool):
        raise ProgressAnalysisFailed("Progress analysis has no numeric progressPercentage")
    try:
        value = float(pct)
    except (TypeError, ValueError) as exc:
        raise ProgressAnalysisFailed("Progress analysis has no numeric progressPercentage") from exc
    if value != value:
        raise ProgressAnalysisFailed("Progress analysis percentage is NaN")
    return ProgressAnalysis(
        phase=phase.strip(),
        percentage=max(0, min(100, int(round(value)))),
        reasoning=str(data.get("reasoning") or ""),
    )


# ------------------------------------------------------------------
# Agent
# ------------------------------------------------------------------


class ContextAgent:
    """Keeps each project's context log and asks the next question.

    Args:
        repo: Repository over an open connection.
        llm: Client for progress analysis, questions and query generation.
    """

    def __init__(self, repo: Repository, llm: LLMClient) -> None:
        self._repo = repo
        self._llm = llm

    def _project(self, project_id: str) -> Project:
        project = self._repo.get_project(project_id)
        if project is None:
            raise NotFoundError(f"Project not found: {project_id}")
        return project

    # ------------------------------------------------------------------
    # Context log
    # ------------------------------------------------------------------

    def get_or_create_context(self, project_id: str) -> ProjectContext:
        """Return the project's context, creating it with the seed question if missing."""
        with project_lock(project_id):
            self._project(project_id)
            context = self._repo.get_context(project_id)
            if context is not None:
                return context
            seed = ContextEntry(
                id=new_id(),
                type="agent_question",
                content=SEED_QUESTION,
                metadata={"seed": True},
            )
            logger.info("Creating context for project %s", project_id)
            return self._repo.create_context(project_id, seed)

    def add_user_update(
        self, project_id: str, text: str, metadata: dict[str, Any] | None = None
    ) -> tuple[ProjectContext, str]:
        """Append a free-form update and ask a follow-up. Progress is not re-scored."""
        with project_lock(project_id):
            context = self.get_or_create_context(project_id)
            self._repo.append_entry(
                context.id,
                ContextEntry(id=new_id(), type="user_update", content=text, metadata=dict(metadata or {})),
            )
            question = self.generate_follow_up_question(self._reload(project_id))
            return self._reload(project_id), question

    def add_user_response(
        self,
        project_id: str,
        question_id: str | None,
        text: str,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[ProjectContext, str]:
        """Record an answer, re-score progress, then ask the next question.

        The answered question is the agent question with *question_id*, else
        the most recent agent question, else none (a free-standing response
        recorded with ``question_id="general"``). A failed progress analysis
        is logged and leaves progress untouched; the response is kept.
        """
        with project_lock(project_id):
            context = self.get_or_create_context(project_id)
            question = None
            if question_id:
                question = next(
                    (e for e in context.entries if e.id == question_id and e.type == "agent_question"),
                    None,
                )
            if question is None:
                question = context.latest_question()

            meta = dict(metadata or {})
            if question is not None:
                meta["question_id"] = question.id
                meta["question_content"] = question.content
            else:
                meta["question_id"] = "general"

            self._repo.append_entry(
                context.id,
                ContextEntry(id=new_id(), type="user_response", content=text, metadata=meta),
            )

            try:
                self.update_progress(self._reload(project_id), text)
            except ProgressAnalysisFailed as exc:
                logger.warning("Progress not updated for %s: %s", project_id, exc)

            question_text = self.generate_follow_up_question(self._reload(project_id))
            return self._reload(project_id), question_text

    def add_feedback(
        self,
        project_id: str,
        discovery_id: str,
        title: str,
        feedback_type: str,
        notes: str = "",
    ) -> ContextEntry:
        """Append a feedback entry (``feedback_type`` is positive or negative)."""
        label = "Positive" if feedback_type == "positive" else "Negative"
        content = f'{label} feedback on discovery: "{title}"'
        if notes:
            content += f" - Notes: {notes}"
        with project_lock(project_id):
            context = self.get_or_create_context(project_id)
            entry = ContextEntry(
                id=new_id(),
                type="feedback",
                content=content,
                metadata={"discovery_id": discovery_id, "feedback_type": feedback_type, "notes": notes},
            )
            return self._repo.append_entry(context.id, entry)

    def _reload(self, project_id: str) -> ProjectContext:
        context = self._repo.get_context(project_id)
        if context is None:
            raise NotFoundError(f"Context not found for project {project_id}")
        return context

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def update_progress(self, context: ProjectContext, latest_response: str) -> ProjectContext:
        """Re-estimate phase and percentage from the log and *latest_response*.

        Context fields, the optional milestone entry and the project's progress
        state are written in one transaction, after the analysis is parsed.

        Raises:
            ProgressAnalysisFailed: Backend failed or the answer was unusable.
                Nothing is written.
        """
        messages = [
            {"role": "system", "content": _PROGRESS_SYSTEM},
            {
                "role": "user",
                "content": (
                    f"Project context:\n{_format_entries(context.entries)}\n\n"
                    f"Latest response: {latest_response}\n\n"
                    f"Current phase: {context.current_phase}\n"
                    f"Current progress: {context.progress_percentage}%\n\n"
                    'Return JSON: {"phase": "string", "progressPercentage": number, '
                    '"reasoning": "string"}'
                ),
            },
        ]
        try:
            raw = self._llm.complete(messages, json_mode=True, max_tokens=512)
        except BackendError as exc:
            raise ProgressAnalysisFailed(f"Progress analysis call failed: {exc}") from exc
        analysis = parse_progress_analysis(raw)

        with project_lock(context.project_id):
            project = self._project(context.project_id)
            previous = context.progress_percentage
            context.current_phase = analysis.phase
            context.progress_percentage = analysis.percentage

            new_entries: list[ContextEntry] = []
            if abs(analysis.percentage - previous) >= MILESTONE_STEP:
                new_entries.append(
                    ContextEntry(
                        id=new_id(),
                        type="milestone",
                        content=(
                            f"Project reached {analysis.percentage}% completion "
                            f"in the {analysis.phase} phase."
                        ),
                        metadata={
                            "phase": analysis.phase,
                            "progress_percentage": analysis.percentage,
                            "previous_percentage": previous,
                            "reasoning": analysis.reasoning,
                        },
                    )
                )

            ts = now_iso()
            project.progress = progress_state(analysis.percentage)
            project.last_updated = ts
            phase_milestone = f"Entered {analysis.phase} phase"
            if not any(
                m.description.lower() == phase_milestone.lower() for m in project.milestones
            ):
                project.milestones.append(
                    Milestone(description=phase_milestone, achieved=True, date=ts)
                )

            self._repo.save_progress(context, new_entries, project)
            logger.info(
                "Project %s progress %d%% -> %d%% (%s)",
                context.project_id,
                previous,
                analysis.percentage,
                analysis.phase,
            )
            return self._reload(context.project_id)

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    def generate_follow_up_question(self, context: ProjectContext) -> str:
        """Ask the backend for the next question and append it to the log.

        Falls back to a phase-keyed default when the backend fails, so exactly
        one ``agent_question`` entry is always appended.
        """
        with project_lock(context.project_id):
            project = self._project(context.project_id)
            recent = self._repo.recent_discoveries(project.id, limit=5)
            useful = self._repo.list_discoveries(project.id, filter="useful", sort="date", limit=3)

            try:
                question = self._ask_question(project, context, recent, useful)
                generated = True
            except BackendError as exc:
                logger.warning("Follow-up question failed for %s, using default: %s", project.id, exc)
                question = fallback_question(context.current_phase)
                generated = False

            self._repo.append_entry(
                context.id,
                ContextEntry(
                    id=new_id(),
                    type="agent_question",
                    content=question,
                    metadata={
                        "generated": generated,
                        "project_phase": context.current_phase,
                        "progress_percentage": context.progress_percentage,
                        "recent_discoveries_count": len(recent),
                        "useful_discoveries_count": len(useful),
                    },
                ),
            )
            return question

    def _ask_question(self, project, context, recent, useful) -> str:
        cutoff = datetime.now(timezone.utc) - timedelta(days=1)
        asked_today = [
            e
            for e in context.entries
            if e.type == "agent_question" and (_parse_timestamp(e.timestamp) or cutoff) > cutoff
        ]
        responses = context.entries_of("user_response")[-3:]
        prompt = (
            f"Project name: {project.name}\n"
            f"Project domain: {project.domain}\n"
            f"Project goals: {', '.join(project.goals)}\n"
            f"Project phase: {context.current_phase}\n"
            f"Progress: {context.progress_percentage}%\n\n"
            f"Recent context entries:\n{_format_entries(context.entries[-5:])}\n\n"
            f"Recent user responses:\n{_bullets([e.content for e in responses])}\n\n"
            f"Recent discoveries:\n{_bullets([f'{d.title}: {d.description[:100]}' for d in recent])}\n\n"
            f"Discoveries marked as useful:\n{_bullets([d.title for d in useful])}\n\n"
            f"Questions asked in the last 24 hours: {len(asked_today)}\n"
            + "".join(f"- {e.content}\n" for e in asked_today)
        )
        messages = [
            {"role": "system", "content": _QUESTION_SYSTEM.format(domain=project.domain or "their field")},
            {"role": "user", "content": prompt},
        ]
        question = self._llm.complete(messages, max_tokens=256).strip().strip('"').strip()
        if not question:
            raise BackendError("Empty question from backend")
        return question

    # ------------------------------------------------------------------
    # Search queries
    # ------------------------------------------------------------------

    def generate_contextual_search_queries(self, project_id: str) -> list[str]:
        """Up to five search queries from the project, its log and discovery feedback.

        Year tokens and temporal words are scrubbed from whatever the backend
        returns.

        Raises:
            BackendError: The call failed or produced no usable query.
        """
        project = self._project(project_id)
        context = self.get_or_create_context(project_id)
        liked = self._repo.list_discoveries(project_id, filter="useful", sort="date", limit=5)
        disliked = self._repo.list_discoveries(project_id, filter="notUseful", sort="date", limit=5)
        feedback = context.entries_of("feedback")[-5:]

        prompt = (
            f"Project domain: {project.domain}\n"
            f"Project goals: {', '.join(project.goals)}\n"
            f"Project interests: {', '.join(project.interests)}\n"
            f"Current phase: {context.current_phase}\n"
            f"Progress: {context.progress_percentage}%\n\n"
            f"Recent context:\n{_format_entries(context.entries[-5:])}\n\n"
            f"Recent feedback:\n{_bullets([e.content for e in feedback])}\n\n"
            f"User found these discoveries useful:\n{_bullets([d.title for d in liked])}\n\n"
            f"User did NOT find these useful:\n{_bullets([d.title for d in disliked])}\n\n"
            f"Return {MAX_QUERIES} queries as JSON: " + json.dumps({"queries": ["query1", "query2"]})
        )
        messages = [
            {"role": "system", "content": _QUERY_SYSTEM},
            {"role": "user", "content": prompt},
        ]
        raw = self._llm.complete(messages, json_mode=True, max_tokens=512)
        try:
            found = parse_json_object(raw).get("queries")
            if not isinstance(found, list):
                raise BackendError("No 'queries' list")
        except BackendError:
            logger.warning("Query response was not JSON, pulling quoted strings instead")
            found = _QUOTED_RE.findall(raw)

        queries = scrub_queries(found)
        if not queries:
            raise BackendError("No usable search queries generated")
        logger.info("Contextual queries for %s: %s", project_id, queries)
        return queries
