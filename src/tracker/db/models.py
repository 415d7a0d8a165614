"""Domain models for the tracker database layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

PROGRESS_STATES: tuple[str, ...] = ("Not Started", "In Progress", "Completed", "Other")
DISCOVERY_TYPES: tuple[str, ...] = (
    "Article",
    "Discussion",
    "News",
    "Research",
    "Tool",
    "Other",
)
ENTRY_TYPES: tuple[str, ...] = (
    "agent_question",
    "user_update",
    "user_response",
    "milestone",
    "feedback",
)
TASK_TYPES: tuple[str, ...] = ("search", "summarize", "update")
FREQUENCIES: tuple[str, ...] = ("hourly", "daily", "weekly", "monthly")


@dataclass
class Milestone:
    description: str
    achieved: bool = False
    date: str | None = None


@dataclass
class Project:
    id: str
    user_id: str
    name: str
    description: str = ""
    domain: str = ""
    goals: list[str] = field(default_factory=list)
    interests: list[str] = field(default_factory=list)
    progress: str = "Not Started"
    milestones: list[Milestone] = field(default_factory=list)
    last_updated: str | None = None
    created_at: str | None = None


@dataclass
class UserFeedback:
    useful: bool | None = None
    not_useful: bool | None = None
    relevance: int | None = None
    notes: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "useful": self.useful,
            "not_useful": self.not_useful,
            "relevance": self.relevance,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserFeedback:
        return cls(
            useful=data.get("useful"),
            not_useful=data.get("not_useful"),
            relevance=data.get("relevance"),
            notes=data.get("notes") or "",
        )


@dataclass
class Discovery:
    project_id: str
    title: str
    source: str
    description: str = ""
    relevance_score: int = 5
    categories: list[str] = field(default_factory=list)
    type: str = "Other"
    id: str | None = None  # set on insert
    discovered_at: str | None = None
    publication_date: str | None = None
    viewed: bool = False
    viewed_at: str | None = None
    hidden: bool = False
    presented: bool = False
    feedback: UserFeedback = field(default_factory=UserFeedback)
    search_context: dict[str, Any] = field(default_factory=dict)


@dataclass
class ContextEntry:
    id: str
    type: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: str | None = None


@dataclass
class ProjectContext:
    id: str
    project_id: str
    current_phase: str = "initial"
    progress_percentage: int = 0
    entries: list[ContextEntry] = field(default_factory=list)
    last_updated: str | None = None

    def latest_question(self) -> ContextEntry | None:
        """Return the most recent ``agent_question`` entry, if any."""
        for entry in reversed(self.entries):
            if entry.type == "agent_question":
                return entry
        return None

    def entries_of(self, entry_type: str) -> list[ContextEntry]:
        return [e for e in self.entries if e.type == entry_type]


@dataclass
class Schedule:
    id: str
    project_id: str
    task_type: str
    frequency: str
    next_run: str
    last_run: str | None = None
    active: bool = True
    parameters: dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None
