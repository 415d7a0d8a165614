"""Recurring project tasks: search, summarize and update.

Schedules live in the database. ``process_due_schedules`` runs every active
schedule whose ``next_run`` has passed, then moves it forward by its
frequency. A failing task is logged and left due, so the next check retries
it; the rest of the batch still runs.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from tracker.context.agent import ContextAgent
from tracker.db.models import FREQUENCIES, TASK_TYPES, Schedule
from tracker.db.repository import Repository, new_id
from tracker.errors import NotFoundError
from tracker.log import get_logger
from tracker.search.orchestrator import SearchOrchestrator

logger = get_logger(__name__)


def _add_month(moment: datetime) -> datetime:
    year = moment.year + moment.month // 12
    month = moment.month % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def calculate_next_run(now: datetime, frequency: str) -> datetime:
    """Next run after *now*: +1h, +1d, +7d or +1 calendar month (clamped).

    Unknown frequencies run daily.
    """
    if frequency == "hourly":
        return now + timedelta(hours=1)
    if frequency == "weekly":
        return now + timedelta(days=7)
    if frequency == "monthly":
        return _add_month(now)
    if frequency != "daily":
        logger.warning("Unknown frequency %r, scheduling daily", frequency)
    return now + timedelta(days=1)


@dataclass
class ScheduleRun:
    executed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class Scheduler:
    """Creates schedules and runs the ones that are due.

    Args:
        repo: Repository over an open connection.
        orchestrator: Runs search and summarize tasks.
        agent: Runs update tasks (a new follow-up question).
    """

    def __init__(
        self,
        repo: Repository,
        orchestrator: SearchOrchestrator,
        agent: ContextAgent,
    ) -> None:
        self._repo = repo
        self._orchestrator = orchestrator
        self._agent = agent

    def create_schedule(
        self,
        project_id: str,
        task_type: str,
        frequency: str,
        parameters: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> Schedule:
        """Add a schedule whose first run is one period from *now*.

        Raises:
            ValueError: Unknown task type or frequency.
            NotFoundError: Unknown project.
        """
        if task_type not in TASK_TYPES:
            raise ValueError(f"Unknown task type {task_type!r}; expected one of {TASK_TYPES}")
        if frequency not in FREQUENCIES:
            raise ValueError(f"Unknown frequency {frequency!r}; expected one of {FREQUENCIES}")
        if self._repo.get_project(project_id) is None:
            raise NotFoundError(f"Project not found: {project_id}")

        now = now or datetime.now(timezone.utc)
        schedule = Schedule(
            id=new_id(),
            project_id=project_id,
            task_type=task_type,
            frequency=frequency,
            next_run=calculate_next_run(now, frequency).isoformat(),
            parameters=dict(parameters or {}),
        )
        self._repo.add_schedule(schedule)
        logger.info("Scheduled %s %s for %s", frequency, task_type, project_id)
        return schedule

    def update_schedule(
        self,
        schedule_id: str,
        *,
        frequency: str | None = None,
        active: bool | None = None,
        parameters: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> Schedule:
        """Change a schedule. A new frequency recomputes ``next_run`` from *now*;
        *parameters* are merged into the existing ones.
        """
        schedule = self._repo.get_schedule(schedule_id)
        if schedule is None:
            raise NotFoundError(f"Schedule not found: {schedule_id}")
        if frequency is not None:
            if frequency not in FREQUENCIES:
                raise ValueError(f"Unknown frequency {frequency!r}; expected one of {FREQUENCIES}")
            schedule.frequency = frequency
            schedule.next_run = calculate_next_run(
                now or datetime.now(timezone.utc), frequency
            ).isoformat()
        if active is not None:
            schedule.active = active
        if parameters:
            schedule.parameters = {**schedule.parameters, **parameters}
        self._repo.update_schedule(schedule)
        return schedule

    def process_due_schedules(self, now: datetime | None = None) -> ScheduleRun:
        """Run every due active schedule, advancing the ones that succeed."""
        now = now or datetime.now(timezone.utc)
        run = ScheduleRun()
        due = self._repo.list_due_schedules(now.isoformat())
        logger.info("Found %d due schedules", len(due))

        for schedule in due:
            if self.run_schedule(schedule, now):
                run.executed.append(schedule.id)
            else:
                run.failed.append(schedule.id)
        return run

    def run_schedule(self, schedule: Schedule, now: datetime | None = None) -> bool:
        """Execute *schedule* once; on success set last_run and the next run.

        Returns False, leaving the schedule due, when the task fails.
        """
        now = now or datetime.now(timezone.utc)
        try:
            self.execute_task(schedule)
        except Exception as exc:  # a failed task never blocks the others
            logger.error("Schedule %s (%s) failed: %s", schedule.id, schedule.task_type, exc)
            return False
        schedule.last_run = now.isoformat()
        schedule.next_run = calculate_next_run(now, schedule.frequency).isoformat()
        self._repo.update_schedule(schedule)
        return True

    def execute_task(self, schedule: Schedule) -> None:
        """Run *schedule*'s task once.

        ``search`` schedules with a ``query`` parameter use the assistant
        search for that query; without one they run a full project search.
        """
        project = self._repo.get_project(schedule.project_id)
        if project is None:
            raise NotFoundError(f"Project not found: {schedule.project_id}")

        if schedule.task_type == "search":
            query = schedule.parameters.get("query")
            if query:
                self._orchestrator.perform_assistant_search(project, str(query))
            else:
                self._orchestrator.perform_project_search(project)
        elif schedule.task_type == "summarize":
            summary = self._orchestrator.generate_project_summary(project)
            if summary:
                logger.info("Summary for %s:\n%s", project.name, summary)
        elif schedule.task_type == "update":
            context = self._agent.get_or_create_context(project.id)
            self._agent.generate_follow_up_question(context)
        else:
            raise ValueError(f"Unknown task type: {schedule.task_type}")
