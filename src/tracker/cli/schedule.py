"""tracker schedule commands.

Commands:
  tracker schedule add <project> <task> <freq>   — search | summarize | update; hourly … monthly
  tracker schedule list [<project>]              — schedules and their next run
  tracker schedule pause|resume <id>             — toggle a schedule
  tracker schedule delete <id>                   — remove a schedule
  tracker schedule run-due                       — run every due schedule once
"""

from __future__ import annotations

from typing import Annotated

import typer
from rich.table import Table

from tracker.cli import errors as msg
from tracker.cli.common import (
    DEFAULT_USER,
    DbOption,
    UserOption,
    cli_errors,
    console,
    get_project_or_exit,
    open_services,
)
from tracker.errors import NotFoundError

schedule_app = typer.Typer(
    name="schedule",
    help="Recurring search, summary and update tasks.",
    add_completion=False,
)


@schedule_app.command("add")
def schedule_add_cmd(
    project_id: Annotated[str, typer.Argument(help="Project id.")],
    task_type: Annotated[str, typer.Argument(help="search | summarize | update")],
    frequency: Annotated[str, typer.Argument(help="hourly | daily | weekly | monthly")] = "daily",
    query: Annotated[
        str | None,
        typer.Option("--query", "-q", help="For search tasks: run the assistant search for this query."),
    ] = None,
    user: UserOption = DEFAULT_USER,
    db: DbOption = None,
) -> None:
    """Schedule a recurring task for a project."""
    parameters = {"query": query} if query else {}
    with open_services(db) as svc, cli_errors():
        get_project_or_exit(svc, project_id, user)
        schedule = svc.scheduler.create_schedule(project_id, task_type, frequency, parameters)
    console.print(
        f"[green]✓[/] {frequency} {task_type} scheduled ([bold]{schedule.id}[/]), "
        f"next run {schedule.next_run[:16]}"
    )


@schedule_app.command("list")
def schedule_list_cmd(
    project_id: Annotated[str | None, typer.Argument(help="Project id (all if omitted).")] = None,
    db: DbOption = None,
) -> None:
    """List schedules."""
    with open_services(db) as svc:
        schedules = svc.repo.list_schedules(project_id)
    if not schedules:
        console.print("[yellow]No schedules.[/]\n  Run:  tracker schedule add <project-id> search daily")
        raise typer.Exit(0)

    table = Table(title="Schedules", show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Project", style="dim")
    table.add_column("Task", style="bold")
    table.add_column("Frequency")
    table.add_column("Next run")
    table.add_column("Last run")
    table.add_column("Active")
    for s in schedules:
        table.add_row(
            s.id,
            s.project_id,
            s.task_type,
            s.frequency,
            s.next_run[:16],
            (s.last_run or "-")[:16],
            "[green]✓[/]" if s.active else "[dim]paused[/]",
        )
    console.print(table)


def _set_active(schedule_id: str, active: bool, db) -> None:
    with open_services(db) as svc, cli_errors():
        try:
            svc.scheduler.update_schedule(schedule_id, active=active)
        except NotFoundError:
            console.print(msg.err_schedule_not_found(schedule_id))
            raise typer.Exit(1)
    console.print(f"[green]✓[/] Schedule {schedule_id} {'resumed' if active else 'paused'}")


@schedule_app.command("pause")
def schedule_pause_cmd(
    schedule_id: Annotated[str, typer.Argument(help="Schedule id.")],
    db: DbOption = None,
) -> None:
    """Pause a schedule."""
    _set_active(schedule_id, False, db)


@schedule_app.command("resume")
def schedule_resume_cmd(
    schedule_id: Annotated[str, typer.Argument(help="Schedule id.")],
    db: DbOption = None,
) -> None:
    """Resume a paused schedule."""
    _set_active(schedule_id, True, db)


@schedule_app.command("delete")
def schedule_delete_cmd(
    schedule_id: Annotated[str, typer.Argument(help="Schedule id.")],
    db: DbOption = None,
) -> None:
    """Delete a schedule."""
    with open_services(db) as svc:
        deleted = svc.repo.delete_schedule(schedule_id)
    if not deleted:
        console.print(msg.err_schedule_not_found(schedule_id))
        raise typer.Exit(1)
    console.print(f"[green]✓[/] Schedule {schedule_id} deleted")


@schedule_app.command("run-due")
def schedule_run_due_cmd(db: DbOption = None) -> None:
    """Run every due schedule once."""
    with open_services(db) as svc:
        run = svc.scheduler.process_due_schedules()
    console.print(f"  {len(run.executed)} executed, {len(run.failed)} failed")
    if run.failed:
        raise typer.Exit(1)
