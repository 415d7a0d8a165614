"""tracker project commands.

Commands:
  tracker project add <name>       — create a project
  tracker project list             — list the user's projects
  tracker project show <id>        — project details, context state and discovery counts
  tracker project delete <id>      — delete a project and everything that belongs to it
"""

from __future__ import annotations

from typing import Annotated

import typer
from rich.panel import Panel
from rich.table import Table

from tracker.cli.common import (
    DEFAULT_USER,
    DbOption,
    UserOption,
    console,
    get_project_or_exit,
    open_services,
)
from tracker.db.models import Project
from tracker.db.repository import new_id

project_app = typer.Typer(
    name="project",
    help="Manage projects (add, list, show, delete).",
    add_completion=False,
)


def _split(values: list[str] | None) -> list[str]:
    """Accept repeated options and comma-separated values alike."""
    out: list[str] = []
    for value in values or []:
        out.extend(v.strip() for v in value.split(",") if v.strip())
    return out


@project_app.command("add")
def project_add_cmd(
    name: Annotated[str, typer.Argument(help="Project name.")],
    domain: Annotated[str, typer.Option("--domain", "-d", help="Field the project is in.")] = "",
    description: Annotated[str, typer.Option("--description", help="Short description.")] = "",
    goal: Annotated[
        list[str] | None, typer.Option("--goal", "-g", help="Project goal (repeatable).")
    ] = None,
    interest: Annotated[
        list[str] | None, typer.Option("--interest", "-i", help="Topic of interest (repeatable).")
    ] = None,
    user: UserOption = DEFAULT_USER,
    db: DbOption = None,
) -> None:
    """Create a new project."""
    with open_services(db) as svc:
        project = svc.repo.add_project(
            Project(
                id=new_id(),
                user_id=user,
                name=name,
                description=description,
                domain=domain,
                goals=_split(goal),
                interests=_split(interest),
            )
        )
    console.print(f"[green]✓[/] Project '{project.name}' created: [bold]{project.id}[/]")


@project_app.command("list")
def project_list_cmd(user: UserOption = DEFAULT_USER, db: DbOption = None) -> None:
    """List your projects."""
    with open_services(db) as svc:
        projects = svc.repo.list_projects(user)
        if not projects:
            console.print("[yellow]No projects yet.[/]\n  Run:  tracker project add <name>")
            raise typer.Exit(0)

        table = Table(title="Projects", show_header=True, header_style="bold")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="bold")
        table.add_column("Domain")
        table.add_column("Progress")
        table.add_column("Discoveries", justify="right")
        for p in projects:
            counts = svc.store.counts(p.id)
            table.add_row(p.id, p.name, p.domain, p.progress, f"{counts['total']} ({counts['new']} new)")
    console.print(table)


@project_app.command("show")
def project_show_cmd(
    project_id: Annotated[str, typer.Argument(help="Project id.")],
    user: UserOption = DEFAULT_USER,
    db: DbOption = None,
) -> None:
    """Show a project with its context state and discovery counts."""
    with open_services(db) as svc:
        project = get_project_or_exit(svc, project_id, user)
        context = svc.repo.get_context(project.id)
        counts = svc.store.counts(project.id)

    lines = [
        f"Name:        [bold]{project.name}[/]",
        f"Domain:      {project.domain or '-'}",
        f"Progress:    {project.progress}",
        f"Goals:       {', '.join(project.goals) or '-'}",
        f"Interests:   {', '.join(project.interests) or '-'}",
    ]
    if context is not None:
        lines.append(f"Phase:       {context.current_phase} ({context.progress_percentage}%)")
    lines.append(
        f"Discoveries: {counts['total']} total, {counts['new']} new, "
        f"{counts['useful']} useful, {counts['hidden']} hidden"
    )
    if project.milestones:
        lines.append("Milestones:")
        lines.extend(
            f"  {'[green]✓[/]' if m.achieved else '·'} {m.description}" for m in project.milestones
        )
    console.print(Panel("\n".join(lines), title=f"[bold]{project.id}[/]", expand=False))


@project_app.command("delete")
def project_delete_cmd(
    project_id: Annotated[str, typer.Argument(help="Project id.")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt.")] = False,
    user: UserOption = DEFAULT_USER,
    db: DbOption = None,
) -> None:
    """Delete a project with its discoveries, context and schedules."""
    with open_services(db) as svc:
        project = get_project_or_exit(svc, project_id, user)
        if not yes and not typer.confirm(
            f"Delete '{project.name}' and all its discoveries, context and schedules?",
            default=False,
        ):
            console.print("  [dim]Cancelled.[/]")
            raise typer.Exit(0)
        svc.repo.delete_project(project.id)
    console.print(f"[green]✓[/] Deleted project '{project.name}'")
