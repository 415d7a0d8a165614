"""tracker discoveries commands.

Commands:
  tracker discoveries list <project>        — filtered, sorted discovery table
  tracker discoveries view <id>             — details; marks the discovery viewed
  tracker discoveries feedback <id>         — useful / not useful / relevance / notes
  tracker discoveries hide <id>             — toggle hidden
  tracker discoveries bulk <project> <act>  — markViewed, markUnviewed, hide, unhide
"""

from __future__ import annotations

from typing import Annotated

import typer
from rich.panel import Panel
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
from tracker.db.models import Discovery
from tracker.errors import NotFoundError

discoveries_app = typer.Typer(
    name="discoveries",
    help="Browse discoveries and give feedback.",
    add_completion=False,
)


def _status(d: Discovery) -> str:
    if d.hidden:
        return "[dim]hidden[/]"
    if d.feedback.useful:
        return "[green]useful[/]"
    if d.feedback.not_useful:
        return "[red]not useful[/]"
    return "viewed" if d.viewed else "[bold]new[/]"


@discoveries_app.command("list")
def discoveries_list_cmd(
    project_id: Annotated[str, typer.Argument(help="Project id.")],
    filter: Annotated[
        str,
        typer.Option("--filter", "-f", help="new | viewed | hidden | useful | notUseful | all"),
    ] = "all",
    sort: Annotated[
        str, typer.Option("--sort", "-s", help="relevance | date | feedback")
    ] = "relevance",
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum rows.")] = 50,
    user: UserOption = DEFAULT_USER,
    db: DbOption = None,
) -> None:
    """List a project's discoveries."""
    with open_services(db) as svc, cli_errors():
        get_project_or_exit(svc, project_id, user)
        items = svc.store.list(project_id, filter=filter, sort=sort, limit=limit, user_id=user)
        counts = svc.store.counts(project_id)

    if not items:
        console.print(f"[yellow]No discoveries match filter '{filter}'.[/]")
        raise typer.Exit(0)

    table = Table(title="Discoveries", show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Score", justify="right")
    table.add_column("Type")
    table.add_column("Title", style="bold")
    table.add_column("Status")
    for d in items:
        table.add_row(d.id, str(d.relevance_score), d.type, d.title, _status(d))
    console.print(table)
    console.print(
        f"\n  {counts['total']} total · {counts['new']} new · {counts['viewed']} viewed · "
        f"{counts['hidden']} hidden · {counts['useful']} useful · {counts['notUseful']} not useful"
    )


@discoveries_app.command("view")
def discoveries_view_cmd(
    discovery_id: Annotated[str, typer.Argument(help="Discovery id.")],
    user: UserOption = DEFAULT_USER,
    db: DbOption = None,
) -> None:
    """Show a discovery and mark it viewed."""
    with open_services(db) as svc, cli_errors():
        try:
            d = svc.store.mark_viewed(discovery_id, user)
        except NotFoundError:
            console.print(msg.err_discovery_not_found(discovery_id))
            raise typer.Exit(1)

    lines = [
        f"[bold]{d.title}[/]",
        f"{d.source}",
        "",
        d.description or "[dim](no description)[/]",
        "",
        f"Type: {d.type}   Score: {d.relevance_score}/10   Categories: {', '.join(d.categories) or '-'}",
    ]
    if d.publication_date:
        lines.append(f"Published: {d.publication_date}")
    console.print(Panel("\n".join(lines), title=f"[bold]{d.id}[/]", expand=False))


@discoveries_app.command("feedback")
def discoveries_feedback_cmd(
    discovery_id: Annotated[str, typer.Argument(help="Discovery id.")],
    useful: Annotated[
        bool | None,
        typer.Option("--useful/--not-useful", help="Mark useful or not useful."),
    ] = None,
    relevance: Annotated[
        int | None, typer.Option("--relevance", "-r", min=0, max=10, help="Your score 0-10.")
    ] = None,
    notes: Annotated[str, typer.Option("--notes", help="Free-text notes.")] = "",
    user: UserOption = DEFAULT_USER,
    db: DbOption = None,
) -> None:
    """Record feedback on a discovery (also added to the project's context log)."""
    feedback: dict = {}
    if useful is not None:
        feedback["useful"] = useful
        feedback["not_useful"] = not useful
    if relevance is not None:
        feedback["relevance"] = relevance
    if notes:
        feedback["notes"] = notes
    if not feedback:
        console.print("[red]Error:[/] Nothing to record.\n  Pass --useful, --not-useful, --relevance or --notes.")
        raise typer.Exit(1)

    with open_services(db) as svc, cli_errors():
        try:
            d = svc.store.record_feedback(discovery_id, feedback, user)
        except NotFoundError:
            console.print(msg.err_discovery_not_found(discovery_id))
            raise typer.Exit(1)
        if useful is not None:
            svc.agent.add_feedback(
                d.project_id, d.id, d.title, "positive" if useful else "negative", notes
            )
    console.print(f"[green]✓[/] Feedback recorded for '{d.title}'")


@discoveries_app.command("hide")
def discoveries_hide_cmd(
    discovery_id: Annotated[str, typer.Argument(help="Discovery id.")],
    user: UserOption = DEFAULT_USER,
    db: DbOption = None,
) -> None:
    """Toggle whether a discovery is hidden."""
    with open_services(db) as svc, cli_errors():
        try:
            d = svc.store.toggle_hidden(discovery_id, user)
        except NotFoundError:
            console.print(msg.err_discovery_not_found(discovery_id))
            raise typer.Exit(1)
    state = "hidden" if d.hidden else "visible"
    console.print(f"[green]✓[/] '{d.title}' is now {state}")


@discoveries_app.command("bulk")
def discoveries_bulk_cmd(
    project_id: Annotated[str, typer.Argument(help="Project id.")],
    action: Annotated[str, typer.Argument(help="markViewed | markUnviewed | hide | unhide")],
    ids: Annotated[
        list[str] | None, typer.Option("--id", help="Discovery id (repeatable).")
    ] = None,
    filter: Annotated[
        str | None, typer.Option("--filter", "-f", help="new | viewed | all")
    ] = None,
    user: UserOption = DEFAULT_USER,
    db: DbOption = None,
) -> None:
    """Apply one action to several discoveries, by id or by filter."""
    with open_services(db) as svc, cli_errors():
        get_project_or_exit(svc, project_id, user)
        count = svc.store.bulk_update(project_id, action, ids=ids, filter=filter, user_id=user)
    console.print(f"[green]✓[/] {action}: {count} discoveries updated")
