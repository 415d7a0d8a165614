"""tracker context commands.

Commands:
  tracker context show <project>              — phase, progress and recent log entries
  tracker context update <project> <text>     — free-form update, then a follow-up question
  tracker context respond <project> <text>    — answer the latest (or --question) question
  tracker context question <project>          — ask for a new follow-up question
  tracker context queries <project>           — search queries from the project context
"""

from __future__ import annotations

from typing import Annotated

import typer
from rich.table import Table

from tracker.cli.common import (
    DEFAULT_USER,
    DbOption,
    UserOption,
    cli_errors,
    console,
    get_project_or_exit,
    load_config_or_exit,
    open_services,
    require_api_key,
)

context_app = typer.Typer(
    name="context",
    help="Project context: progress log, questions and search queries.",
    add_completion=False,
)

_ENTRY_STYLE = {
    "agent_question": "cyan",
    "user_update": "white",
    "user_response": "green",
    "milestone": "bold magenta",
    "feedback": "yellow",
}


def _print_question(question: str) -> None:
    console.print(f"\n[bold cyan]?[/] {question}")


@context_app.command("show")
def context_show_cmd(
    project_id: Annotated[str, typer.Argument(help="Project id.")],
    limit: Annotated[int, typer.Option("--limit", "-n", help="Entries to show.")] = 20,
    user: UserOption = DEFAULT_USER,
    db: DbOption = None,
) -> None:
    """Show phase, progress and the latest context entries."""
    with open_services(db) as svc, cli_errors():
        get_project_or_exit(svc, project_id, user)
        context = svc.agent.get_or_create_context(project_id)

    console.print(
        f"Phase: [bold]{context.current_phase}[/]   Progress: [bold]{context.progress_percentage}%[/]"
    )
    table = Table(show_header=True, header_style="bold")
    table.add_column("When", style="dim")
    table.add_column("Type")
    table.add_column("Entry")
    for entry in context.entries[-limit:]:
        style = _ENTRY_STYLE.get(entry.type, "white")
        table.add_row((entry.timestamp or "")[:16], f"[{style}]{entry.type}[/]", entry.content)
    console.print(table)


@context_app.command("update")
def context_update_cmd(
    project_id: Annotated[str, typer.Argument(help="Project id.")],
    text: Annotated[str, typer.Argument(help="What happened on the project.")],
    user: UserOption = DEFAULT_USER,
    db: DbOption = None,
) -> None:
    """Add a free-form update; the agent replies with a follow-up question."""
    cfg = load_config_or_exit()
    require_api_key(cfg.generation.model)
    with open_services(db) as svc, cli_errors():
        get_project_or_exit(svc, project_id, user)
        _, question = svc.agent.add_user_update(project_id, text)
    console.print("[green]✓[/] Update recorded")
    _print_question(question)


@context_app.command("respond")
def context_respond_cmd(
    project_id: Annotated[str, typer.Argument(help="Project id.")],
    text: Annotated[str, typer.Argument(help="Your answer.")],
    question_id: Annotated[
        str | None,
        typer.Option("--question", help="Id of the question answered (default: the latest)."),
    ] = None,
    user: UserOption = DEFAULT_USER,
    db: DbOption = None,
) -> None:
    """Answer a question; progress is re-estimated and a follow-up is asked."""
    cfg = load_config_or_exit()
    require_api_key(cfg.generation.model)
    with open_services(db) as svc, cli_errors():
        get_project_or_exit(svc, project_id, user)
        context, question = svc.agent.add_user_response(project_id, question_id, text)
    console.print(
        f"[green]✓[/] Response recorded, phase [bold]{context.current_phase}[/], "
        f"{context.progress_percentage}%"
    )
    _print_question(question)


@context_app.command("question")
def context_question_cmd(
    project_id: Annotated[str, typer.Argument(help="Project id.")],
    user: UserOption = DEFAULT_USER,
    db: DbOption = None,
) -> None:
    """Ask the agent for a new follow-up question."""
    cfg = load_config_or_exit()
    require_api_key(cfg.generation.model)
    with open_services(db) as svc, cli_errors():
        get_project_or_exit(svc, project_id, user)
        context = svc.agent.get_or_create_context(project_id)
        question = svc.agent.generate_follow_up_question(context)
    _print_question(question)


@context_app.command("queries")
def context_queries_cmd(
    project_id: Annotated[str, typer.Argument(help="Project id.")],
    user: UserOption = DEFAULT_USER,
    db: DbOption = None,
) -> None:
    """Show the search queries the project context would run."""
    cfg = load_config_or_exit()
    require_api_key(cfg.generation.model)
    with open_services(db) as svc, cli_errors():
        project = get_project_or_exit(svc, project_id, user)
        queries = svc.orchestrator.generate_search_queries(project)
    for i, q in enumerate(queries, 1):
        console.print(f"  {i}. {q}")
