"""tracker search / tracker summary commands."""

from __future__ import annotations

from typing import Annotated

import typer
from rich.markdown import Markdown
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
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


def search_cmd(
    project_id: Annotated[str, typer.Argument(help="Project id.")],
    query: Annotated[
        str | None,
        typer.Option("--query", "-q", help="Run the assistant search for this query instead."),
    ] = None,
    user: UserOption = DEFAULT_USER,
    db: DbOption = None,
) -> None:
    """Search the web for a project and store relevant discoveries."""
    cfg = load_config_or_exit()
    require_api_key(cfg.generation.model)
    require_api_key(cfg.generation.scoring_model)
    use_assistant = query is not None or cfg.search.provider == "assistant"

    with open_services(db) as svc, cli_errors():
        project = get_project_or_exit(svc, project_id, user)
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            if use_assistant:
                topic = query or " ".join(project.interests) or project.domain
                progress.add_task(f"Assistant search for '{topic}' …", total=None)
                stored = svc.orchestrator.perform_assistant_search(project, topic)
                report = None
            else:
                progress.add_task("Searching …", total=None)
                report = svc.orchestrator.perform_project_search(project)
                stored = report.stored

    if report is not None:
        console.print(f"  [dim]Queries: {'; '.join(report.queries)}[/]")
        if report.failed_queries:
            console.print(f"  [yellow]⚠[/] {len(report.failed_queries)} queries failed")
        console.print(f"  {len(report.results)} results scored")

    if not stored:
        console.print("[yellow]No relevant discoveries found.[/]")
        return

    table = Table(title="Stored discoveries", show_header=True, header_style="bold")
    table.add_column("Score", justify="right")
    table.add_column("Title", style="bold")
    table.add_column("Source", style="dim")
    for d in stored:
        table.add_row(str(d.relevance_score), d.title, d.source)
    console.print(table)


def summary_cmd(
    project_id: Annotated[str, typer.Argument(help="Project id.")],
    user: UserOption = DEFAULT_USER,
    db: DbOption = None,
) -> None:
    """Summarise the best discoveries not yet presented."""
    cfg = load_config_or_exit()
    require_api_key(cfg.generation.model)

    with open_services(db) as svc, cli_errors():
        project = get_project_or_exit(svc, project_id, user)
        summary = svc.orchestrator.generate_project_summary(project)

    if summary is None:
        console.print("[yellow]Nothing new to summarise.[/]\n  Run:  tracker search <project-id>")
        return
    console.print(Panel(Markdown(summary), title=f"[bold]{project.name}[/]", expand=False))
