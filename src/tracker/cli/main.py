"""Tracker CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from tracker.cli.context import context_app
from tracker.cli.discoveries import discoveries_app
from tracker.cli.init import init_cmd
from tracker.cli.mail import mail_app
from tracker.cli.project import project_app
from tracker.cli.run import run_cmd
from tracker.cli.schedule import schedule_app
from tracker.cli.search import search_cmd, summary_cmd


def _version() -> str:
    try:
        return importlib.metadata.version("tracker")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"tracker {_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="tracker",
    help=(
        "Tracker — follow AI developments for your projects.\n\n"
        "  tracker search    Find and score discoveries for a project.\n"
        "  tracker context   Report progress and answer follow-up questions.\n"
        "  tracker run       Run schedules and newsletter checks in the background."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """Tracker — follow AI developments for your projects."""


app.command("init")(init_cmd)
app.command("search")(search_cmd)
app.command("summary")(summary_cmd)
app.command("run")(run_cmd)
app.add_typer(project_app, name="project")
app.add_typer(discoveries_app, name="discoveries")
app.add_typer(context_app, name="context")
app.add_typer(mail_app, name="mail")
app.add_typer(schedule_app, name="schedule")


@app.command("version")
def version_cmd() -> None:
    """Show the installed tracker version."""
    typer.echo(f"tracker {_version()}")


if __name__ == "__main__":
    app()
