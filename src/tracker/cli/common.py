"""Shared CLI plumbing: console, config loading, service wiring, error mapping."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Iterator

import typer
from rich.console import Console

from tracker.cli import errors as msg
from tracker.config import ConfigError, TrackerConfig, load_config
from tracker.db.models import Project
from tracker.errors import (
    AuthorizationError,
    BackendError,
    MailboxUnavailable,
    NotFoundError,
    SearchError,
)
from tracker.llm.client import validate_api_key
from tracker.services import Services, build_services, open_connection

console = Console()

DbOption = Annotated[
    Path | None,
    typer.Option("--db", help="Path to the tracker database (default: database in tracker.yaml)."),
]
UserOption = Annotated[
    str,
    typer.Option("--user", "-u", envvar="TRACKER_USER", help="Acting user id."),
]
DEFAULT_USER = "local"


def load_config_or_exit() -> TrackerConfig:
    try:
        return load_config()
    except ConfigError as exc:
        console.print(f"[red]Error:[/] {exc}")
        raise typer.Exit(1)


def db_path(cfg: TrackerConfig, db: Path | None) -> Path:
    return db if db is not None else Path(cfg.database)


@contextmanager
def open_services(db: Path | None, *, require_db: bool = True) -> Iterator[Services]:
    """Yield services over a fresh connection; closes it on exit."""
    cfg = load_config_or_exit()
    path = db_path(cfg, db)
    if require_db and not path.exists():
        console.print(msg.err_no_db(str(path)))
        raise typer.Exit(1)
    conn = open_connection(path)
    try:
        yield build_services(cfg, conn)
    finally:
        conn.close()


def require_api_key(model: str) -> None:
    """Exit with an actionable message when *model*'s provider key is missing."""
    try:
        validate_api_key(model)
    except EnvironmentError:
        provider = model.split("/")[0] if "/" in model else "openai"
        console.print(msg.err_no_api_key(provider))
        raise typer.Exit(1)


def get_project_or_exit(svc: Services, project_id: str, user_id: str) -> Project:
    try:
        return svc.store.get_project(project_id, user_id)
    except NotFoundError:
        console.print(msg.err_project_not_found(project_id))
        raise typer.Exit(1)
    except AuthorizationError:
        console.print(msg.err_not_owner(project_id, user_id))
        raise typer.Exit(1)


@contextmanager
def cli_errors() -> Iterator[None]:
    """Map tracker errors raised inside a command to a rich message + exit code 1."""
    try:
        yield
    except SearchError as exc:
        console.print(f"[red]Error:[/] {exc}")
        raise typer.Exit(1)
    except MailboxUnavailable as exc:
        console.print(msg.err_mailbox_unavailable(str(exc)))
        raise typer.Exit(1)
    except BackendError as exc:
        console.print(msg.err_backend(str(exc)))
        raise typer.Exit(1)
    except (NotFoundError, AuthorizationError, ValueError) as exc:
        console.print(f"[red]Error:[/] {exc}")
        raise typer.Exit(1)

