"""tracker init — create the database, a tracker.yaml template and the global config.

Creates:
  tracker.db               — empty database with schema
  tracker.yaml             — project config (generation, discovery, search, mailboxes, scheduler)
  ~/.tracker/config.yaml   — global model config (created once, mode 0o600)
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from tracker.cli.common import console
from tracker.config import DEFAULT_NEWSLETTER_SOURCES, ensure_global_config
from tracker.services import open_connection

_DEFAULT_PROJECT_DIR = Path(".")

_TRACKER_YAML = """\
# Tracker project configuration. No credentials here: use
#   OPENAI_API_KEY, GOOGLE_SEARCH_API_KEY, EMAIL_IMPORT_USER, EMAIL_IMPORT_PASS
database: tracker.db

generation:
  model: openai/gpt-4o
  scoring_model: openai/gpt-4o-mini
  timeout: 60

discovery:
  relevance_threshold: 5
  probe_timeout: 5
  summary_limit: 10

search:
  provider: google
  cx: ""
  max_iterations: 5

mailboxes:
  - user_id: {user}
    enabled: false
    sources:
{sources}

scheduler:
  poll_interval: 60
  mail_interval: 21600
  job_retries: 1
"""


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = _DEFAULT_PROJECT_DIR,
    user: Annotated[
        str,
        typer.Option("--user", "-u", envvar="TRACKER_USER", help="Owner of the mailbox entry."),
    ] = "local",
) -> None:
    """Initialize a tracker workspace (database + tracker.yaml)."""
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)

    db_path = project_dir / "tracker.db"
    existed = db_path.exists()
    conn = open_connection(db_path)
    conn.close()
    if existed:
        console.print(f"  [yellow]⚠[/] {db_path} already exists (schema brought up to date)")
    else:
        console.print(f"  [green]✓[/] {db_path}")

    yaml_path = project_dir / "tracker.yaml"
    if yaml_path.exists():
        console.print(f"  [dim]- {yaml_path} exists, left unchanged[/]")
    else:
        sources = "\n".join(f"      - {s}" for s in DEFAULT_NEWSLETTER_SOURCES)
        yaml_path.write_text(_TRACKER_YAML.format(user=user, sources=sources), encoding="utf-8")
        console.print(f"  [green]✓[/] {yaml_path}")

    cfg_path = ensure_global_config()
    console.print(f"  [green]✓[/] {cfg_path} (global config)")

    console.print("\n[bold green]✓ Tracker initialized.[/]")
    console.print("\nNext steps:")
    console.print("  1. tracker project add <name> --domain <domain>   (create a project)")
    console.print("  2. tracker search <project-id>                    (find discoveries)")
    console.print("  3. tracker context respond <project-id> <answer>  (report progress)")
