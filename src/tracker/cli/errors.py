"""Tracker rich error messages.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from tracker.cli.errors import err_no_db
    console.print(err_no_db("tracker.db"))
    raise typer.Exit(1)
"""

from __future__ import annotations

_PROVIDER_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "cohere": "COHERE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "azure": "AZURE_API_KEY",
}


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_var = _PROVIDER_ENV.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_no_db(db_path: str = "tracker.db") -> str:
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  tracker init"
    )


def err_config(detail: str) -> str:
    return f"[red]Error:[/] Invalid configuration.\n  {detail}"


def err_project_not_found(project_id: str) -> str:
    return (
        f"[red]Error:[/] Project '{project_id}' not found.\n"
        "  Run:  tracker project list  to see your projects."
    )


def err_not_owner(project_id: str, user_id: str) -> str:
    return (
        f"[red]Error:[/] Project '{project_id}' does not belong to user '{user_id}'.\n"
        "  Pass the owner with --user, or set TRACKER_USER."
    )


def err_discovery_not_found(discovery_id: str) -> str:
    return (
        f"[red]Error:[/] Discovery '{discovery_id}' not found.\n"
        "  Run:  tracker discoveries list <project-id>"
    )


def err_schedule_not_found(schedule_id: str) -> str:
    return (
        f"[red]Error:[/] Schedule '{schedule_id}' not found.\n"
        "  Run:  tracker schedule list"
    )


def err_backend(detail: str) -> str:
    return (
        f"[red]Error:[/] The generative backend failed: {detail}\n"
        "  Check the model name in tracker.yaml and your network, then retry."
    )


def err_search_not_configured() -> str:
    return (
        "[red]Error:[/] Web search is not configured.\n"
        "  Set:  export GOOGLE_SEARCH_API_KEY=...\n"
        "        export GOOGLE_SEARCH_CX=<engine id>   (or search.cx in tracker.yaml)"
    )


def err_no_mailboxes() -> str:
    return (
        "[yellow]No enabled mailboxes configured.[/]\n"
        "  Add a mailboxes: entry with enabled: true to tracker.yaml\n"
        "  and set:  export EMAIL_IMPORT_USER=... EMAIL_IMPORT_PASS=..."
    )


def err_mailbox_unavailable(detail: str) -> str:
    return (
        f"[red]Error:[/] Mailbox unavailable: {detail}\n"
        "  Check EMAIL_IMPORT_SERVER / EMAIL_IMPORT_PORT and your credentials.\n"
        "  The next scheduled check will retry."
    )
