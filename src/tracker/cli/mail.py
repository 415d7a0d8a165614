"""tracker mail commands.

Commands:
  tracker mail check    — poll every enabled mailbox once and ingest new newsletters
"""

from __future__ import annotations

from typing import Annotated

import typer

from tracker.cli import errors as msg
from tracker.cli.common import DbOption, console, load_config_or_exit, open_services, require_api_key
from tracker.config import MailboxAccount
from tracker.errors import MailboxUnavailable
from tracker.ingest.mailbox import MailboxResult
from tracker.services import Services

mail_app = typer.Typer(
    name="mail",
    help="Newsletter mailbox ingestion.",
    add_completion=False,
)


def check_account(svc: Services, account: MailboxAccount) -> MailboxResult:
    """Poll one account and feed its newsletters to the owner's projects."""
    resolved = account.resolved()
    return svc.poller.check_mailbox(resolved, svc.ingestor.handler_for(resolved.user_id))


@mail_app.command("check")
def mail_check_cmd(
    user: Annotated[
        str | None, typer.Option("--user", "-u", help="Only check this user's mailbox.")
    ] = None,
    db: DbOption = None,
) -> None:
    """Check enabled mailboxes for unseen newsletters."""
    cfg = load_config_or_exit()
    accounts = [a for a in cfg.mailboxes if a.enabled and (user is None or a.user_id == user)]
    if not accounts:
        console.print(msg.err_no_mailboxes())
        raise typer.Exit(0)
    require_api_key(cfg.generation.scoring_model)

    failed = False
    with open_services(db) as svc:
        for account in accounts:
            try:
                result = check_account(svc, account)
            except MailboxUnavailable as exc:
                console.print(msg.err_mailbox_unavailable(str(exc)))
                failed = True
                continue
            console.print(
                f"[green]✓[/] {account.user_id}: {result.found} found, "
                f"{result.emails_processed} processed, {result.failed} failed"
            )
    if failed:
        raise typer.Exit(1)
