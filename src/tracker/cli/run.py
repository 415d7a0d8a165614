"""tracker run — polling loop that feeds due schedules and mailbox checks to the job queue.

Each job opens its own database connection. Job keys are
``project:<id>`` for schedules and ``mail:<user>`` for mailboxes, so a
project or mailbox that is still being processed is skipped until its job
finishes.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated

import typer

from tracker.cli import errors as msg
from tracker.cli.common import DbOption, console, db_path, load_config_or_exit
from tracker.cli.mail import check_account
from tracker.config import MailboxAccount, TrackerConfig
from tracker.jobs import JobQueue
from tracker.log import get_logger
from tracker.services import build_services, open_connection

logger = get_logger(__name__)


def _schedule_job(cfg: TrackerConfig, path: Path, schedule_id: str) -> bool:
    conn = open_connection(path)
    try:
        svc = build_services(cfg, conn)
        schedule = svc.repo.get_schedule(schedule_id)
        if schedule is None or not schedule.active:
            return False
        if not svc.scheduler.run_schedule(schedule):
            raise RuntimeError(f"Schedule {schedule_id} failed")
        return True
    finally:
        conn.close()


def _mail_job(cfg: TrackerConfig, path: Path, account: MailboxAccount) -> None:
    conn = open_connection(path)
    try:
        check_account(build_services(cfg, conn), account)
    finally:
        conn.close()


def enqueue_due(queue: JobQueue, cfg: TrackerConfig, path: Path) -> int:
    """Queue a job per due schedule; returns how many were queued."""
    conn = open_connection(path)
    try:
        due = build_services(cfg, conn).repo.list_due_schedules(
            datetime.now(timezone.utc).isoformat()
        )
    finally:
        conn.close()
    queued = 0
    for s in due:
        if queue.submit(f"project:{s.project_id}", _schedule_job, cfg, path, s.id):
            queued += 1
    return queued


def enqueue_mail(queue: JobQueue, cfg: TrackerConfig, path: Path) -> int:
    queued = 0
    for account in cfg.mailboxes:
        if account.enabled and queue.submit(f"mail:{account.user_id}", _mail_job, cfg, path, account):
            queued += 1
    return queued


def run_cmd(
    once: Annotated[
        bool, typer.Option("--once", help="Queue one round of work, wait for it, then exit.")
    ] = False,
    db: DbOption = None,
) -> None:
    """Run due schedules and mailbox checks until interrupted."""
    cfg = load_config_or_exit()
    path = db_path(cfg, db)
    if not path.exists():
        console.print(msg.err_no_db(str(path)))
        raise typer.Exit(1)

    queue = JobQueue(retries=cfg.scheduler.job_retries)
    last_mail = float("-inf")
    console.print(
        f"[bold]tracker running[/] (poll {cfg.scheduler.poll_interval}s, "
        f"mail every {cfg.scheduler.mail_interval}s). Ctrl-C to stop."
    )
    try:
        while True:
            queued = enqueue_due(queue, cfg, path)
            if time.monotonic() - last_mail >= cfg.scheduler.mail_interval:
                queued += enqueue_mail(queue, cfg, path)
                last_mail = time.monotonic()
            if queued:
                logger.info("Queued %d jobs", queued)
            if once:
                break
            time.sleep(cfg.scheduler.poll_interval)
    except KeyboardInterrupt:
        console.print("\n[dim]Stopping, waiting for running jobs …[/]")
    finally:
        queue.shutdown(wait=True)

    if once:
        jobs = queue.recent(limit=100)
        failed = [j for j in jobs if j["status"] == "failed"]
        console.print(f"  {len(jobs)} jobs run, {len(failed)} failed")
