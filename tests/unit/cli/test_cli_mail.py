"""Tests for tracker mail check."""

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from tracker.cli.main import app
from tracker.ingest.mailbox import MailboxPoller

runner = CliRunner()

_YAML = """\
mailboxes:
  - user_id: alice
    enabled: true
    server: imap.example
    username: reader
  - user_id: bob
    enabled: false
"""


class EmptyIMAP:
    def select(self, mailbox):
        return "OK", [b"0"]

    def search(self, charset, criteria):
        return "OK", [b""]

    def logout(self):
        return "BYE", [b""]


def _refuse(account, timeout):
    raise OSError("connection refused")


@pytest.fixture
def mailbox_yaml(cli_env, tmp_path: Path) -> None:
    (tmp_path / "tracker.yaml").write_text(_YAML, encoding="utf-8")


def test_no_enabled_mailboxes(cli_env) -> None:
    result = runner.invoke(app, ["mail", "check"])
    assert result.exit_code == 0
    assert "No enabled mailboxes" in result.output


def test_check_reports_counts(cli_env, mailbox_yaml) -> None:
    cli_env.poller = MailboxPoller(connect=lambda account, timeout: EmptyIMAP())
    result = runner.invoke(app, ["mail", "check"])
    assert result.exit_code == 0, result.output
    assert "alice: 0 found, 0 processed, 0 failed" in result.output
    assert "bob" not in result.output


def test_check_unavailable_mailbox_exits_1(cli_env, mailbox_yaml) -> None:
    cli_env.poller = MailboxPoller(connect=_refuse)
    result = runner.invoke(app, ["mail", "check"])
    assert result.exit_code == 1
    assert "Mailbox unavailable" in result.output


def test_check_other_user_only(cli_env, mailbox_yaml) -> None:
    result = runner.invoke(app, ["mail", "check", "--user", "bob"])
    assert result.exit_code == 0
    assert "No enabled mailboxes" in result.output


def test_password_in_config_is_rejected(cli_env, tmp_path: Path) -> None:
    (tmp_path / "tracker.yaml").write_text(
        "mailboxes:\n  - user_id: alice\n    enabled: true\n    password: hunter2\n",
        encoding="utf-8",
    )
    result = runner.invoke(app, ["mail", "check"])
    assert result.exit_code == 1
    assert "EMAIL_IMPORT_PASS" in result.output
