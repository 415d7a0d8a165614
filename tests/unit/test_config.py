"""Tests for tracker config loader."""

from __future__ import annotations

import stat
import warnings
from pathlib import Path

import pytest
import yaml

from tracker.config import (
    DEFAULT_NEWSLETTER_SOURCES,
    ConfigError,
    MailboxAccount,
    ensure_global_config,
    load_config,
)

_ENV_VARS = (
    "TRACKER_GENERATION_MODEL",
    "TRACKER_SCORING_MODEL",
    "TRACKER_DB",
    "GOOGLE_SEARCH_CX",
    "EMAIL_IMPORT_SERVER",
    "EMAIL_IMPORT_PORT",
    "EMAIL_IMPORT_USER",
    "EMAIL_IMPORT_PASS",
    "EMAIL_IMPORT_SECURE",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_yaml(path: Path, data: dict) -> None:
    path.write_text(yaml.dump(data), encoding="utf-8")


def _load(tmp_path: Path, global_data: dict | None = None, project_data: dict | None = None):
    global_cfg = tmp_path / "global" / "config.yaml"
    if global_data is not None:
        global_cfg.parent.mkdir()
        _write_yaml(global_cfg, global_data)
    if project_data is not None:
        _write_yaml(tmp_path / "tracker.yaml", project_data)
    return load_config(project_dir=tmp_path, global_config_path=global_cfg)


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


def test_load_config_defaults_no_files(tmp_path: Path) -> None:
    cfg = _load(tmp_path)

    assert cfg.database == "tracker.db"
    assert cfg.generation.model == "openai/gpt-4o"
    assert cfg.generation.scoring_model == "openai/gpt-4o-mini"
    assert cfg.generation.max_content_chars == 15_000
    assert cfg.discovery.relevance_threshold == 5
    assert cfg.search.provider == "google"
    assert cfg.search.max_iterations == 5
    assert cfg.mailboxes == []
    assert cfg.scheduler.mail_interval == 6 * 60 * 60


def test_load_config_empty_global_file(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    global_cfg.write_text("", encoding="utf-8")

    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.generation.model == "openai/gpt-4o"


# ---------------------------------------------------------------------------
# Layering
# ---------------------------------------------------------------------------


def test_project_overrides_global(tmp_path: Path) -> None:
    cfg = _load(
        tmp_path,
        global_data={"generation": {"model": "anthropic/claude-3-5-sonnet", "timeout": 30}},
        project_data={"generation": {"model": "openai/gpt-4o-mini"}},
    )
    assert cfg.generation.model == "openai/gpt-4o-mini"
    # deep merge keeps the sibling key from the global layer
    assert cfg.generation.timeout == 30.0


def test_project_sections_parse(tmp_path: Path) -> None:
    cfg = _load(
        tmp_path,
        project_data={
            "database": "data/t.db",
            "discovery": {"relevance_threshold": 7},
            "search": {"provider": "assistant", "cx": "abc"},
            "scheduler": {"poll_interval": 5, "job_retries": 3},
        },
    )
    assert cfg.database == "data/t.db"
    assert cfg.discovery.relevance_threshold == 7
    assert cfg.discovery.probe_timeout == 5.0
    assert (cfg.search.provider, cfg.search.cx) == ("assistant", "abc")
    assert (cfg.scheduler.poll_interval, cfg.scheduler.job_retries) == (5, 3)


def test_env_overrides_files(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("TRACKER_GENERATION_MODEL", "ollama/llama3")
    monkeypatch.setenv("TRACKER_DB", "/tmp/env.db")
    monkeypatch.setenv("GOOGLE_SEARCH_CX", "env-cx")

    cfg = _load(tmp_path, project_data={"generation": {"model": "openai/gpt-4o"}})
    assert cfg.generation.model == "ollama/llama3"
    assert cfg.database == "/tmp/env.db"
    assert cfg.search.cx == "env-cx"


def test_configured_cx_wins_over_env(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("GOOGLE_SEARCH_CX", "env-cx")
    cfg = _load(tmp_path, project_data={"search": {"cx": "file-cx"}})
    assert cfg.search.cx == "file-cx"


# ---------------------------------------------------------------------------
# Credential guards
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "data",
    [
        {"generation": {"api_key": "sk-123"}},
        {"search": {"api-secret": "x"}},
        {"mailboxes": [{"user_id": "u", "password": "hunter2"}]},
    ],
)
def test_global_config_rejects_credentials(tmp_path: Path, data: dict) -> None:
    with pytest.raises(ConfigError):
        _load(tmp_path, global_data=data)


def test_max_tokens_is_not_a_credential(tmp_path: Path) -> None:
    cfg = _load(tmp_path, global_data={"generation": {"max_tokens": 100}})
    assert cfg.generation.model == "openai/gpt-4o"


def test_project_mailbox_password_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="EMAIL_IMPORT_PASS"):
        _load(tmp_path, project_data={"mailboxes": [{"user_id": "u", "password": "x"}]})


def test_unknown_key_warns(tmp_path: Path) -> None:
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        _load(tmp_path, project_data={"embedding": {"model": "x"}})
    assert any("embedding" in str(w.message) for w in caught)


# ---------------------------------------------------------------------------
# Mailbox accounts
# ---------------------------------------------------------------------------


def test_mailbox_parsed_from_project_file(tmp_path: Path) -> None:
    cfg = _load(
        tmp_path,
        project_data={
            "mailboxes": [
                {"user_id": "alice", "enabled": True, "sources": ["a@news.example"], "port": 143}
            ]
        },
    )
    account = cfg.mailboxes[0]
    assert account.user_id == "alice"
    assert account.enabled is True
    assert account.port == 143
    assert account.secure is None


def test_mailbox_resolved_uses_env_fallbacks(monkeypatch) -> None:
    monkeypatch.setenv("EMAIL_IMPORT_SERVER", "imap.example.com")
    monkeypatch.setenv("EMAIL_IMPORT_USER", "reader")
    monkeypatch.setenv("EMAIL_IMPORT_PASS", "secret")
    monkeypatch.setenv("EMAIL_IMPORT_SECURE", "false")

    resolved = MailboxAccount(user_id="u", enabled=True).resolved()
    assert resolved.server == "imap.example.com"
    assert resolved.port == 993
    assert resolved.username == "reader"
    assert resolved.password == "secret"
    assert resolved.secure is False


def test_mailbox_resolved_keeps_explicit_values() -> None:
    resolved = MailboxAccount(server="mx.example", port=143, secure=True).resolved()
    assert (resolved.server, resolved.port, resolved.secure) == ("mx.example", 143, True)


def test_allow_list_defaults_when_empty() -> None:
    assert MailboxAccount().allow_list() == list(DEFAULT_NEWSLETTER_SOURCES)
    assert MailboxAccount(sources=["x@y.z"]).allow_list() == ["x@y.z"]


# ---------------------------------------------------------------------------
# ensure_global_config
# ---------------------------------------------------------------------------


def test_ensure_global_config_creates_private_file(tmp_path: Path) -> None:
    target = tmp_path / "home" / "config.yaml"
    path = ensure_global_config(target)

    assert path == target
    assert stat.S_IMODE(target.stat().st_mode) == 0o600
    data = yaml.safe_load(target.read_text(encoding="utf-8"))
    assert data["generation"]["model"] == "openai/gpt-4o"


def test_ensure_global_config_leaves_existing(tmp_path: Path) -> None:
    target = tmp_path / "config.yaml"
    target.write_text("generation:\n  model: mine\n", encoding="utf-8")
    ensure_global_config(target)
    assert "mine" in target.read_text(encoding="utf-8")
