"""Tracker configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site — not in this module)
  2. Environment variables  (TRACKER_GENERATION_MODEL, TRACKER_SCORING_MODEL,
     TRACKER_DB, EMAIL_IMPORT_* for mailbox accounts)
  3. Per-project tracker.yaml  (in the working directory)
  4. Global ~/.tracker/config.yaml  (no credentials)
  5. Hardcoded defaults

Global config must never contain API keys or passwords; use environment variables.
Mailbox passwords are only ever read from EMAIL_IMPORT_PASS.
All YAML reads use yaml.safe_load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".tracker"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "tracker.yaml"

# Matches api_key, api-secret, *_token, token, *_secret, secret, password,
# passwd, credential(s). Does not match max_tokens or timeout.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["database", "generation", "discovery", "search", "mailboxes", "scheduler"]
)

DEFAULT_NEWSLETTER_SOURCES: tuple[str, ...] = (
    "news@alphasignal.ai",
    "superhuman@mail.joinsuperhuman.ai",
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class GenerationCfg:
    """Generative backend configuration (tracker.yaml: generation:).

    Attributes:
        model: LiteLLM model used for questions, progress analysis and summaries.
        scoring_model: LiteLLM model used for relevance scoring and extraction.
        timeout: Per-call timeout in seconds.
        max_content_chars: Newsletter content is cut to this many characters
            before it is sent to the backend.
    """

    model: str = "openai/gpt-4o"
    scoring_model: str = "openai/gpt-4o-mini"
    timeout: float = 60.0
    max_content_chars: int = 15_000


@dataclass
class DiscoveryCfg:
    """Discovery scoring and validation (tracker.yaml: discovery:)."""

    relevance_threshold: int = 5
    probe_timeout: float = 5.0
    summary_limit: int = 10


@dataclass
class SearchCfg:
    """Web search provider (tracker.yaml: search:).

    The API key is read from GOOGLE_SEARCH_API_KEY; ``cx`` may come from
    GOOGLE_SEARCH_CX when unset here.
    """

    provider: str = "google"  # google | assistant
    cx: str = ""
    timeout: float = 15.0
    max_iterations: int = 5


@dataclass
class MailboxAccount:
    """A single mailbox to poll for newsletters (tracker.yaml: mailboxes[]).

    Unset connection fields fall back to the EMAIL_IMPORT_* environment variables.
    """

    user_id: str = ""
    enabled: bool = False
    sources: list[str] = field(default_factory=list)
    server: str = ""
    port: int = 0
    username: str = ""
    password: str = ""
    secure: bool | None = None

    def resolved(self) -> MailboxAccount:
        """Return a copy with environment fallbacks applied."""
        secure = self.secure
        if secure is None:
            secure = os.environ.get("EMAIL_IMPORT_SECURE", "true").lower() == "true"
        return MailboxAccount(
            user_id=self.user_id,
            enabled=self.enabled,
            sources=list(self.sources),
            server=self.server or os.environ.get("EMAIL_IMPORT_SERVER", "mail.hover.com"),
            port=self.port or int(os.environ.get("EMAIL_IMPORT_PORT", "993")),
            username=self.username or os.environ.get("EMAIL_IMPORT_USER", ""),
            password=self.password or os.environ.get("EMAIL_IMPORT_PASS", ""),
            secure=secure,
        )

    def allow_list(self) -> list[str]:
        """Configured sender allow-list, or the built-in defaults when empty."""
        return list(self.sources) if self.sources else list(DEFAULT_NEWSLETTER_SOURCES)


@dataclass
class SchedulerCfg:
    """Polling loop configuration (tracker.yaml: scheduler:)."""

    poll_interval: int = 60
    mail_interval: int = 6 * 60 * 60
    job_retries: int = 1


@dataclass
class TrackerConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    database: str = "tracker.db"
    generation: GenerationCfg = field(default_factory=GenerationCfg)
    discovery: DiscoveryCfg = field(default_factory=DiscoveryCfg)
    search: SearchCfg = field(default_factory=SearchCfg)
    mailboxes: list[MailboxAccount] = field(default_factory=list)
    scheduler: SchedulerCfg = field(default_factory=SchedulerCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any credential-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  Credentials must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name}."
                    )
                _scan(v, full)
        elif isinstance(obj, list):
            for i, item in enumerate(obj):
                _scan(item, f"{path}[{i}]")

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _parse_mailbox(raw: dict[str, Any]) -> MailboxAccount:
    if "password" in raw:
        raise ConfigError(
            "Mailbox passwords must not be stored in config files.\n"
            "  Use:  export EMAIL_IMPORT_PASS=<password>"
        )
    secure = raw.get("secure")
    return MailboxAccount(
        user_id=str(raw.get("user_id", "")),
        enabled=bool(raw.get("enabled", False)),
        sources=[str(s) for s in raw.get("sources", []) or []],
        server=str(raw.get("server", "")),
        port=int(raw.get("port", 0)),
        username=str(raw.get("username", "")),
        secure=None if secure is None else bool(secure),
    )


def _cfg_from_dict(data: dict[str, Any]) -> TrackerConfig:
    """Build a *TrackerConfig* from a merged raw YAML dict."""
    cfg = TrackerConfig()

    if "database" in data:
        cfg.database = str(data["database"])

    if "generation" in data:
        g = data["generation"]
        cfg.generation = GenerationCfg(
            model=str(g.get("model", cfg.generation.model)),
            scoring_model=str(g.get("scoring_model", cfg.generation.scoring_model)),
            timeout=float(g.get("timeout", cfg.generation.timeout)),
            max_content_chars=int(
                g.get("max_content_chars", cfg.generation.max_content_chars)
            ),
        )

    if "discovery" in data:
        d = data["discovery"]
        cfg.discovery = DiscoveryCfg(
            relevance_threshold=int(
                d.get("relevance_threshold", cfg.discovery.relevance_threshold)
            ),
            probe_timeout=float(d.get("probe_timeout", cfg.discovery.probe_timeout)),
            summary_limit=int(d.get("summary_limit", cfg.discovery.summary_limit)),
        )

    if "search" in data:
        s = data["search"]
        cfg.search = SearchCfg(
            provider=str(s.get("provider", cfg.search.provider)),
            cx=str(s.get("cx", cfg.search.cx)),
            timeout=float(s.get("timeout", cfg.search.timeout)),
            max_iterations=int(s.get("max_iterations", cfg.search.max_iterations)),
        )

    if "mailboxes" in data:
        cfg.mailboxes = [_parse_mailbox(m) for m in data["mailboxes"] or []]

    if "scheduler" in data:
        sc = data["scheduler"]
        cfg.scheduler = SchedulerCfg(
            poll_interval=int(sc.get("poll_interval", cfg.scheduler.poll_interval)),
            mail_interval=int(sc.get("mail_interval", cfg.scheduler.mail_interval)),
            job_retries=int(sc.get("job_retries", cfg.scheduler.job_retries)),
        )

    return cfg


def _apply_env_overrides(cfg: TrackerConfig) -> TrackerConfig:
    """Apply TRACKER_* environment variable overrides."""
    if model := os.environ.get("TRACKER_GENERATION_MODEL"):
        cfg.generation.model = model
    if model := os.environ.get("TRACKER_SCORING_MODEL"):
        cfg.generation.scoring_model = model
    if db := os.environ.get("TRACKER_DB"):
        cfg.database = db
    if not cfg.search.cx:
        cfg.search.cx = os.environ.get("GOOGLE_SEARCH_CX", "")
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> TrackerConfig:
    """Load and return a merged *TrackerConfig*.

    Applies layers in order: global → per-project → env vars.

    Args:
        project_dir: Directory to search for *tracker.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If the global config contains credential-like fields or a
            mailbox entry carries a password.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)
    return _apply_env_overrides(cfg)


def ensure_global_config(global_config_path: Path | None = None) -> Path:
    """Create ``~/.tracker/config.yaml`` with defaults if it does not exist.

    The directory is created with mode 0o700 and the file with mode 0o600.
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# Tracker global configuration — no credentials here.\n"
            "# Use environment variables instead:\n"
            "#   export OPENAI_API_KEY=sk-...\n"
            "#   export GOOGLE_SEARCH_API_KEY=...\n"
            "#   export EMAIL_IMPORT_PASS=...\n"
            "\n"
            "generation:\n"
            "  model: openai/gpt-4o\n"
            "  scoring_model: openai/gpt-4o-mini\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
