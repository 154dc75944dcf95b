"""Centralised configuration, constants and config-file loading."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

# ── Gerrit REST API ─────────────────────────────────────────────────────────
GERRIT_PASSWORD: str | None = os.getenv("GERRIT_HTTP_PASSWORD")
XSSI_PREFIX: str = ")]}'"
REQUEST_TIMEOUT: float = 30.0  # seconds
CHANGE_PAGE_SIZE: int = 100
CHANGE_OPTIONS: list[str] = [
    "ALL_REVISIONS",
    "CURRENT_COMMIT",
    "DETAILED_LABELS",
    "DETAILED_ACCOUNTS",
]

# ── Fetch settings ─────────────────────────────────────────────────────────
DEFAULT_CONCURRENCY: int = 4
RETRY_MAX: int = 3
RETRY_BACKOFF: float = 2.0  # seconds, exponential base

# ── Approvals ───────────────────────────────────────────────────────────────
APPROVAL_LABEL: str = "Code-Review"
APPROVAL_VALUE: int = 2

# ── Report ──────────────────────────────────────────────────────────────────
SUMMARY_FILE: str = "stats.csv"
DETAILED_FILE: str = "detailed.csv"
ALL_PROJECTS: str = "All"
AVERAGE_ROW: str = "Average"


class ConfigError(Exception):
    """The configuration file is missing, unreadable or invalid."""


@dataclass(frozen=True)
class UserConfig:
    """A configured user and the window their statistics cover."""

    username: str
    fullname: str
    since: date | None = None
    until: date | None = None

    @property
    def display_name(self) -> str:
        return self.fullname or self.username

    def covers(self, moment: datetime | None) -> bool:
        """Return True if *moment* falls inside this user's window.

        ``since`` starts at 00:00:00 and ``until`` ends at 23:59:59 UTC.
        An open window covers everything, including a missing timestamp.
        """
        if self.since is None and self.until is None:
            return True
        if moment is None:
            return False
        if self.since is not None:
            start = datetime.combine(self.since, time.min, tzinfo=timezone.utc)
            if moment < start:
                return False
        if self.until is not None:
            end = datetime.combine(self.until, time(23, 59, 59), tzinfo=timezone.utc)
            if moment > end:
                return False
        return True


@dataclass
class StatsConfig:
    """Everything a run needs besides the credential."""

    server: str
    users: list[UserConfig]
    concurrency: int = DEFAULT_CONCURRENCY
    timeout: float = REQUEST_TIMEOUT
    retry_max: int = RETRY_MAX
    retry_backoff: float = RETRY_BACKOFF
    approval_label: str = APPROVAL_LABEL
    approval_value: int = APPROVAL_VALUE
    page_size: int = CHANGE_PAGE_SIZE


# ── Loading ────────────────────────────────────────────────────────────────

def _as_date(value: Any, where: str) -> date | None:
    """Accept YAML dates and ISO ``YYYY-MM-DD`` strings."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            pass
    raise ConfigError(f"{where}: expected a YYYY-MM-DD date, got {value!r}")


def _positive(value: Any, where: str, kind: type = int) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{where}: expected a number, got {value!r}")
    if kind is int and not isinstance(value, int):
        raise ConfigError(f"{where}: expected an integer, got {value!r}")
    if value <= 0:
        raise ConfigError(f"{where}: must be positive, got {value!r}")
    return kind(value)


def _parse_users(
    raw_users: Any,
    default_since: date | None,
    default_until: date | None,
) -> list[UserConfig]:
    if not isinstance(raw_users, list) or not raw_users:
        raise ConfigError("'users' must be a non-empty list")

    users: list[UserConfig] = []
    seen: set[str] = set()
    for i, entry in enumerate(raw_users):
        if not isinstance(entry, dict):
            raise ConfigError(f"users[{i}]: expected a mapping, got {entry!r}")
        username = entry.get("username")
        if not isinstance(username, str) or not username.strip():
            raise ConfigError(f"users[{i}]: missing 'username'")
        username = username.strip()
        if username in seen:
            raise ConfigError(f"users[{i}]: duplicate username {username!r}")
        seen.add(username)

        fullname = entry.get("fullname") or ""
        if not isinstance(fullname, str):
            raise ConfigError(f"users[{i}]: 'fullname' must be a string")

        since = _as_date(entry.get("from"), f"users[{i}].from") or default_since
        until = _as_date(entry.get("to"), f"users[{i}].to") or default_until
        if since and until and since > until:
            raise ConfigError(f"users[{i}]: 'from' {since} is after 'to' {until}")

        users.append(UserConfig(username, fullname.strip(), since, until))

    return users


def parse_config(data: Any) -> StatsConfig:
    """Validate an already-decoded configuration mapping."""
    if not isinstance(data, dict):
        raise ConfigError("configuration must be a mapping")

    server = data.get("server")
    if not isinstance(server, str) or not server.strip():
        raise ConfigError("missing 'server'")
    server = server.strip().rstrip("/")
    if not server.startswith(("http://", "https://")):
        raise ConfigError(f"'server' must be an http(s) URL, got {server!r}")

    since = _as_date(data.get("from"), "from")
    until = _as_date(data.get("to"), "to")
    if since and until and since > until:
        raise ConfigError(f"'from' {since} is after 'to' {until}")

    retry = data.get("retry") or {}
    approval = data.get("approval") or {}
    if not isinstance(retry, dict):
        raise ConfigError("'retry' must be a mapping")
    if not isinstance(approval, dict):
        raise ConfigError("'approval' must be a mapping")

    label = approval.get("label", APPROVAL_LABEL)
    if not isinstance(label, str) or not label:
        raise ConfigError("approval.label must be a non-empty string")
    value = approval.get("value", APPROVAL_VALUE)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"approval.value: expected an integer, got {value!r}")

    return StatsConfig(
        server=server,
        users=_parse_users(data.get("users"), since, until),
        concurrency=_positive(data.get("concurrency", DEFAULT_CONCURRENCY), "concurrency"),
        timeout=_positive(data.get("timeout", REQUEST_TIMEOUT), "timeout", float),
        retry_max=_positive(retry.get("max", RETRY_MAX), "retry.max"),
        retry_backoff=_positive(retry.get("backoff", RETRY_BACKOFF), "retry.backoff", float),
        approval_label=label,
        approval_value=value,
    )


def load_config(path: str | Path) -> StatsConfig:
    """Load and validate a YAML configuration file.

    Raises:
        ConfigError: if the file cannot be read or fails validation.
    """
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc

    config = parse_config(data)
    logger.info("Loaded %d user(s) from %s", len(config.users), path)
    return config
