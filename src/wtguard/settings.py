"""Runtime settings: ``~/.config/wtguard/config.toml`` plus env overrides.

Example::

    [unix]
    enabled = true
    admin_user = "root"
    daemon_user = "agorpg"
    home_base = "/home"
    command_timeout_ms = 5000

    [daemon]
    url = "http://localhost:3030"

Environment variables win over the file: ``WTGUARD_UNIX_ENABLED``,
``WTGUARD_ADMIN_USER``, ``WTGUARD_DAEMON_USER``, ``WTGUARD_HOME_BASE``,
``WTGUARD_COMMAND_TIMEOUT_MS``, ``WTGUARD_DAEMON_URL``.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from wtguard.paths import CONFIG_FILE, DEFAULT_HOME_BASE
from wtguard.run_as_user import DEFAULT_TIMEOUT_MS

log = logging.getLogger(__name__)

DEFAULT_DAEMON_URL = "http://localhost:3030"

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    unix_enabled: bool = False
    admin_user: str | None = "root"
    daemon_user: str | None = None
    home_base: str = DEFAULT_HOME_BASE
    command_timeout_ms: int = DEFAULT_TIMEOUT_MS
    daemon_url: str = DEFAULT_DAEMON_URL


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file, returning an empty dict when missing or unparsable."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s", path, exc_info=True)
        return {}
    return raw if isinstance(raw, dict) else {}


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        log.warning("Ignoring non-integer %s=%r", name, value)
        return default


def load_settings(path: Path | None = None) -> Settings:
    raw = _read_toml_file(path or CONFIG_FILE)
    unix = raw.get("unix", {}) if isinstance(raw.get("unix"), dict) else {}
    daemon = raw.get("daemon", {}) if isinstance(raw.get("daemon"), dict) else {}

    admin_user = os.environ.get("WTGUARD_ADMIN_USER", unix.get("admin_user", "root"))
    return Settings(
        unix_enabled=_env_bool("WTGUARD_UNIX_ENABLED", bool(unix.get("enabled", False))),
        # empty string means "already privileged, run directly"
        admin_user=admin_user or None,
        daemon_user=os.environ.get("WTGUARD_DAEMON_USER", unix.get("daemon_user")) or None,
        home_base=os.environ.get("WTGUARD_HOME_BASE", unix.get("home_base", DEFAULT_HOME_BASE)),
        command_timeout_ms=_env_int(
            "WTGUARD_COMMAND_TIMEOUT_MS", int(unix.get("command_timeout_ms", DEFAULT_TIMEOUT_MS))
        ),
        daemon_url=os.environ.get("WTGUARD_DAEMON_URL", daemon.get("url", DEFAULT_DAEMON_URL)),
    )
