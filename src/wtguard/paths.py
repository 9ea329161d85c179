"""Canonical filesystem paths for wtguard configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

WTGUARD_CONFIG_DIR = Path.home() / ".config" / "wtguard"

CONFIG_FILE = WTGUARD_CONFIG_DIR / "config.toml"

_env_db = os.environ.get("WTGUARD_DB_PATH")
DEFAULT_DB_PATH = Path(_env_db).expanduser() if _env_db else WTGUARD_CONFIG_DIR / "wtguard.db"

_env_data = os.environ.get("WTGUARD_DATA_DIR")
DATA_DIR = Path(_env_data).expanduser() if _env_data else Path.home() / ".agor"

REPOS_DIR = DATA_DIR / "repos"

# Base for per-user homes; presentation symlinks live under <home>/<user>/agor/worktrees
DEFAULT_HOME_BASE = "/home"
USER_WORKTREES_SUBDIR = "agor/worktrees"
