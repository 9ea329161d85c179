"""SQLite record store for repos, worktrees, users and worktree owners."""

from __future__ import annotations

import contextlib
import sqlite3
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypedDict, cast

from wtguard.errors import InvalidTransition, RecordNotFound, ValidationFailure
from wtguard.paths import DEFAULT_DB_PATH

VALID_FILESYSTEM_STATUSES = {"creating", "ready", "failed"}
VALID_OTHERS_CAN = {"none", "view", "prompt", "all"}

# creating is the only state that may move; ready and failed are terminal.
_ALLOWED_TRANSITIONS = {
    "creating": {"creating", "ready", "failed"},
    "ready": {"ready"},
    "failed": {"failed"},
}


def _utcnow() -> str:
    """ISO 8601 UTC timestamp matching SQLite strftime format."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


# Bump when adding migrations.
SCHEMA_VERSION = 2

SCHEMA = """\
CREATE TABLE IF NOT EXISTS repos (
    repo_id TEXT PRIMARY KEY,
    slug TEXT UNIQUE NOT NULL,
    name TEXT NOT NULL,
    repo_type TEXT NOT NULL DEFAULT 'remote',
    remote_url TEXT,
    local_path TEXT NOT NULL,
    default_branch TEXT,
    unix_group TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    email TEXT UNIQUE,
    name TEXT,
    unix_username TEXT UNIQUE,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS worktrees (
    worktree_id TEXT PRIMARY KEY,
    repo_id TEXT REFERENCES repos(repo_id),
    name TEXT NOT NULL,
    path TEXT NOT NULL,
    branch TEXT,
    filesystem_status TEXT NOT NULL DEFAULT 'creating',
    unix_group TEXT,
    others_can TEXT NOT NULL DEFAULT 'view',
    created_by TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS worktree_owners (
    worktree_id TEXT NOT NULL REFERENCES worktrees(worktree_id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    PRIMARY KEY (worktree_id, user_id)
);
"""


# -- Row TypedDicts matching table schemas --


class RepoRow(TypedDict):
    repo_id: str
    slug: str
    name: str
    repo_type: str
    remote_url: str | None
    local_path: str
    default_branch: str | None
    unix_group: str | None
    created_at: str


class UserRow(TypedDict):
    user_id: str
    email: str | None
    name: str | None
    unix_username: str | None
    created_at: str


class WorktreeRow(TypedDict):
    worktree_id: str
    repo_id: str | None
    name: str
    path: str
    branch: str | None
    filesystem_status: str
    unix_group: str | None
    others_can: str
    created_by: str | None
    created_at: str
    updated_at: str


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.executescript(SCHEMA)

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        _migrate(conn, current_version)
        _create_indexes(conn)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    return conn


@contextlib.contextmanager
def connect(db_path: Path = DEFAULT_DB_PATH):
    """Context manager wrapper for get_connection().

    Usage:
        with connect() as conn:
            do_stuff(conn)
    # conn.close() is guaranteed even on exceptions.
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _add_column_if_missing(
    conn: sqlite3.Connection, table: str, column: str, col_def: str, cols: set[str]
) -> None:
    if column not in cols:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_def}")


def _migrate_to_v1(conn: sqlite3.Connection) -> None:
    """v1: unix_group on repos and worktrees."""
    _add_column_if_missing(conn, "repos", "unix_group", "TEXT", _table_columns(conn, "repos"))
    _add_column_if_missing(
        conn, "worktrees", "unix_group", "TEXT", _table_columns(conn, "worktrees")
    )


def _migrate_to_v2(conn: sqlite3.Connection) -> None:
    """v2: others_can policy and created_by on worktrees."""
    cols = _table_columns(conn, "worktrees")
    _add_column_if_missing(conn, "worktrees", "others_can", "TEXT NOT NULL DEFAULT 'view'", cols)
    _add_column_if_missing(conn, "worktrees", "created_by", "TEXT", cols)


_MIGRATIONS = [
    (1, _migrate_to_v1),
    (2, _migrate_to_v2),
]


def _migrate(conn: sqlite3.Connection, from_version: int) -> None:
    """Run schema migrations from from_version to SCHEMA_VERSION.

    Each migration checks column existence first, so it is a no-op on fresh
    databases. Commit is handled by the caller.
    """
    for version, migration_fn in _MIGRATIONS:
        if from_version < version:
            migration_fn(conn)


def _create_indexes(conn: sqlite3.Connection) -> None:
    """Create non-PK indexes. Idempotent."""
    conn.executescript("""
        CREATE INDEX IF NOT EXISTS idx_worktrees_repo_id ON worktrees(repo_id);
        CREATE INDEX IF NOT EXISTS idx_worktrees_status ON worktrees(filesystem_status);
        CREATE INDEX IF NOT EXISTS idx_worktree_owners_user ON worktree_owners(user_id);
    """)


def _new_id() -> str:
    return str(uuid.uuid4())


# -- repos --


def create_repo(conn: sqlite3.Connection, data: Mapping[str, Any]) -> RepoRow:
    if not data.get("slug") or not data.get("local_path"):
        raise ValidationFailure("repo requires 'slug' and 'local_path'")
    existing = conn.execute("SELECT repo_id FROM repos WHERE slug = ?", (data["slug"],)).fetchone()
    if existing:
        raise ValidationFailure(f"Repo slug '{data['slug']}' is already registered")
    repo_id = data.get("repo_id") or _new_id()
    conn.execute(
        """INSERT INTO repos
           (repo_id, slug, name, repo_type, remote_url, local_path, default_branch, unix_group)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            repo_id,
            data["slug"],
            data.get("name") or data["slug"].rsplit("/", 1)[-1],
            data.get("repo_type", "remote"),
            data.get("remote_url"),
            data["local_path"],
            data.get("default_branch"),
            data.get("unix_group"),
        ),
    )
    conn.commit()
    return get_repo(conn, repo_id)


def get_repo(conn: sqlite3.Connection, repo_id: str) -> RepoRow:
    row = conn.execute("SELECT * FROM repos WHERE repo_id = ?", (repo_id,)).fetchone()
    if not row:
        raise RecordNotFound(f"Repo not found: {repo_id}")
    return cast(RepoRow, dict(row))


_REPO_PATCHABLE = {"name", "remote_url", "local_path", "default_branch", "unix_group"}


def patch_repo(conn: sqlite3.Connection, repo_id: str, data: Mapping[str, Any]) -> RepoRow:
    get_repo(conn, repo_id)
    fields = {k: v for k, v in data.items() if k in _REPO_PATCHABLE}
    if fields:
        assignments = ", ".join(f"{k} = ?" for k in fields)
        conn.execute(
            f"UPDATE repos SET {assignments} WHERE repo_id = ?", (*fields.values(), repo_id)
        )
        conn.commit()
    return get_repo(conn, repo_id)


def remove_repo(conn: sqlite3.Connection, repo_id: str) -> RepoRow:
    repo = get_repo(conn, repo_id)
    conn.execute("DELETE FROM repos WHERE repo_id = ?", (repo_id,))
    conn.commit()
    return repo


# -- users --


def create_user(conn: sqlite3.Connection, data: Mapping[str, Any]) -> UserRow:
    user_id = data.get("user_id") or _new_id()
    conn.execute(
        "INSERT INTO users (user_id, email, name, unix_username) VALUES (?, ?, ?, ?)",
        (user_id, data.get("email"), data.get("name"), data.get("unix_username")),
    )
    conn.commit()
    return get_user(conn, user_id)


def get_user(conn: sqlite3.Connection, user_id: str) -> UserRow:
    row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
    if not row:
        raise RecordNotFound(f"User not found: {user_id}")
    return cast(UserRow, dict(row))


def patch_user(conn: sqlite3.Connection, user_id: str, data: Mapping[str, Any]) -> UserRow:
    get_user(conn, user_id)
    fields = {k: v for k, v in data.items() if k in {"email", "name", "unix_username"}}
    if fields:
        assignments = ", ".join(f"{k} = ?" for k in fields)
        conn.execute(
            f"UPDATE users SET {assignments} WHERE user_id = ?", (*fields.values(), user_id)
        )
        conn.commit()
    return get_user(conn, user_id)


def remove_user(conn: sqlite3.Connection, user_id: str) -> UserRow:
    user = get_user(conn, user_id)
    conn.execute("DELETE FROM users WHERE user_id = ?", (user_id,))
    conn.commit()
    return user


# -- worktrees --


def _validate_others_can(value: str) -> str:
    if value not in VALID_OTHERS_CAN:
        raise ValidationFailure(
            f"Invalid others_can '{value}'. Valid: {', '.join(sorted(VALID_OTHERS_CAN))}"
        )
    return value


def create_worktree_record(conn: sqlite3.Connection, data: Mapping[str, Any]) -> WorktreeRow:
    """Insert a worktree placeholder (``filesystem_status='creating'`` by default).

    ``created_by`` becomes the first owner.
    """
    if not data.get("name") or not data.get("path"):
        raise ValidationFailure("worktree requires 'name' and 'path'")
    status = data.get("filesystem_status", "creating")
    if status not in VALID_FILESYSTEM_STATUSES:
        raise ValidationFailure(f"Invalid filesystem_status '{status}'")
    worktree_id = data.get("worktree_id") or _new_id()
    conn.execute(
        """INSERT INTO worktrees
           (worktree_id, repo_id, name, path, branch, filesystem_status, unix_group,
            others_can, created_by)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            worktree_id,
            data.get("repo_id"),
            data["name"],
            data["path"],
            data.get("branch"),
            status,
            data.get("unix_group"),
            _validate_others_can(data.get("others_can", "view")),
            data.get("created_by"),
        ),
    )
    if data.get("created_by"):
        conn.execute(
            "INSERT OR IGNORE INTO worktree_owners (worktree_id, user_id) VALUES (?, ?)",
            (worktree_id, data["created_by"]),
        )
    conn.commit()
    return get_worktree(conn, worktree_id)


def get_worktree(conn: sqlite3.Connection, worktree_id: str) -> WorktreeRow:
    row = conn.execute("SELECT * FROM worktrees WHERE worktree_id = ?", (worktree_id,)).fetchone()
    if not row:
        raise RecordNotFound(f"Worktree not found: {worktree_id}")
    return cast(WorktreeRow, dict(row))


_WORKTREE_PATCHABLE = {"name", "path", "branch", "filesystem_status", "unix_group", "others_can"}


def patch_worktree(
    conn: sqlite3.Connection, worktree_id: str, data: Mapping[str, Any]
) -> WorktreeRow:
    """Update a worktree. filesystem_status may only leave ``creating``."""
    current = get_worktree(conn, worktree_id)
    fields = {k: v for k, v in data.items() if k in _WORKTREE_PATCHABLE}

    new_status = fields.get("filesystem_status")
    if new_status is not None:
        if new_status not in VALID_FILESYSTEM_STATUSES:
            raise ValidationFailure(f"Invalid filesystem_status '{new_status}'")
        old_status = current["filesystem_status"]
        if new_status not in _ALLOWED_TRANSITIONS[old_status]:
            raise InvalidTransition(
                f"Worktree {worktree_id[:8]}: {old_status} -> {new_status} is not allowed"
            )
    if "others_can" in fields:
        _validate_others_can(fields["others_can"])

    if fields:
        fields["updated_at"] = _utcnow()
        assignments = ", ".join(f"{k} = ?" for k in fields)
        conn.execute(
            f"UPDATE worktrees SET {assignments} WHERE worktree_id = ?",
            (*fields.values(), worktree_id),
        )
        conn.commit()
    return get_worktree(conn, worktree_id)


def remove_worktree_record(conn: sqlite3.Connection, worktree_id: str) -> WorktreeRow:
    worktree = get_worktree(conn, worktree_id)
    conn.execute("DELETE FROM worktree_owners WHERE worktree_id = ?", (worktree_id,))
    conn.execute("DELETE FROM worktrees WHERE worktree_id = ?", (worktree_id,))
    conn.commit()
    return worktree


def list_worktrees(
    conn: sqlite3.Connection, *, filesystem_status: str | None = None
) -> list[WorktreeRow]:
    if filesystem_status:
        rows = conn.execute(
            "SELECT * FROM worktrees WHERE filesystem_status = ? ORDER BY created_at",
            (filesystem_status,),
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM worktrees ORDER BY created_at").fetchall()
    return [cast(WorktreeRow, dict(row)) for row in rows]


# -- worktree owners --


def get_owners(conn: sqlite3.Connection, worktree_id: str) -> list[str]:
    rows = conn.execute(
        "SELECT user_id FROM worktree_owners WHERE worktree_id = ? ORDER BY created_at, user_id",
        (worktree_id,),
    ).fetchall()
    return [row["user_id"] for row in rows]


def is_owner(conn: sqlite3.Connection, worktree_id: str, user_id: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM worktree_owners WHERE worktree_id = ? AND user_id = ?",
        (worktree_id, user_id),
    ).fetchone()
    return row is not None


def add_owner(conn: sqlite3.Connection, worktree_id: str, user_id: str) -> None:
    get_worktree(conn, worktree_id)
    conn.execute(
        "INSERT OR IGNORE INTO worktree_owners (worktree_id, user_id) VALUES (?, ?)",
        (worktree_id, user_id),
    )
    conn.commit()


def remove_owner(conn: sqlite3.Connection, worktree_id: str, user_id: str) -> None:
    conn.execute(
        "DELETE FROM worktree_owners WHERE worktree_id = ? AND user_id = ?",
        (worktree_id, user_id),
    )
    conn.commit()
