"""Shared test fixtures: template DB for per-test isolation, recording executor."""

import shutil
import sqlite3
import subprocess
import tempfile
from pathlib import Path

import pytest

from wtguard.db import create_repo, create_user, get_connection
from wtguard.errors import CommandFailed
from wtguard.run_as_user import CommandExecutor

ALICE_ID = "a11ce000-0000-4000-8000-000000000001"
BOB_ID = "b0b00000-0000-4000-8000-000000000002"
CAROL_ID = "ca501000-0000-4000-8000-000000000003"
REPO_ID = "4e90a1d2-0000-4000-8000-00000000000a"


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Template DB with full schema, one repo and three users.

    Copying the file is much cheaper than running migrations per test.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    path = Path(path_str)
    try:
        conn = get_connection(path)
        create_repo(
            conn,
            {
                "repo_id": REPO_ID,
                "slug": "preset-io/agor",
                "remote_url": "https://github.com/preset-io/agor.git",
                "local_path": "/srv/repos/agor",
                "default_branch": "main",
            },
        )
        create_user(
            conn,
            {"user_id": ALICE_ID, "email": "alice@example.com", "unix_username": "agor_a11ce000"},
        )
        create_user(conn, {"user_id": BOB_ID, "email": "bob@example.com", "unix_username": "bob"})
        # no Unix identity
        create_user(conn, {"user_id": CAROL_ID, "email": "carol@example.com"})
        conn.close()
        yield path
    finally:
        path.unlink(missing_ok=True)


@pytest.fixture()
def db_conn(tmp_path: Path, _db_template_path: Path) -> sqlite3.Connection:
    """Per-test DB connection with schema + fixtures pre-loaded."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def db_conn_path(tmp_path: Path, _db_template_path: Path) -> tuple[sqlite3.Connection, Path]:
    """Per-test DB connection + path (for tests that re-open the DB)."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn, db_path
    finally:
        conn.close()


class RecordingExecutor(CommandExecutor):
    """Executor that records commands instead of running them.

    ``checks`` maps a substring to the boolean ``check`` returns for commands
    containing it (default False). ``outputs`` does the same for ``run``.
    Commands containing any ``fail_on`` substring raise CommandFailed.
    """

    def __init__(self, *, checks=None, outputs=None, fail_on=()):
        super().__init__(admin_user="root")
        self.checks = checks or {}
        self.outputs = outputs or {}
        self.fail_on = tuple(fail_on)
        self.commands: list[tuple[str | None, str]] = []

    def run(self, command, *, as_user=None):
        self.commands.append((as_user, command))
        if any(marker in command for marker in self.fail_on):
            raise CommandFailed(f"simulated failure: {command}", command=command, returncode=1)
        for marker, output in self.outputs.items():
            if marker in command:
                return output
        return ""

    def check(self, command, *, as_user=None):
        self.commands.append((as_user, command))
        for marker, result in self.checks.items():
            if marker in command:
                return result
        return False

    @property
    def ran(self) -> list[str]:
        return [cmd for _, cmd in self.commands]

    def ran_matching(self, prefix: str) -> list[str]:
        return [cmd for cmd in self.ran if cmd.startswith(prefix)]


@pytest.fixture()
def executor() -> RecordingExecutor:
    return RecordingExecutor()


@pytest.fixture()
def git_identity_env(monkeypatch):
    """Ensure commits succeed without relying on global git config."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "wtguard-tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "wtguard-tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "wtguard-tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "wtguard-tests@example.com")
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    monkeypatch.delenv("GH_TOKEN", raising=False)


def _git(cwd: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=str(cwd), check=True, capture_output=True)


@pytest.fixture()
def origin_repo(tmp_path: Path, git_identity_env) -> Path:
    """A non-bare repo on ``main`` with one commit, usable as a clone source."""
    origin = tmp_path / "origin" / "agor"
    origin.mkdir(parents=True)
    _git(origin, "init")
    _git(origin, "symbolic-ref", "HEAD", "refs/heads/main")
    (origin / "README.md").write_text("# agor\n")
    (origin / ".gitignore").write_text("build/\n")
    _git(origin, "add", ".")
    _git(origin, "commit", "-m", "init")
    return origin


@pytest.fixture()
def cloned_repo(tmp_path: Path, origin_repo: Path) -> Path:
    clone = tmp_path / "repos" / "agor"
    clone.parent.mkdir(parents=True)
    subprocess.run(
        ["git", "clone", str(origin_repo), str(clone)], check=True, capture_output=True
    )
    return clone


@pytest.fixture()
def make_executor():
    """Factory for RecordingExecutor with per-test checks/outputs/failures."""
    return RecordingExecutor
