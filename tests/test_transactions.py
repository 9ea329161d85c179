"""Tests for the worktree lifecycle transactions."""

import shutil
from unittest.mock import MagicMock, patch

import pytest

from wtguard.errors import FilesystemFailure, WtguardError
from wtguard.git_ops import create_worktree
from wtguard.settings import Settings
from wtguard.store import SqliteRecordStore
from wtguard.transactions import (
    GIT_WORKTREE_ADD,
    HANDLERS,
    handle_git_clone,
    handle_git_worktree_add,
    handle_git_worktree_clean,
    handle_git_worktree_remove,
    run_command,
)
from wtguard.unix_integration import UnixIntegrationService

from conftest import ALICE_ID, REPO_ID

needs_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


class TrackingFactory:
    """store_factory that opens SQLite stores on one DB and records calls."""

    def __init__(self, db_path):
        self.db_path = db_path
        self.calls = []
        self.stores = []

    def __call__(self, daemon_url, session_token):
        self.calls.append((daemon_url, session_token))
        store = SqliteRecordStore(self.db_path)
        store.close = MagicMock(wraps=store.close)
        self.stores.append(store)
        return store


@pytest.fixture()
def factory(db_conn_path):
    _, db_path = db_conn_path
    return TrackingFactory(db_path)


@pytest.fixture()
def creating_worktree(db_conn_path, tmp_path):
    """A worktree record in ``creating`` state, as the daemon leaves it."""
    _, db_path = db_conn_path
    store = SqliteRecordStore(db_path)
    try:
        return store.service("worktrees").create(
            {
                "repo_id": REPO_ID,
                "name": "feat-x",
                "path": str(tmp_path / "worktrees" / "feat-x"),
                "branch": "feat-x",
                "created_by": ALICE_ID,
            }
        )
    finally:
        store.close()


def _status(db_path, worktree_id):
    store = SqliteRecordStore(db_path)
    try:
        return store.get_worktree(worktree_id)
    finally:
        store.close()


def _unix(executor):
    return UnixIntegrationService(executor, Settings(unix_enabled=True))


# -- dry run / validation --


@pytest.mark.asyncio
@pytest.mark.parametrize("name", sorted(HANDLERS))
async def test_dry_run_has_no_side_effects(name):
    store_factory = MagicMock()
    params = {
        "url": "https://github.com/preset-io/agor.git",
        "repoPath": "/srv/repos/agor",
        "worktreePath": "/srv/worktrees/feat-x",
        "worktreeName": "feat-x",
        "worktreeId": "7f3a9c21-0000-4000-8000-0000000000ff",
    }
    with (
        patch("wtguard.transactions.clone_repo") as clone,
        patch("wtguard.transactions.create_worktree") as add,
        patch("wtguard.transactions.remove_worktree") as remove,
        patch("wtguard.transactions.clean_worktree") as clean,
    ):
        result = await run_command(
            name, {"params": params}, dry_run=True, store_factory=store_factory
        )

    assert result.success
    assert result.data == {"dryRun": True, "command": name, "params": params}
    store_factory.assert_not_called()
    for mock in (clone, add, remove, clean):
        mock.assert_not_called()


@pytest.mark.asyncio
async def test_dry_run_still_validates():
    result = await handle_git_worktree_add({"params": {"repoPath": "/r"}}, dry_run=True)
    assert not result.success
    assert result.error["code"] == "GIT_WORKTREE_ADD_FAILED"
    assert "worktreePath, worktreeName" in result.error["message"]


@pytest.mark.asyncio
async def test_payload_must_be_object():
    result = await handle_git_clone("not a payload")
    assert result.error["message"] == "Payload must be an object"


@pytest.mark.asyncio
async def test_unknown_command():
    result = await run_command("git.push", {"params": {}})
    assert result.to_dict() == {
        "success": False,
        "error": {
            "code": "UNKNOWN_COMMAND",
            "message": (
                "Unknown command 'git.push'. Valid: git.clone, git.worktree.add, "
                "git.worktree.remove, git.worktree.clean"
            ),
            "details": {"command": "git.push"},
        },
    }


@pytest.mark.asyncio
async def test_store_factory_receives_connection_info(factory):
    with patch("wtguard.transactions.create_worktree"):
        await handle_git_worktree_add(
            {
                "params": {"repoPath": "/r", "worktreePath": "/w", "worktreeName": "w"},
                "daemonUrl": "http://daemon:3030",
                "sessionToken": "sess-1",
            },
            store_factory=factory,
        )
    assert factory.calls == [("http://daemon:3030", "sess-1")]
    factory.stores[0].close.assert_called_once()


@pytest.mark.asyncio
async def test_store_factory_failure_is_a_result():
    def broken(daemon_url, session_token):
        raise WtguardError("daemon unreachable")

    with patch("wtguard.transactions.create_worktree") as add:
        result = await handle_git_worktree_add(
            {"params": {"repoPath": "/r", "worktreePath": "/w", "worktreeName": "w"}},
            store_factory=broken,
        )
    assert not result.success
    assert result.error["message"] == "daemon unreachable"
    add.assert_not_called()


# -- git.worktree.add --


@pytest.mark.asyncio
async def test_add_failure_marks_record_failed(factory, creating_worktree):
    wt_id = creating_worktree["worktree_id"]
    with patch(
        "wtguard.transactions.create_worktree",
        side_effect=FilesystemFailure("Failed to create worktree: invalid reference"),
    ):
        result = await handle_git_worktree_add(
            {
                "params": {
                    "repoPath": "/srv/repos/agor",
                    "worktreePath": creating_worktree["path"],
                    "worktreeName": "feat-x",
                    "worktreeId": wt_id,
                    "repoId": REPO_ID,
                }
            },
            store_factory=factory,
        )

    assert not result.success
    assert result.error["code"] == "GIT_WORKTREE_ADD_FAILED"
    assert result.error["details"] == {
        "worktreeId": wt_id,
        "repoId": REPO_ID,
        "repoPath": "/srv/repos/agor",
        "worktreeName": "feat-x",
        "worktreePath": creating_worktree["path"],
    }
    assert _status(factory.db_path, wt_id)["filesystem_status"] == "failed"
    factory.stores[0].close.assert_called_once()


@pytest.mark.asyncio
async def test_add_failure_without_worktree_id_touches_no_record(factory):
    with patch("wtguard.transactions.create_worktree", side_effect=FilesystemFailure("boom")):
        result = await handle_git_worktree_add(
            {"params": {"repoPath": "/r", "worktreePath": "/w", "worktreeName": "w"}},
            store_factory=factory,
        )
    assert result.error["details"]["worktreeId"] is None


@pytest.mark.slow
@needs_git
@pytest.mark.asyncio
async def test_add_marks_record_ready(factory, creating_worktree, cloned_repo):
    wt_id = creating_worktree["worktree_id"]
    result = await handle_git_worktree_add(
        {
            "params": {
                "repoPath": str(cloned_repo),
                "worktreePath": creating_worktree["path"],
                "worktreeName": "feat-x",
                "worktreeId": wt_id,
                "createBranch": True,
            }
        },
        store_factory=factory,
    )

    assert result.success, result.error
    assert result.data["branch"] == "feat-x"
    assert result.data["unixGroup"] is None
    assert result.warnings == []
    record = _status(factory.db_path, wt_id)
    assert record["filesystem_status"] == "ready"
    assert record["unix_group"] is None


@pytest.mark.slow
@needs_git
@pytest.mark.asyncio
async def test_add_with_unix_isolation(factory, creating_worktree, cloned_repo, executor):
    wt_id = creating_worktree["worktree_id"]
    result = await handle_git_worktree_add(
        {
            "params": {
                "repoPath": str(cloned_repo),
                "worktreePath": creating_worktree["path"],
                "worktreeName": "feat-x",
                "worktreeId": wt_id,
                "createBranch": True,
                "pullLatest": False,
                "initUnixGroup": True,
                "othersAccess": "none",
                "creatorUnixUsername": "agor_a11ce000",
                "repoUnixGroup": "agor_rp_4e90a1d2",
            }
        },
        store_factory=factory,
        unix=_unix(executor),
    )

    group = f"agor_wt_{wt_id[:8]}"
    assert result.success, result.error
    assert result.isolated
    assert result.data["unixGroup"] == group
    assert _status(factory.db_path, wt_id)["unix_group"] == group
    assert f"usermod -aG '{group}' 'agor_a11ce000'" in executor.ran
    assert any("chmod -R 2750" in cmd for cmd in executor.ran)
    assert any("chgrp -R 'agor_rp_4e90a1d2'" in cmd for cmd in executor.ran)


@pytest.mark.slow
@needs_git
@pytest.mark.asyncio
async def test_add_isolation_failure_is_a_warning(
    factory, creating_worktree, cloned_repo, make_executor
):
    wt_id = creating_worktree["worktree_id"]
    executor = make_executor(fail_on=("groupadd",))
    result = await handle_git_worktree_add(
        {
            "params": {
                "repoPath": str(cloned_repo),
                "worktreePath": creating_worktree["path"],
                "worktreeName": "feat-x",
                "worktreeId": wt_id,
                "createBranch": True,
                "pullLatest": False,
                "initUnixGroup": True,
            }
        },
        store_factory=factory,
        unix=_unix(executor),
    )

    assert result.success
    assert not result.isolated
    assert [w["code"] for w in result.warnings] == ["WORKTREE_GROUP_INIT_FAILED"]
    assert result.to_dict()["warnings"][0]["message"].startswith("simulated failure")
    record = _status(factory.db_path, wt_id)
    assert record["filesystem_status"] == "ready"
    assert record["unix_group"] is None


# -- git.worktree.remove --


@pytest.mark.asyncio
async def test_remove_requires_worktree_id_when_deleting_record():
    result = await handle_git_worktree_remove({"params": {"worktreePath": "/w"}})
    assert not result.success
    assert "worktreeId" in result.error["message"]


@pytest.mark.asyncio
async def test_remove_missing_directory_still_deletes_record(factory, creating_worktree):
    wt_id = creating_worktree["worktree_id"]
    result = await handle_git_worktree_remove(
        {"params": {"worktreePath": creating_worktree["path"], "worktreeId": wt_id}},
        store_factory=factory,
    )
    assert result.success
    assert result.data["filesystemRemoved"] is False
    assert result.data["dbRecordDeleted"] is True


@pytest.mark.asyncio
async def test_remove_is_retry_safe(factory, creating_worktree):
    payload = {
        "params": {
            "worktreePath": creating_worktree["path"],
            "worktreeId": creating_worktree["worktree_id"],
        }
    }
    await handle_git_worktree_remove(payload, store_factory=factory)
    again = await handle_git_worktree_remove(payload, store_factory=factory)
    assert again.success
    assert again.data["dbRecordDeleted"] is False


@pytest.mark.asyncio
async def test_remove_keeps_record_when_asked(factory, creating_worktree):
    wt_id = creating_worktree["worktree_id"]
    result = await handle_git_worktree_remove(
        {
            "params": {
                "worktreePath": creating_worktree["path"],
                "worktreeId": wt_id,
                "deleteDbRecord": False,
            }
        },
        store_factory=factory,
    )
    assert result.data["dbRecordDeleted"] is False
    assert _status(factory.db_path, wt_id)["name"] == "feat-x"


@pytest.mark.slow
@needs_git
@pytest.mark.asyncio
async def test_remove_real_worktree(factory, creating_worktree, cloned_repo):
    wt_path = creating_worktree["path"]
    create_worktree(str(cloned_repo), wt_path, "feat-x", create_branch=True, pull_latest=False)

    result = await handle_git_worktree_remove(
        {"params": {"worktreePath": wt_path, "worktreeId": creating_worktree["worktree_id"]}},
        store_factory=factory,
    )
    assert result.success, result.error
    assert result.data["filesystemRemoved"] is True
    assert result.data["dbRecordDeleted"] is True


# -- git.clone --


@pytest.mark.slow
@needs_git
@pytest.mark.asyncio
async def test_clone_registers_repo(factory, origin_repo, tmp_path, executor):
    target = tmp_path / "repos" / "widgets"
    result = await handle_git_clone(
        {
            "params": {
                "url": str(origin_repo),
                "outputPath": str(target),
                "slug": "acme/widgets",
                "initUnixGroup": True,
            }
        },
        store_factory=factory,
        unix=_unix(executor),
    )

    assert result.success, result.error
    data = result.data
    assert data["path"] == str(target)
    assert data["defaultBranch"] == "main"
    assert data["dbRecordCreated"] is True
    assert data["unixGroup"] == f"agor_rp_{data['repoId'][:8]}"

    store = SqliteRecordStore(factory.db_path)
    try:
        repo = store.service("repos").get(data["repoId"])
    finally:
        store.close()
    assert repo["slug"] == "acme/widgets"
    assert repo["name"] == "widgets"
    assert repo["repo_type"] == "remote"
    assert repo["unix_group"] == data["unixGroup"]
    assert any("chmod -R 2775" in cmd for cmd in executor.ran)


@pytest.mark.slow
@needs_git
@pytest.mark.asyncio
async def test_clone_without_record(factory, origin_repo, tmp_path):
    result = await handle_git_clone(
        {
            "params": {
                "url": str(origin_repo),
                "outputPath": str(tmp_path / "plain"),
                "createDbRecord": False,
            }
        },
        store_factory=factory,
    )
    assert result.success, result.error
    assert result.data["repoId"] is None
    assert result.data["dbRecordCreated"] is False


@pytest.mark.asyncio
async def test_clone_failure(factory):
    with patch(
        "wtguard.transactions.clone_repo", side_effect=FilesystemFailure("Failed to clone x")
    ):
        result = await handle_git_clone(
            {"params": {"url": "https://example.invalid/x.git", "outputPath": "/tmp/x"}},
            store_factory=factory,
        )
    assert result.to_dict()["error"] == {
        "code": "GIT_CLONE_FAILED",
        "message": "Failed to clone x",
        "details": {"url": "https://example.invalid/x.git", "outputPath": "/tmp/x"},
    }
    factory.stores[0].close.assert_called_once()


# -- git.worktree.clean --


@pytest.mark.asyncio
async def test_clean_reports_count():
    store_factory = MagicMock()
    with patch("wtguard.transactions.clean_worktree", return_value=3) as clean:
        result = await handle_git_worktree_clean(
            {"params": {"worktreePath": "/w"}}, store_factory=store_factory
        )
    clean.assert_called_once_with("/w")
    assert result.data == {"worktreePath": "/w", "filesRemoved": 3}
    store_factory.assert_not_called()


@pytest.mark.asyncio
async def test_clean_missing_directory(tmp_path):
    result = await handle_git_worktree_clean({"params": {"worktreePath": str(tmp_path / "gone")}})
    assert result.error["code"] == "GIT_WORKTREE_CLEAN_FAILED"
    assert "does not exist" in result.error["message"]


@pytest.mark.asyncio
async def test_run_command_dispatches():
    with patch("wtguard.transactions.clean_worktree", return_value=0):
        result = await run_command("git.worktree.clean", {"params": {"worktreePath": "/w"}})
    assert result.success
    assert GIT_WORKTREE_ADD in HANDLERS


@pytest.mark.slow
@needs_git
@pytest.mark.asyncio
async def test_clone_isolation_failure_keeps_record(factory, origin_repo, tmp_path, make_executor):
    executor = make_executor(fail_on=("groupadd",))
    result = await handle_git_clone(
        {
            "params": {
                "url": str(origin_repo),
                "outputPath": str(tmp_path / "repos" / "widgets"),
                "slug": "acme/widgets",
                "initUnixGroup": True,
            }
        },
        store_factory=factory,
        unix=_unix(executor),
    )

    assert result.success, result.error
    assert [w["code"] for w in result.warnings] == ["REPO_GROUP_INIT_FAILED"]
    assert result.data["unixGroup"] is None

    store = SqliteRecordStore(factory.db_path)
    try:
        repo = store.service("repos").get(result.data["repoId"])
    finally:
        store.close()
    assert repo["slug"] == "acme/widgets"
    assert repo["unix_group"] is None
