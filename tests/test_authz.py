"""Tests for worktree permissions and the owners service."""

import asyncio
import threading
import time
from unittest.mock import MagicMock

import pytest

from wtguard.authz import WorktreeOwnersService, effective_permission, has_permission
from wtguard.errors import (
    AuthorizationFailure,
    NotAuthenticated,
    ProvisioningFailure,
    RecordNotFound,
    ValidationFailure,
)
from wtguard.store import SqliteRecordStore

from conftest import ALICE_ID, BOB_ID, CAROL_ID, REPO_ID

OUTSIDER = "0d0d0d0d-0000-4000-8000-000000000009"


@pytest.fixture()
def repository(db_conn_path):
    _, db_path = db_conn_path
    store = SqliteRecordStore(db_path)
    try:
        yield store
    finally:
        store.close()


def _worktree(repository, others_can="view"):
    return repository.service("worktrees").create(
        {
            "repo_id": REPO_ID,
            "name": "feat-x",
            "path": "/srv/worktrees/feat-x",
            "created_by": ALICE_ID,
            "others_can": others_can,
        }
    )["worktree_id"]


def _unix(enabled=True):
    unix = MagicMock()
    unix.is_enabled.return_value = enabled
    return unix


@pytest.mark.parametrize(
    ("level", "required", "expected"),
    [
        ("all", "all", True),
        ("all", "view", True),
        ("prompt", "view", True),
        ("prompt", "all", False),
        ("view", "prompt", False),
        ("none", "view", False),
        ("view", "none", True),
    ],
)
def test_has_permission(level, required, expected):
    assert has_permission(level, required) is expected


def test_has_permission_unknown_level():
    with pytest.raises(ValidationFailure, match="'admin'"):
        has_permission("admin", "view")


def test_effective_permission():
    assert effective_permission(True, "none") == "all"
    assert effective_permission(False, "prompt") == "prompt"
    assert effective_permission(False, None) == "view"


@pytest.mark.asyncio
async def test_find_returns_owner_records(repository):
    wt_id = _worktree(repository)
    repository.add_owner(wt_id, BOB_ID)
    owners = await WorktreeOwnersService(repository).find(wt_id, caller=CAROL_ID)
    assert sorted(o["user_id"] for o in owners) == sorted([ALICE_ID, BOB_ID])


@pytest.mark.asyncio
async def test_find_respects_others_none(repository):
    wt_id = _worktree(repository, others_can="none")
    service = WorktreeOwnersService(repository)
    with pytest.raises(AuthorizationFailure, match="'view' permission"):
        await service.find(wt_id, caller=BOB_ID)
    assert len(await service.find(wt_id, caller=ALICE_ID)) == 1


@pytest.mark.asyncio
async def test_find_requires_authentication(repository):
    wt_id = _worktree(repository)
    with pytest.raises(NotAuthenticated):
        await WorktreeOwnersService(repository).find(wt_id, caller="")


@pytest.mark.asyncio
async def test_find_unknown_worktree_is_forbidden(repository):
    with pytest.raises(AuthorizationFailure, match="not found"):
        await WorktreeOwnersService(repository).find(
            "00000000-0000-4000-8000-000000000000", caller=ALICE_ID
        )


@pytest.mark.asyncio
async def test_find_skips_deleted_users(repository):
    wt_id = _worktree(repository)
    repository.add_owner(wt_id, OUTSIDER)
    owners = await WorktreeOwnersService(repository).find(wt_id)
    assert [o["user_id"] for o in owners] == [ALICE_ID]


@pytest.mark.asyncio
async def test_owner_can_add_owner(repository):
    wt_id = _worktree(repository)
    unix = _unix()
    change = await WorktreeOwnersService(repository, unix).create(wt_id, BOB_ID, caller=ALICE_ID)

    assert change.user["user_id"] == BOB_ID
    assert change.warnings == []
    assert repository.is_owner(wt_id, BOB_ID)
    worktree, username = unix.grant_worktree_access.call_args.args
    assert worktree["worktree_id"] == wt_id
    assert username == "bob"


@pytest.mark.asyncio
async def test_non_owner_cannot_add_even_with_all(repository):
    wt_id = _worktree(repository, others_can="all")
    unix = _unix()
    with pytest.raises(AuthorizationFailure, match="Only worktree owners"):
        await WorktreeOwnersService(repository, unix).create(wt_id, CAROL_ID, caller=BOB_ID)
    assert not repository.is_owner(wt_id, CAROL_ID)
    unix.grant_worktree_access.assert_not_called()


@pytest.mark.asyncio
async def test_internal_call_skips_authorization(repository):
    wt_id = _worktree(repository, others_can="none")
    await WorktreeOwnersService(repository).create(wt_id, BOB_ID)
    assert repository.is_owner(wt_id, BOB_ID)


@pytest.mark.asyncio
async def test_add_unknown_user(repository):
    wt_id = _worktree(repository)
    with pytest.raises(RecordNotFound):
        await WorktreeOwnersService(repository).create(wt_id, OUTSIDER, caller=ALICE_ID)
    assert not repository.is_owner(wt_id, OUTSIDER)


@pytest.mark.asyncio
async def test_add_requires_user_id(repository):
    wt_id = _worktree(repository)
    with pytest.raises(ValidationFailure):
        await WorktreeOwnersService(repository).create(wt_id, "", caller=ALICE_ID)


@pytest.mark.asyncio
async def test_mirror_failure_becomes_warning(repository):
    wt_id = _worktree(repository)
    unix = _unix()
    unix.grant_worktree_access.side_effect = ProvisioningFailure("usermod failed")

    change = await WorktreeOwnersService(repository, unix).create(wt_id, BOB_ID, caller=ALICE_ID)
    assert repository.is_owner(wt_id, BOB_ID)
    assert change.warnings == [{"code": "UNIX_MEMBERSHIP_FAILED", "message": "usermod failed"}]


@pytest.mark.asyncio
async def test_mirror_skipped_when_disabled(repository):
    wt_id = _worktree(repository)
    unix = _unix(enabled=False)
    await WorktreeOwnersService(repository, unix).create(wt_id, BOB_ID, caller=ALICE_ID)
    unix.grant_worktree_access.assert_not_called()


@pytest.mark.asyncio
async def test_remove_owner(repository):
    wt_id = _worktree(repository)
    repository.add_owner(wt_id, BOB_ID)
    unix = _unix()

    change = await WorktreeOwnersService(repository, unix).remove(wt_id, BOB_ID, caller=ALICE_ID)
    assert change.user["user_id"] == BOB_ID
    assert repository.get_owners(wt_id) == [ALICE_ID]
    worktree, username = unix.revoke_worktree_access.call_args.args
    assert (worktree["name"], username) == ("feat-x", "bob")


@pytest.mark.asyncio
async def test_non_owner_cannot_remove(repository):
    wt_id = _worktree(repository)
    with pytest.raises(AuthorizationFailure):
        await WorktreeOwnersService(repository).remove(wt_id, ALICE_ID, caller=BOB_ID)
    assert repository.is_owner(wt_id, ALICE_ID)


@pytest.mark.asyncio
async def test_mirror_skipped_without_unix_identity(repository):
    wt_id = _worktree(repository)
    unix = _unix()
    change = await WorktreeOwnersService(repository, unix).create(wt_id, CAROL_ID, caller=ALICE_ID)
    assert change.warnings == []
    assert repository.is_owner(wt_id, CAROL_ID)
    unix.grant_worktree_access.assert_not_called()


@pytest.mark.asyncio
async def test_mirror_runs_off_the_event_loop(repository):
    wt_id = _worktree(repository)
    loop_thread = threading.get_ident()
    seen = {}

    def slow_grant(worktree, username):
        seen["thread"] = threading.get_ident()
        time.sleep(0.2)

    unix = _unix()
    unix.grant_worktree_access.side_effect = slow_grant
    ticks = 0

    async def ticker():
        nonlocal ticks
        while True:
            await asyncio.sleep(0.01)
            ticks += 1

    task = asyncio.create_task(ticker())
    try:
        await WorktreeOwnersService(repository, unix).create(wt_id, BOB_ID, caller=ALICE_ID)
    finally:
        task.cancel()

    assert seen["thread"] != loop_thread
    assert ticks >= 5
