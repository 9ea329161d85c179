"""Tests for Unix user naming and user command builders."""

import shlex

import pytest

from wtguard.errors import ValidationFailure
from wtguard.users import (
    UnixUserCommands,
    generate_unix_username,
    get_user_home,
    get_user_worktrees_dir,
    is_valid_unix_username,
)


def test_generate_unix_username():
    assert generate_unix_username("03b62447-1111-4000-8000-000000000000") == "agor_03b62447"


def test_generated_username_is_valid():
    assert is_valid_unix_username(generate_unix_username("03b62447"))


@pytest.mark.parametrize("name", ["alice", "agor_03b62447", "_svc", "a-b_c9"])
def test_valid_usernames(name):
    assert is_valid_unix_username(name)


@pytest.mark.parametrize("name", ["", "Alice", "9lives", "a b", "x;id", "alice\n", "a" * 33])
def test_invalid_usernames(name):
    assert not is_valid_unix_username(name)


def test_home_paths():
    assert get_user_home("alice") == "/home/alice"
    assert get_user_home("alice", "/srv/homes/") == "/srv/homes/alice"
    assert get_user_worktrees_dir("alice") == "/home/alice/agor/worktrees"


def test_create_user_command():
    cmd = UnixUserCommands.create_user("agor_03b62447")
    assert shlex.split(cmd) == [
        "useradd",
        "-m",
        "-d",
        "/home/agor_03b62447",
        "-s",
        "/bin/bash",
        "-G",
        "agor_users",
        "agor_03b62447",
    ]


def test_create_user_rejects_bad_shell():
    with pytest.raises(ValidationFailure, match="Invalid login shell"):
        UnixUserCommands.create_user("alice", shell="/bin/bash; id")


@pytest.mark.parametrize(
    "builder",
    [
        UnixUserCommands.user_exists,
        UnixUserCommands.create_user,
        UnixUserCommands.delete_user,
        UnixUserCommands.delete_user_with_home,
        UnixUserCommands.setup_worktrees_dir,
    ],
)
def test_builders_validate_username(builder):
    with pytest.raises(ValidationFailure):
        builder("root'; id; '")


def test_delete_commands():
    assert UnixUserCommands.delete_user("alice") == "userdel 'alice'"
    assert UnixUserCommands.delete_user_with_home("alice") == "userdel -r 'alice'"


def test_user_exists_command():
    assert UnixUserCommands.user_exists("alice") == "id -u 'alice' > /dev/null 2>&1"


def test_setup_worktrees_dir_command():
    argv = shlex.split(UnixUserCommands.setup_worktrees_dir("alice", "/srv/homes"))
    assert argv[:2] == ["sh", "-c"]
    inner = argv[2]
    assert "mkdir -p '/srv/homes/alice/agor/worktrees'" in inner
    assert "chown 'alice:alice' '/srv/homes/alice/agor' '/srv/homes/alice/agor/worktrees'" in inner
    assert inner.index("mkdir") < inner.index("chown") < inner.index("chmod 755")
