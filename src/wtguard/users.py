"""Unix user naming and user administration command builders."""

from __future__ import annotations

import re

from wtguard.errors import ValidationFailure
from wtguard.groups import AGOR_USERS_GROUP, GroupNameCodec, validate_unix_name
from wtguard.paths import DEFAULT_HOME_BASE, USER_WORKTREES_SUBDIR
from wtguard.run_as_user import escape_shell_arg

USER_PREFIX = "agor_"

# Same shape as group names, so a user name is never mistaken for agor_wt_*.
USERS = GroupNameCodec(USER_PREFIX)

_USERNAME_RE = re.compile(r"[a-z_][a-z0-9_-]{0,31}")
_SHELL_RE = re.compile(r"/[A-Za-z0-9_/.-]+")


def generate_unix_username(user_id: str) -> str:
    return USERS.generate(user_id)


def is_valid_unix_username(username: str) -> bool:
    return bool(_USERNAME_RE.fullmatch(username))


def get_user_home(username: str, home_base: str = DEFAULT_HOME_BASE) -> str:
    return f"{home_base.rstrip('/')}/{username}"


def get_user_worktrees_dir(username: str, home_base: str = DEFAULT_HOME_BASE) -> str:
    return f"{get_user_home(username, home_base)}/{USER_WORKTREES_SUBDIR}"


class UnixUserCommands:
    """Shell command builders for user administration (run via sudo)."""

    @staticmethod
    def user_exists(username: str) -> str:
        name = escape_shell_arg(validate_unix_name(username, "username"))
        return f"id -u {name} > /dev/null 2>&1"

    @staticmethod
    def create_user(
        username: str, shell: str = "/bin/bash", home_base: str = DEFAULT_HOME_BASE
    ) -> str:
        validate_unix_name(username, "username")
        if not _SHELL_RE.fullmatch(shell):
            raise ValidationFailure(f"Invalid login shell: {shell!r}")
        home = get_user_home(username, home_base)
        return (
            f"useradd -m -d {escape_shell_arg(home)} -s {escape_shell_arg(shell)} "
            f"-G {escape_shell_arg(AGOR_USERS_GROUP)} {escape_shell_arg(username)}"
        )

    @staticmethod
    def delete_user(username: str) -> str:
        return f"userdel {escape_shell_arg(validate_unix_name(username, 'username'))}"

    @staticmethod
    def delete_user_with_home(username: str) -> str:
        return f"userdel -r {escape_shell_arg(validate_unix_name(username, 'username'))}"

    @staticmethod
    def setup_worktrees_dir(username: str, home_base: str = DEFAULT_HOME_BASE) -> str:
        validate_unix_name(username, "username")
        worktrees_dir = escape_shell_arg(get_user_worktrees_dir(username, home_base))
        agor_dir = escape_shell_arg(f"{get_user_home(username, home_base)}/agor")
        owner = escape_shell_arg(f"{username}:{username}")
        inner = (
            f"mkdir -p {worktrees_dir} && "
            f"chown {owner} {agor_dir} {worktrees_dir} && "
            f"chmod 755 {agor_dir} {worktrees_dir}"
        )
        return f"sh -c {escape_shell_arg(inner)}"
