"""Unix group naming and group command builders.

Group names are derived, never stored independently:
``<prefix><first 8 hex chars of the entity id>``. ``agor_wt_01234567`` is
16 characters, well under the 32-char limit of groupadd and friends.

Directory modes always carry the setgid bit so files created inside a
worktree inherit its group.
"""

from __future__ import annotations

import re

from wtguard.errors import ValidationFailure
from wtguard.run_as_user import escape_shell_arg

AGOR_USERS_GROUP = "agor_users"

WORKTREE_GROUP_PREFIX = "agor_wt_"
REPO_GROUP_PREFIX = "agor_rp_"

SHORT_ID_LEN = 8

_HEX8_RE = re.compile(r"[0-9a-f]{8}")
# POSIX portable group/user names as accepted by shadow-utils
_NAME_RE = re.compile(r"[a-z_][a-z0-9_-]{0,31}")


class GroupNameCodec:
    """Generate and parse ``<prefix><8 lowercase hex>`` group names."""

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix
        self._pattern = re.compile(rf"{re.escape(prefix)}([0-9a-f]{{{SHORT_ID_LEN}}})")

    def generate(self, entity_id: str) -> str:
        short_id = entity_id[:SHORT_ID_LEN].lower()
        if not _HEX8_RE.fullmatch(short_id):
            raise ValidationFailure(
                f"Cannot derive group name: id {entity_id!r} does not start with 8 hex chars"
            )
        return f"{self.prefix}{short_id}"

    def parse(self, name: str) -> str | None:
        """Return the short id, or None if *name* is not one of ours."""
        match = self._pattern.fullmatch(name)
        return match.group(1) if match else None

    def is_valid(self, name: str) -> bool:
        return self.parse(name) is not None


WORKTREE_GROUPS = GroupNameCodec(WORKTREE_GROUP_PREFIX)
REPO_GROUPS = GroupNameCodec(REPO_GROUP_PREFIX)

generate_worktree_group_name = WORKTREE_GROUPS.generate
parse_worktree_group_name = WORKTREE_GROUPS.parse
is_valid_worktree_group_name = WORKTREE_GROUPS.is_valid

generate_repo_group_name = REPO_GROUPS.generate
parse_repo_group_name = REPO_GROUPS.parse
is_valid_repo_group_name = REPO_GROUPS.is_valid


# none: owner rwx, group r-x, others none
# read: owner rwx, group r-x, others r-x
# write: everyone rwx
WORKTREE_PERMISSION_MODES = {
    "none": "2750",
    "read": "2755",
    "write": "2777",
}

_LEVEL_ALIASES = {"view": "read", "all": "write"}


def permission_mode(level: str = "read") -> str:
    """Directory mode for an access level (none/read/view/write/all)."""
    key = _LEVEL_ALIASES.get(level, level)
    try:
        return WORKTREE_PERMISSION_MODES[key]
    except KeyError:
        raise ValidationFailure(f"Unknown access level: {level!r}") from None


def validate_unix_name(name: str, kind: str = "name") -> str:
    if not _NAME_RE.fullmatch(name):
        raise ValidationFailure(f"Invalid Unix {kind}: {name!r}")
    return name


class UnixGroupCommands:
    """Shell command builders for group administration (run via sudo)."""

    @staticmethod
    def create_group(group: str) -> str:
        return f"groupadd {escape_shell_arg(validate_unix_name(group, 'group'))}"

    @staticmethod
    def delete_group(group: str) -> str:
        return f"groupdel {escape_shell_arg(validate_unix_name(group, 'group'))}"

    @staticmethod
    def add_user_to_group(username: str, group: str) -> str:
        validate_unix_name(username, "username")
        validate_unix_name(group, "group")
        return f"usermod -aG {escape_shell_arg(group)} {escape_shell_arg(username)}"

    @staticmethod
    def remove_user_from_group(username: str, group: str) -> str:
        validate_unix_name(username, "username")
        validate_unix_name(group, "group")
        return f"gpasswd -d {escape_shell_arg(username)} {escape_shell_arg(group)}"

    @staticmethod
    def group_exists(group: str) -> str:
        return f"getent group {escape_shell_arg(validate_unix_name(group, 'group'))} > /dev/null"

    @staticmethod
    def is_user_in_group(username: str, group: str) -> str:
        validate_unix_name(username, "username")
        validate_unix_name(group, "group")
        return f"id -nG {escape_shell_arg(username)} | grep -qw {escape_shell_arg(group)}"

    @staticmethod
    def list_group_members(group: str) -> str:
        return f"getent group {escape_shell_arg(validate_unix_name(group, 'group'))} | cut -d: -f4"

    @staticmethod
    def set_directory_group(path: str, group: str, mode: str) -> str:
        """chgrp + chmod in one ``sh -c`` so sudo elevates both steps together."""
        validate_unix_name(group, "group")
        if not re.fullmatch(r"[0-7]{3,4}", mode):
            raise ValidationFailure(f"Invalid mode: {mode!r}")
        quoted_path = escape_shell_arg(path)
        inner = (
            f"chgrp -R {escape_shell_arg(group)} {quoted_path} && "
            f"chmod -R {mode} {quoted_path}"
        )
        return f"sh -c {escape_shell_arg(inner)}"


def parse_group_members(output: str) -> list[str]:
    """Parse the comma-separated member field printed by list_group_members."""
    return [m for m in (part.strip() for part in output.strip().split(",")) if m]
