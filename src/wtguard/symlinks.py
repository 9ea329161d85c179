"""Per-user presentation symlinks into shared worktree storage.

Each user sees ``<home_base>/<username>/agor/worktrees/<name>`` pointing at
the real worktree path. Access is governed by the target's Unix
permissions; link ownership is only for auditing and cleanup.
"""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass

from wtguard.errors import CommandFailed, ValidationFailure
from wtguard.groups import validate_unix_name
from wtguard.paths import DEFAULT_HOME_BASE
from wtguard.run_as_user import CommandExecutor, escape_shell_arg
from wtguard.users import get_user_worktrees_dir

log = logging.getLogger(__name__)


def get_worktree_symlink_path(
    username: str, worktree_name: str, home_base: str = DEFAULT_HOME_BASE
) -> str:
    return f"{get_user_worktrees_dir(username, home_base)}/{worktree_name}"


@dataclass(frozen=True)
class WorktreeSymlinkInfo:
    link_path: str
    target_path: str
    worktree_name: str


def build_symlink_info(
    username: str,
    worktree_name: str,
    worktree_path: str,
    home_base: str = DEFAULT_HOME_BASE,
) -> WorktreeSymlinkInfo:
    return WorktreeSymlinkInfo(
        link_path=get_worktree_symlink_path(username, worktree_name, home_base),
        target_path=worktree_path,
        worktree_name=worktree_name,
    )


class SymlinkCommands:
    """Shell command builders for symlink management (run via sudo)."""

    @staticmethod
    def symlink_exists(link_path: str) -> str:
        return f"test -L {escape_shell_arg(link_path)}"

    @staticmethod
    def path_exists(path: str) -> str:
        return f"test -e {escape_shell_arg(path)}"

    @staticmethod
    def create_symlink(target: str, link_path: str) -> str:
        return f"ln -s {escape_shell_arg(target)} {escape_shell_arg(link_path)}"

    @staticmethod
    def create_or_replace_symlink(target: str, link_path: str) -> str:
        return f"ln -sfn {escape_shell_arg(target)} {escape_shell_arg(link_path)}"

    @staticmethod
    def remove_symlink(link_path: str) -> str:
        return f"rm -f {escape_shell_arg(link_path)}"

    @staticmethod
    def read_symlink(link_path: str) -> str:
        return f"readlink {escape_shell_arg(link_path)}"

    @staticmethod
    def list_symlinks(dir_path: str) -> str:
        return f"find {escape_shell_arg(dir_path)} -maxdepth 1 -type l -printf '%f\\n'"

    @staticmethod
    def create_symlink_with_ownership(target: str, link_path: str, username: str) -> str:
        """mkdir parent, chown parent, replace-or-create link, chown link.

        Wrapped in one ``sh -c`` so sudo elevates the whole chain. ``ln -sfn``
        replaces an existing link instead of failing, so re-running converges.
        """
        validate_unix_name(username, "username")
        parent_dir = posixpath.dirname(link_path)
        if not parent_dir:
            raise ValidationFailure(f"Symlink path has no parent directory: {link_path!r}")
        owner = escape_shell_arg(f"{username}:{username}")
        quoted_parent = escape_shell_arg(parent_dir)
        quoted_link = escape_shell_arg(link_path)
        inner = " && ".join(
            [
                f"mkdir -p {quoted_parent}",
                f"chown {owner} {quoted_parent}",
                f"ln -sfn {escape_shell_arg(target)} {quoted_link}",
                f"chown -h {owner} {quoted_link}",
            ]
        )
        return f"sh -c {escape_shell_arg(inner)}"

    @staticmethod
    def remove_all_symlinks(dir_path: str) -> str:
        return f"find {escape_shell_arg(dir_path)} -maxdepth 1 -type l -delete"

    @staticmethod
    def remove_broken_symlinks(dir_path: str) -> str:
        return (
            f"find {escape_shell_arg(dir_path)} -maxdepth 1 -type l "
            "! -exec test -e {} \\; -delete"
        )


class SymlinkManager:
    """Create and sweep presentation symlinks through a CommandExecutor."""

    def __init__(self, executor: CommandExecutor, home_base: str = DEFAULT_HOME_BASE) -> None:
        self.executor = executor
        self.home_base = home_base

    def current_target(self, link_path: str) -> str | None:
        try:
            return self.executor.run_privileged(SymlinkCommands.read_symlink(link_path)).strip()
        except CommandFailed:
            return None

    def create(self, username: str, worktree_name: str, worktree_path: str) -> WorktreeSymlinkInfo:
        """Point the user's link at *worktree_path*. Returns the link info.

        No-op when the link already points there; replaced otherwise.
        """
        if not worktree_path.startswith("/"):
            raise ValidationFailure(f"Worktree path must be absolute: {worktree_path}")
        info = build_symlink_info(username, worktree_name, worktree_path, self.home_base)

        existing = self.current_target(info.link_path)
        if existing == worktree_path:
            log.debug("Symlink already current: %s -> %s", info.link_path, worktree_path)
            return info
        if existing:
            log.info("Replacing symlink %s (was: %s)", info.link_path, existing)

        self.executor.run_privileged(
            SymlinkCommands.create_symlink_with_ownership(worktree_path, info.link_path, username)
        )
        log.info("Created symlink %s -> %s", info.link_path, worktree_path)
        return info

    def remove(self, username: str, worktree_name: str) -> bool:
        """Remove the user's link. False if it did not exist."""
        link_path = get_worktree_symlink_path(username, worktree_name, self.home_base)
        if not self.executor.check_privileged(SymlinkCommands.symlink_exists(link_path)):
            return False
        self.executor.run_privileged(SymlinkCommands.remove_symlink(link_path))
        log.info("Removed symlink %s", link_path)
        return True

    def list_links(self, username: str) -> list[str]:
        worktrees_dir = get_user_worktrees_dir(username, self.home_base)
        if not self.executor.check_privileged(SymlinkCommands.path_exists(worktrees_dir)):
            return []
        out = self.executor.run_privileged(SymlinkCommands.list_symlinks(worktrees_dir))
        return sorted(line for line in out.splitlines() if line.strip())

    def sync_user(self, username: str) -> bool:
        """Remove broken links. False if the user has no worktrees dir."""
        worktrees_dir = get_user_worktrees_dir(username, self.home_base)
        if not self.executor.check_privileged(SymlinkCommands.path_exists(worktrees_dir)):
            return False
        self.executor.run_privileged(SymlinkCommands.remove_broken_symlinks(worktrees_dir))
        return True

    def remove_all(self, username: str) -> bool:
        worktrees_dir = get_user_worktrees_dir(username, self.home_base)
        if not self.executor.check_privileged(SymlinkCommands.path_exists(worktrees_dir)):
            return False
        self.executor.run_privileged(SymlinkCommands.remove_all_symlinks(worktrees_dir))
        return True
