"""Unix group, user and symlink provisioning.

Ownership in the record store is authoritative; everything here mirrors it
onto the host (groups, directory modes, per-user presentation symlinks).
Callers treat failures as soft: a worktree that could not be isolated is
still a usable worktree.
"""

from __future__ import annotations

import logging
from pathlib import Path

from wtguard.errors import ProvisioningFailure
from wtguard.git_ops import read_worktree_gitdir
from wtguard.groups import (
    UnixGroupCommands,
    generate_repo_group_name,
    generate_worktree_group_name,
    permission_mode,
)
from wtguard.run_as_user import CommandExecutor
from wtguard.settings import Settings, load_settings
from wtguard.symlinks import SymlinkManager
from wtguard.users import UnixUserCommands, is_valid_unix_username

log = logging.getLogger(__name__)

# group members may add worktrees (git writes under <repo>/.git/worktrees)
REPO_DIRECTORY_MODE = "2775"


class UnixIntegrationService:
    """Mirror worktree ownership onto Unix groups and home-dir symlinks."""

    def __init__(self, executor: CommandExecutor, settings: Settings | None = None) -> None:
        self.executor = executor
        self.settings = settings or Settings()
        self.symlinks = SymlinkManager(executor, self.settings.home_base)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> UnixIntegrationService:
        settings = settings or load_settings()
        executor = CommandExecutor(
            admin_user=settings.admin_user, timeout_ms=settings.command_timeout_ms
        )
        return cls(executor, settings)

    def is_enabled(self) -> bool:
        return self.settings.unix_enabled

    # -- groups --

    def ensure_group(self, group: str) -> bool:
        """Create *group* if missing. True if it was created."""
        if self.executor.check_privileged(UnixGroupCommands.group_exists(group)):
            return False
        self.executor.run_privileged(UnixGroupCommands.create_group(group))
        log.info("Created group %s", group)
        return True

    def add_member(self, username: str, group: str) -> bool:
        """Add *username* to *group*. False if already a member."""
        if self.executor.check_privileged(UnixGroupCommands.is_user_in_group(username, group)):
            return False
        self.executor.run_privileged(UnixGroupCommands.add_user_to_group(username, group))
        log.info("Added %s to group %s", username, group)
        return True

    def remove_member(self, username: str, group: str) -> bool:
        if not self.executor.check_privileged(UnixGroupCommands.is_user_in_group(username, group)):
            return False
        self.executor.run_privileged(UnixGroupCommands.remove_user_from_group(username, group))
        log.info("Removed %s from group %s", username, group)
        return True

    def _grant(self, group: str, *usernames: str | None) -> None:
        for username in usernames:
            if username:
                self.add_member(username, group)

    def initialize_worktree_group(
        self,
        worktree_id: str,
        worktree_path: str,
        others_access: str = "read",
        *,
        daemon_user: str | None = None,
        creator_unix_username: str | None = None,
    ) -> str:
        """Create the worktree's group, grant it, and apply it to the tree.

        Returns the group name.
        """
        group = generate_worktree_group_name(worktree_id)
        mode = permission_mode(others_access)
        self.ensure_group(group)
        self._grant(group, daemon_user or self.settings.daemon_user, creator_unix_username)
        self.executor.run_privileged(
            UnixGroupCommands.set_directory_group(worktree_path, group, mode)
        )
        log.info("Worktree %s isolated as %s (mode %s)", worktree_id[:8], group, mode)
        return group

    def initialize_repo_group(
        self, repo_id: str, repo_path: str, *, daemon_user: str | None = None
    ) -> str:
        group = generate_repo_group_name(repo_id)
        self.ensure_group(group)
        self._grant(group, daemon_user or self.settings.daemon_user)
        self.executor.run_privileged(
            UnixGroupCommands.set_directory_group(repo_path, group, REPO_DIRECTORY_MODE)
        )
        log.info("Repo %s isolated as %s", repo_id[:8], group)
        return group

    def fix_worktree_gitdir_permissions(
        self,
        repo_path: str,
        worktree_name: str,
        repo_group: str,
        *,
        worktree_path: str | None = None,
    ) -> str:
        """Give the repo group ``<repo>/.git/worktrees/<name>``.

        git creates that admin dir with the caller's umask and primary group,
        so other repo-group members could not update the worktree's index
        or HEAD. With *worktree_path*, the dir is read from the worktree's
        ``.git`` link instead of assumed.
        """
        gitdir: Path | None = None
        if worktree_path:
            gitdir = read_worktree_gitdir(worktree_path)
        if gitdir is None:
            gitdir = Path(repo_path) / ".git" / "worktrees" / worktree_name
        self.executor.run_privileged(
            UnixGroupCommands.set_directory_group(str(gitdir), repo_group, REPO_DIRECTORY_MODE)
        )
        return str(gitdir)

    # -- ownership mirroring --

    def grant_worktree_access(self, worktree: dict, username: str) -> None:
        """Add ``username`` to the worktree group and link the worktree into their home."""
        group = worktree.get("unix_group") or generate_worktree_group_name(worktree["worktree_id"])
        self.ensure_group(group)
        self.add_member(username, group)
        self.symlinks.create(username, worktree["name"], worktree["path"])

    def revoke_worktree_access(self, worktree: dict, username: str) -> None:
        group = worktree.get("unix_group") or generate_worktree_group_name(worktree["worktree_id"])
        self.remove_member(username, group)
        self.symlinks.remove(username, worktree["name"])

    # -- users --

    def ensure_user(self, username: str) -> bool:
        """Create the Unix user with ``~/agor/worktrees``. True if created.

        An existing user only gets the worktrees directory re-applied.
        """
        if not is_valid_unix_username(username):
            raise ProvisioningFailure(f"Invalid Unix username format: {username}")
        home_base = self.settings.home_base
        if self.executor.check_privileged(UnixUserCommands.user_exists(username)):
            self.executor.run_privileged(UnixUserCommands.setup_worktrees_dir(username, home_base))
            return False
        self.executor.run_privileged(UnixUserCommands.create_user(username, home_base=home_base))
        self.executor.run_privileged(UnixUserCommands.setup_worktrees_dir(username, home_base))
        log.info("Created Unix user %s", username)
        return True

    def delete_user(self, username: str, *, remove_home: bool = False) -> bool:
        """Delete the Unix user. False if it did not exist."""
        if not is_valid_unix_username(username):
            raise ProvisioningFailure(f"Invalid Unix username format: {username}")
        if not self.executor.check_privileged(UnixUserCommands.user_exists(username)):
            return False
        if remove_home:
            self.executor.run_privileged(UnixUserCommands.delete_user_with_home(username))
        else:
            self.symlinks.remove_all(username)
            self.executor.run_privileged(UnixUserCommands.delete_user(username))
        log.info("Deleted Unix user %s", username)
        return True

    def sync_user_symlinks(self, username: str) -> bool:
        return self.symlinks.sync_user(username)
