"""Worktree permission ranks and the owners service.

Effective permission is ``all`` for a recorded owner and the worktree's
``others_can`` policy (default ``view``) for everyone else. Owner
management requires real ownership: an ``others_can = "all"`` grant lets
a user prompt and edit, not hand out ownership.

Unix group membership mirrors the owner set after each change and is
best-effort: the record is authoritative.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from wtguard.errors import AuthorizationFailure, NotAuthenticated, RecordNotFound, ValidationFailure
from wtguard.results import SoftFailure, warning
from wtguard.store import OwnerRepository
from wtguard.unix_integration import UnixIntegrationService

log = logging.getLogger(__name__)

PERMISSION_RANK = {"none": -1, "view": 0, "prompt": 1, "all": 2}

DEFAULT_OTHERS_CAN = "view"


def effective_permission(is_owner: bool, others_can: str | None) -> str:
    if is_owner:
        return "all"
    return others_can or DEFAULT_OTHERS_CAN


def has_permission(level: str, required: str) -> bool:
    try:
        return PERMISSION_RANK[level] >= PERMISSION_RANK[required]
    except KeyError as exc:
        raise ValidationFailure(f"Unknown permission level: {exc.args[0]!r}") from None


@dataclass
class OwnerChange:
    """Result of an owner add/remove: the user record plus mirror warnings."""

    user: dict[str, Any]
    warnings: list[SoftFailure] = field(default_factory=list)


class WorktreeOwnersService:
    """List, add and remove worktree owners.

    ``caller`` is the authenticated user id for external requests, or None
    for internal calls, which skip authorization.
    """

    def __init__(
        self, repository: OwnerRepository, unix: UnixIntegrationService | None = None
    ) -> None:
        self.repository = repository
        self.unix = unix

    def _load_worktree(self, worktree_id: str) -> dict[str, Any]:
        try:
            return self.repository.get_worktree(worktree_id)
        except RecordNotFound:
            raise AuthorizationFailure(f"Worktree not found: {worktree_id}") from None

    def require_permission(self, worktree_id: str, caller: str | None, required: str) -> None:
        if caller is None:
            return
        if not caller:
            raise NotAuthenticated("Authentication required")
        worktree = self._load_worktree(worktree_id)
        owner = self.repository.is_owner(worktree_id, caller)
        level = effective_permission(owner, worktree.get("others_can"))
        if not has_permission(level, required):
            raise AuthorizationFailure(
                f"You do not have '{required}' permission on worktree {worktree_id[:8]}"
            )

    def require_owner(self, worktree_id: str, caller: str | None) -> None:
        if caller is None:
            return
        if not caller:
            raise NotAuthenticated("Authentication required")
        if not self.repository.is_owner(worktree_id, caller):
            raise AuthorizationFailure("Only worktree owners can manage owners")

    async def find(self, worktree_id: str, *, caller: str | None = None) -> list[dict[str, Any]]:
        """Owners as user records. Owners whose user was deleted are skipped."""
        self.require_permission(worktree_id, caller, "view")
        owners = []
        for user_id in self.repository.get_owners(worktree_id):
            try:
                owners.append(self.repository.get_user(user_id))
            except RecordNotFound:
                log.warning("Owner %s of worktree %s no longer exists", user_id, worktree_id[:8])
        return owners

    async def create(
        self, worktree_id: str, user_id: str, *, caller: str | None = None
    ) -> OwnerChange:
        if not user_id:
            raise ValidationFailure("user_id is required")
        self.require_owner(worktree_id, caller)
        user = self.repository.get_user(user_id)
        self.repository.add_owner(worktree_id, user_id)
        log.info("Added owner %s to worktree %s", user_id[:8], worktree_id[:8])
        grant = self.unix.grant_worktree_access if self.unix else None
        warnings = await self._mirror(grant, worktree_id, user)
        return OwnerChange(user, warnings)

    async def remove(
        self, worktree_id: str, user_id: str, *, caller: str | None = None
    ) -> OwnerChange:
        if not user_id:
            raise ValidationFailure("user_id is required")
        self.require_owner(worktree_id, caller)
        user = self.repository.get_user(user_id)
        self.repository.remove_owner(worktree_id, user_id)
        log.info("Removed owner %s from worktree %s", user_id[:8], worktree_id[:8])
        revoke = self.unix.revoke_worktree_access if self.unix else None
        warnings = await self._mirror(revoke, worktree_id, user)
        return OwnerChange(user, warnings)

    async def _mirror(self, step, worktree_id: str, user: dict[str, Any]) -> list[SoftFailure]:
        if step is None or not self.unix.is_enabled():
            return []
        username = user.get("unix_username")
        if not username:
            log.debug("User %s has no unix_username; nothing to mirror", user["user_id"][:8])
            return []
        # records are read here; sqlite connections stay on the loop thread
        worktree = self.repository.get_worktree(worktree_id)
        try:
            await asyncio.to_thread(step, worktree, username)
        except Exception as exc:
            log.error("Unix membership update failed for worktree %s: %s", worktree_id[:8], exc)
            return [warning("UNIX_MEMBERSHIP_FAILED", exc)]
        return []
