"""Worktree lifecycle transactions: clone, worktree add/remove, clean.

Each handler takes a payload ``{"params": {...}, "daemonUrl": ..., "sessionToken": ...}``
and returns an ExecutorResult. Handlers never raise: every failure becomes
``{"success": false, "error": {...}}``. Isolation steps (Unix groups) run
only after the filesystem step succeeded, and their failures land in
``warnings`` instead of failing the transaction.

Record-store connections are per transaction: opened after the dry-run
check, closed in ``finally``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from wtguard.errors import RecordNotFound, ValidationFailure
from wtguard.git_ops import (
    clean_worktree,
    clone_repo,
    compute_repo_slug,
    create_worktree,
    extract_repo_name,
    read_worktree_gitdir,
    remove_worktree,
    repo_path_from_gitdir,
    resolve_git_credentials,
)
from wtguard.results import ExecutorResult, SoftFailure, warning
from wtguard.store import RecordStore, StoreFactory, open_store
from wtguard.unix_integration import UnixIntegrationService

log = logging.getLogger(__name__)

GIT_CLONE = "git.clone"
GIT_WORKTREE_ADD = "git.worktree.add"
GIT_WORKTREE_REMOVE = "git.worktree.remove"
GIT_WORKTREE_CLEAN = "git.worktree.clean"


@dataclass
class TransactionPayload:
    params: dict[str, Any] = field(default_factory=dict)
    daemon_url: str | None = None
    session_token: str | None = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> TransactionPayload:
        if not isinstance(raw, Mapping):
            raise ValidationFailure("Payload must be an object")
        params = raw.get("params", {})
        if not isinstance(params, Mapping):
            raise ValidationFailure("Payload 'params' must be an object")
        return cls(
            params=dict(params),
            daemon_url=raw.get("daemonUrl") or None,
            session_token=raw.get("sessionToken") or None,
        )


def _require(params: Mapping[str, Any], *names: str) -> None:
    missing = [n for n in names if not params.get(n)]
    if missing:
        raise ValidationFailure(f"Missing required params: {', '.join(missing)}")


def _dry_run(command: str, params: Mapping[str, Any]) -> ExecutorResult:
    return ExecutorResult.ok({"dryRun": True, "command": command, "params": dict(params)})


def _close(store: RecordStore | None) -> None:
    if store is None:
        return
    try:
        store.close()
    except Exception:
        log.debug("Error closing record store", exc_info=True)


def _log_credentials(command: str, env: Mapping[str, str]) -> None:
    if env:
        log.info("[%s] Resolved credentials: %s", command, sorted(env))


async def handle_git_clone(
    raw_payload: Mapping[str, Any],
    *,
    dry_run: bool = False,
    store_factory: StoreFactory = open_store,
    unix: UnixIntegrationService | None = None,
) -> ExecutorResult:
    """Clone a repository and register it.

    params: ``url`` (required), ``outputPath``, ``branch``, ``bare``,
    ``slug``, ``createDbRecord`` (default true), ``initUnixGroup``,
    ``daemonUser``.
    """
    params: dict[str, Any] = {}
    store: RecordStore | None = None
    warnings: list[SoftFailure] = []
    try:
        payload = TransactionPayload.from_dict(raw_payload)
        params = payload.params
        _require(params, "url")
        if dry_run:
            return _dry_run(GIT_CLONE, params)

        create_db_record = params.get("createDbRecord", True)
        store = store_factory(payload.daemon_url, payload.session_token)

        env = resolve_git_credentials()
        _log_credentials(GIT_CLONE, env)

        url = params["url"]
        log.info("[%s] Cloning %s", GIT_CLONE, url)
        clone = await asyncio.to_thread(
            clone_repo,
            url,
            params.get("outputPath"),
            bare=bool(params.get("bare", False)),
            branch=params.get("branch"),
            env=env,
        )
        log.info("[%s] Clone successful: %s", GIT_CLONE, clone.path)

        slug = params.get("slug") or compute_repo_slug(url)
        repo_id: str | None = None
        unix_group: str | None = None

        if create_db_record:
            repo = store.service("repos").create(
                {
                    "repo_type": "remote",
                    "slug": slug,
                    "name": extract_repo_name(slug),
                    "remote_url": url,
                    "local_path": clone.path,
                    "default_branch": clone.default_branch,
                }
            )
            repo_id = repo["repo_id"]
            log.info("[%s] Repo record created: %s", GIT_CLONE, repo_id)

            if params.get("initUnixGroup"):
                try:
                    unix = unix or UnixIntegrationService.from_settings()
                    unix_group = await asyncio.to_thread(
                        unix.initialize_repo_group,
                        repo_id,
                        clone.path,
                        daemon_user=params.get("daemonUser"),
                    )
                    store.service("repos").patch(repo_id, {"unix_group": unix_group})
                except Exception as exc:
                    log.warning("[%s] Failed to initialize Unix group: %s", GIT_CLONE, exc)
                    unix_group = None
                    warnings.append(warning("REPO_GROUP_INIT_FAILED", exc))

        return ExecutorResult.ok(
            {
                "path": clone.path,
                "repoName": clone.repo_name,
                "defaultBranch": clone.default_branch,
                "slug": slug,
                "repoId": repo_id,
                "dbRecordCreated": bool(create_db_record),
                "unixGroup": unix_group,
            },
            warnings,
        )
    except Exception as exc:
        log.error("[%s] Failed: %s", GIT_CLONE, exc)
        return ExecutorResult.fail(
            "GIT_CLONE_FAILED",
            str(exc),
            {"url": params.get("url"), "outputPath": params.get("outputPath")},
            warnings,
        )
    finally:
        _close(store)


async def handle_git_worktree_add(
    raw_payload: Mapping[str, Any],
    *,
    dry_run: bool = False,
    store_factory: StoreFactory = open_store,
    unix: UnixIntegrationService | None = None,
) -> ExecutorResult:
    """Create a worktree for a ``creating`` record and mark it ``ready``.

    params: ``repoPath``, ``worktreePath``, ``worktreeName`` (required),
    ``worktreeId``, ``repoId``, ``branch`` (default: worktreeName),
    ``createBranch``, ``sourceBranch``, ``pullLatest`` (default true),
    ``initUnixGroup``, ``othersAccess`` (default read), ``daemonUser``,
    ``creatorUnixUsername``, ``repoUnixGroup``.

    On failure the record is patched to ``failed`` before returning.
    """
    params: dict[str, Any] = {}
    store: RecordStore | None = None
    warnings: list[SoftFailure] = []
    worktree_id: str | None = None
    try:
        payload = TransactionPayload.from_dict(raw_payload)
        params = payload.params
        worktree_id = params.get("worktreeId")
        _require(params, "repoPath", "worktreePath", "worktreeName")
        if dry_run:
            return _dry_run(GIT_WORKTREE_ADD, params)

        store = store_factory(payload.daemon_url, payload.session_token)
        env = resolve_git_credentials()

        repo_path = params["repoPath"]
        worktree_path = params["worktreePath"]
        worktree_name = params["worktreeName"]
        branch = params.get("branch") or worktree_name
        create_branch = bool(params.get("createBranch", False))

        log.info(
            "[%s] Creating worktree at %s (repo %s, branch %s, create=%s)",
            GIT_WORKTREE_ADD,
            worktree_path,
            repo_path,
            branch,
            create_branch,
        )
        await asyncio.to_thread(
            create_worktree,
            repo_path,
            worktree_path,
            branch,
            create_branch=create_branch,
            pull_latest=bool(params.get("pullLatest", True)),
            source_branch=params.get("sourceBranch"),
            env=env,
        )

        unix_group: str | None = None
        if params.get("initUnixGroup") and worktree_id:
            try:
                unix = unix or UnixIntegrationService.from_settings()
                unix_group = await asyncio.to_thread(
                    unix.initialize_worktree_group,
                    worktree_id,
                    worktree_path,
                    params.get("othersAccess") or "read",
                    daemon_user=params.get("daemonUser"),
                    creator_unix_username=params.get("creatorUnixUsername"),
                )
            except Exception as exc:
                log.warning("[%s] Failed to initialize Unix group: %s", GIT_WORKTREE_ADD, exc)
                warnings.append(warning("WORKTREE_GROUP_INIT_FAILED", exc))

            if params.get("repoUnixGroup"):
                try:
                    unix = unix or UnixIntegrationService.from_settings()
                    await asyncio.to_thread(
                        unix.fix_worktree_gitdir_permissions,
                        repo_path,
                        worktree_name,
                        params["repoUnixGroup"],
                        worktree_path=worktree_path,
                    )
                except Exception as exc:
                    log.warning(
                        "[%s] Failed to fix gitdir permissions: %s", GIT_WORKTREE_ADD, exc
                    )
                    warnings.append(warning("GITDIR_PERMISSIONS_FAILED", exc))

        if worktree_id:
            patch: dict[str, Any] = {"filesystem_status": "ready"}
            if unix_group:
                patch["unix_group"] = unix_group
            store.service("worktrees").patch(worktree_id, patch)
            log.info("[%s] Worktree %s marked ready", GIT_WORKTREE_ADD, worktree_id[:8])

        return ExecutorResult.ok(
            {
                "worktreePath": worktree_path,
                "worktreeName": worktree_name,
                "branch": branch,
                "repoPath": repo_path,
                "repoId": params.get("repoId"),
                "worktreeId": worktree_id,
                "unixGroup": unix_group,
            },
            warnings,
        )
    except Exception as exc:
        log.error("[%s] Failed: %s", GIT_WORKTREE_ADD, exc)
        if worktree_id and store is not None:
            try:
                store.service("worktrees").patch(worktree_id, {"filesystem_status": "failed"})
                log.info("[%s] Marked worktree %s failed", GIT_WORKTREE_ADD, worktree_id[:8])
            except Exception as patch_exc:
                log.error("[%s] Could not mark worktree failed: %s", GIT_WORKTREE_ADD, patch_exc)
        return ExecutorResult.fail(
            "GIT_WORKTREE_ADD_FAILED",
            str(exc),
            {
                "worktreeId": worktree_id,
                "repoId": params.get("repoId"),
                "repoPath": params.get("repoPath"),
                "worktreeName": params.get("worktreeName"),
                "worktreePath": params.get("worktreePath"),
            },
            warnings,
        )
    finally:
        _close(store)


async def handle_git_worktree_remove(
    raw_payload: Mapping[str, Any],
    *,
    dry_run: bool = False,
    store_factory: StoreFactory = open_store,
    unix: UnixIntegrationService | None = None,
) -> ExecutorResult:
    """Remove a worktree from disk and (optionally) its record.

    params: ``worktreePath`` (required), ``worktreeId``, ``force``,
    ``deleteDbRecord`` (default true). Safe to retry: a missing directory
    skips the git step and a missing record is not an error.
    """
    params: dict[str, Any] = {}
    store: RecordStore | None = None
    try:
        payload = TransactionPayload.from_dict(raw_payload)
        params = payload.params
        _require(params, "worktreePath")
        delete_db_record = params.get("deleteDbRecord", True)
        if delete_db_record:
            _require(params, "worktreeId")
        if dry_run:
            return _dry_run(GIT_WORKTREE_REMOVE, params)

        store = store_factory(payload.daemon_url, payload.session_token)
        worktree_id = params.get("worktreeId")
        worktree_path = params["worktreePath"]

        filesystem_removed = False
        gitdir = read_worktree_gitdir(worktree_path)
        if gitdir is not None:
            repo_path = repo_path_from_gitdir(gitdir)
            log.info("[%s] Removing %s from %s", GIT_WORKTREE_REMOVE, worktree_path, repo_path)
            await asyncio.to_thread(
                remove_worktree, repo_path, worktree_path, force=bool(params.get("force", False))
            )
            filesystem_removed = True
        else:
            log.info(
                "[%s] %s not on disk, skipping git removal", GIT_WORKTREE_REMOVE, worktree_path
            )

        db_record_deleted = False
        if delete_db_record:
            try:
                store.service("worktrees").remove(worktree_id)
                db_record_deleted = True
            except RecordNotFound:
                log.info("[%s] Record %s already gone", GIT_WORKTREE_REMOVE, worktree_id)

        return ExecutorResult.ok(
            {
                "worktreeId": worktree_id,
                "worktreePath": worktree_path,
                "filesystemRemoved": filesystem_removed,
                "dbRecordDeleted": db_record_deleted,
            }
        )
    except Exception as exc:
        log.error("[%s] Failed: %s", GIT_WORKTREE_REMOVE, exc)
        return ExecutorResult.fail(
            "GIT_WORKTREE_REMOVE_FAILED",
            str(exc),
            {"worktreeId": params.get("worktreeId"), "worktreePath": params.get("worktreePath")},
        )
    finally:
        _close(store)


async def handle_git_worktree_clean(
    raw_payload: Mapping[str, Any],
    *,
    dry_run: bool = False,
    store_factory: StoreFactory = open_store,
    unix: UnixIntegrationService | None = None,
) -> ExecutorResult:
    """``git clean -fdx`` in a worktree. No record store, no Unix changes."""
    params: dict[str, Any] = {}
    try:
        params = TransactionPayload.from_dict(raw_payload).params
        _require(params, "worktreePath")
        if dry_run:
            return _dry_run(GIT_WORKTREE_CLEAN, params)

        worktree_path = params["worktreePath"]
        removed = await asyncio.to_thread(clean_worktree, worktree_path)
        log.info("[%s] Cleaned %d entries from %s", GIT_WORKTREE_CLEAN, removed, worktree_path)
        return ExecutorResult.ok({"worktreePath": worktree_path, "filesRemoved": removed})
    except Exception as exc:
        log.error("[%s] Failed: %s", GIT_WORKTREE_CLEAN, exc)
        return ExecutorResult.fail(
            "GIT_WORKTREE_CLEAN_FAILED", str(exc), {"worktreePath": params.get("worktreePath")}
        )


Handler = Callable[..., Awaitable[ExecutorResult]]

HANDLERS: dict[str, Handler] = {
    GIT_CLONE: handle_git_clone,
    GIT_WORKTREE_ADD: handle_git_worktree_add,
    GIT_WORKTREE_REMOVE: handle_git_worktree_remove,
    GIT_WORKTREE_CLEAN: handle_git_worktree_clean,
}


async def run_command(
    name: str,
    payload: Mapping[str, Any],
    dry_run: bool = False,
    *,
    store_factory: StoreFactory = open_store,
    unix: UnixIntegrationService | None = None,
) -> ExecutorResult:
    handler = HANDLERS.get(name)
    if handler is None:
        return ExecutorResult.fail(
            "UNKNOWN_COMMAND",
            f"Unknown command '{name}'. Valid: {', '.join(HANDLERS)}",
            {"command": name},
        )
    return await handler(payload, dry_run=dry_run, store_factory=store_factory, unix=unix)
