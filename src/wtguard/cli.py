from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import logging
from typing import Any

import click

from wtguard import __version__
from wtguard.authz import WorktreeOwnersService
from wtguard.db import VALID_FILESYSTEM_STATUSES, connect, list_worktrees
from wtguard.errors import WtguardError
from wtguard.groups import REPO_GROUPS, WORKTREE_GROUPS, permission_mode
from wtguard.paths import DEFAULT_DB_PATH
from wtguard.settings import load_settings
from wtguard.store import SqliteRecordStore
from wtguard.transactions import HANDLERS, run_command
from wtguard.unix_integration import UnixIntegrationService
from wtguard.users import USERS, generate_unix_username

log = logging.getLogger(__name__)

_CODECS = {"worktree": WORKTREE_GROUPS, "repo": REPO_GROUPS, "user": USERS}


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@contextlib.contextmanager
def _cli_errors():
    """Turn library errors into ClickException (JSON via _JsonAwareGroup)."""
    try:
        yield
    except WtguardError as e:
        raise click.ClickException(f"{e.code}: {e}") from e


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click exceptions become ``{"ok": false, "error": ...}`` on stdout.
    Unknown commands get fuzzy-matched suggestions via
    ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log to stderr.")
def main(verbose: bool):
    """Isolated git worktrees for multi-user hosts.

    \b
    Quick start:
      wtguard exec git.clone --payload clone.json       Clone + register a repo
      wtguard exec git.worktree.add --payload - < p.json
      wtguard group name 019377a4-5c3b-...              Derive a worktree group name
      wtguard owners list WORKTREE_ID                   Show worktree owners
    """
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG, format="%(asctime)s %(levelname)s %(message)s"
        )


# -- exec --


@main.command("exec")
@click.argument("command", type=click.Choice(sorted(HANDLERS)))
@click.option(
    "--payload",
    "payload_file",
    type=click.File("r"),
    required=True,
    help="JSON payload file ({params, daemonUrl, sessionToken}); '-' for stdin.",
)
@click.option("--dry-run", is_flag=True, help="Validate and echo params; no side effects.")
@click.option("--enqueue", is_flag=True, help="Run in a background rq worker.")
@click.pass_context
def exec_command(ctx: click.Context, command: str, payload_file, dry_run: bool, enqueue: bool):
    """Run a lifecycle transaction and print its result."""
    try:
        payload = json.load(payload_file)
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Invalid JSON payload: {e}") from None
    if not isinstance(payload, dict):
        raise click.ClickException("Payload must be a JSON object")
    if not payload.get("daemonUrl"):
        payload["daemonUrl"] = load_settings().daemon_url

    if enqueue:
        from wtguard.queue import QUEUE_TRANSACTIONS, enqueue_transaction

        job = enqueue_transaction(command, payload, dry_run=dry_run)
        _emit({"ok": True, "job_id": job.id, "queue": QUEUE_TRANSACTIONS})
        return

    result = asyncio.run(run_command(command, payload, dry_run))
    _emit(result.to_dict())
    if not result.success:
        ctx.exit(1)


@main.command("job")
@click.argument("job_id")
def job_status(job_id: str):
    """Show the status (and result) of an enqueued transaction."""
    from wtguard.queue import get_job

    job = get_job(job_id)
    if job is None:
        raise click.ClickException(f"Job not found: {job_id}")
    _emit({"job_id": job.id, "status": job.get_status(), "result": job.return_value()})


# -- group --


@main.group()
def group():
    """Derive and inspect Unix group names."""


@group.command("name")
@click.argument("entity_id")
@click.option(
    "--kind", type=click.Choice(sorted(_CODECS)), default="worktree", show_default=True
)
def group_name(entity_id: str, kind: str):
    """Group (or user) name for an entity id."""
    with _cli_errors():
        _emit({"kind": kind, "name": _CODECS[kind].generate(entity_id)})


@group.command("parse")
@click.argument("name")
def group_parse(name: str):
    """Short id and kind of a derived name; kind is null when unrecognized."""
    for kind, codec in _CODECS.items():
        short_id = codec.parse(name)
        if short_id is not None:
            _emit({"name": name, "kind": kind, "short_id": short_id})
            return
    _emit({"name": name, "kind": None, "short_id": None})


@group.command("mode")
@click.argument("level", required=False, default="read")
def group_mode(level: str):
    """Directory mode for an access level (none/read/view/write/all)."""
    with _cli_errors():
        _emit({"level": level, "mode": permission_mode(level)})


# -- admin --


def _unix_service(home_base: str | None = None) -> UnixIntegrationService:
    settings = load_settings()
    if home_base:
        settings = dataclasses.replace(settings, home_base=home_base)
    return UnixIntegrationService.from_settings(settings)


_username_option = click.option("--username", "-u", required=True, help="Unix username.")
_home_base_option = click.option(
    "--home-base", default=None, help="Base directory for home directories."
)


@main.group()
def admin():
    """Privileged user and symlink administration."""


@admin.command("ensure-user")
@click.option("--username", "-u", default=None, help="Unix username.")
@click.option(
    "--user-id", default=None, help="Derive the username (agor_<8 hex>) from this user id."
)
@_home_base_option
def admin_ensure_user(username: str | None, user_id: str | None, home_base: str | None):
    """Create a Unix user with ~/agor/worktrees if missing."""
    if not username and not user_id:
        raise click.UsageError("Pass --username or --user-id")
    with _cli_errors():
        username = username or generate_unix_username(user_id)
        created = _unix_service(home_base).ensure_user(username)
    _emit({"ok": True, "username": username, "created": created})


@admin.command("delete-user")
@_username_option
@click.option("--delete-home", is_flag=True, help="Also delete the home directory.")
def admin_delete_user(username: str, delete_home: bool):
    """Delete a Unix user."""
    with _cli_errors():
        deleted = _unix_service().delete_user(username, remove_home=delete_home)
    _emit({"ok": True, "username": username, "deleted": deleted})


@admin.command("create-symlink")
@_username_option
@click.option("--worktree-name", "-n", required=True, help="Symlink name.")
@click.option("--worktree-path", "-p", required=True, help="Absolute worktree path (target).")
@_home_base_option
def admin_create_symlink(
    username: str, worktree_name: str, worktree_path: str, home_base: str | None
):
    """Point ~USER/agor/worktrees/NAME at a worktree."""
    with _cli_errors():
        info = _unix_service(home_base).symlinks.create(username, worktree_name, worktree_path)
    _emit({"ok": True, "link_path": info.link_path, "target_path": info.target_path})


@admin.command("remove-symlink")
@_username_option
@click.option("--worktree-name", "-n", required=True, help="Symlink name.")
@_home_base_option
def admin_remove_symlink(username: str, worktree_name: str, home_base: str | None):
    """Remove ~USER/agor/worktrees/NAME."""
    with _cli_errors():
        removed = _unix_service(home_base).symlinks.remove(username, worktree_name)
    _emit({"ok": True, "removed": removed})


@admin.command("sync-user-symlinks")
@_username_option
@_home_base_option
def admin_sync_user_symlinks(username: str, home_base: str | None):
    """Remove broken links from a user's worktrees directory and list the rest."""
    with _cli_errors():
        service = _unix_service(home_base)
        synced = service.sync_user_symlinks(username)
        links = service.symlinks.list_links(username) if synced else []
    _emit({"ok": True, "username": username, "synced": synced, "links": links})


# -- worktrees --


@main.group()
def worktrees():
    """Inspect worktree records (local database)."""


@worktrees.command("list")
@click.option(
    "--status",
    "-s",
    default=None,
    type=click.Choice(sorted(VALID_FILESYSTEM_STATUSES), case_sensitive=False),
    help="Filter by filesystem status.",
)
def worktrees_list(status: str | None):
    """List worktree records, oldest first."""
    with connect(DEFAULT_DB_PATH) as conn:
        rows = list_worktrees(conn, filesystem_status=status.lower() if status else None)
    _emit(rows)


# -- owners --


@main.group()
def owners():
    """List and manage worktree owners (local database)."""


_caller_option = click.option(
    "--as",
    "caller",
    default=None,
    help="Act as this user id (authorization applies). Omit for internal access.",
)


def _owners_call(method: str, *args: Any, caller: str | None) -> Any:
    store = SqliteRecordStore(DEFAULT_DB_PATH)
    try:
        service = WorktreeOwnersService(store, _unix_service())
        with _cli_errors():
            return asyncio.run(getattr(service, method)(*args, caller=caller))
    finally:
        store.close()


@owners.command("list")
@click.argument("worktree_id")
@_caller_option
def owners_list(worktree_id: str, caller: str | None):
    """List a worktree's owners."""
    _emit(_owners_call("find", worktree_id, caller=caller))


@owners.command("add")
@click.argument("worktree_id")
@click.argument("user_id")
@_caller_option
def owners_add(worktree_id: str, user_id: str, caller: str | None):
    """Add an owner (mirrors Unix group membership when enabled)."""
    change = _owners_call("create", worktree_id, user_id, caller=caller)
    _emit({"ok": True, "user": change.user, "warnings": change.warnings})


@owners.command("remove")
@click.argument("worktree_id")
@click.argument("user_id")
@_caller_option
def owners_remove(worktree_id: str, user_id: str, caller: str | None):
    """Remove an owner."""
    change = _owners_call("remove", worktree_id, user_id, caller=caller)
    _emit({"ok": True, "user": change.user, "warnings": change.warnings})
