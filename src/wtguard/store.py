"""Record-store contract used by the transactions and the owners service.

A store hands out named services (``repos``, ``worktrees``, ``users``), each
exposing ``create``, ``patch``, ``remove`` and ``get`` on plain dict
records. Two implementations:

- ``SqliteRecordStore``: local database (``wtguard.db``).
- ``HttpRecordStore``: a Feathers-style REST daemon, authenticated with the
  session token as a bearer credential.

``open_store()`` picks one from the daemon URL.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Protocol

import httpx

from wtguard import db
from wtguard.errors import AuthorizationFailure, NotAuthenticated, RecordNotFound, WtguardError
from wtguard.paths import DEFAULT_DB_PATH

log = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = 30.0

SERVICE_NAMES = ("repos", "worktrees", "users")


class RecordService(Protocol):
    def create(self, data: Mapping[str, Any]) -> dict[str, Any]: ...

    def patch(self, record_id: str, data: Mapping[str, Any]) -> dict[str, Any]: ...

    def remove(self, record_id: str) -> dict[str, Any]: ...

    def get(self, record_id: str) -> dict[str, Any]: ...


class RecordStore(Protocol):
    def service(self, name: str) -> RecordService: ...

    def close(self) -> None: ...


class OwnerRepository(Protocol):
    """Ownership lookups the authorization gate needs."""

    def get_worktree(self, worktree_id: str) -> dict[str, Any]: ...

    def is_owner(self, worktree_id: str, user_id: str) -> bool: ...

    def get_owners(self, worktree_id: str) -> list[str]: ...

    def add_owner(self, worktree_id: str, user_id: str) -> None: ...

    def remove_owner(self, worktree_id: str, user_id: str) -> None: ...

    def get_user(self, user_id: str) -> dict[str, Any]: ...


def _unknown_service(name: str) -> WtguardError:
    return RecordNotFound(f"Unknown service '{name}'. Valid: {', '.join(SERVICE_NAMES)}")


# -- SQLite --


_SQLITE_OPS: dict[str, tuple[Callable, Callable, Callable, Callable]] = {
    "repos": (db.create_repo, db.patch_repo, db.remove_repo, db.get_repo),
    "worktrees": (
        db.create_worktree_record,
        db.patch_worktree,
        db.remove_worktree_record,
        db.get_worktree,
    ),
    "users": (db.create_user, db.patch_user, db.remove_user, db.get_user),
}


class _SqliteService:
    def __init__(self, conn: sqlite3.Connection, name: str) -> None:
        self._conn = conn
        self._create, self._patch, self._remove, self._get = _SQLITE_OPS[name]

    def create(self, data: Mapping[str, Any]) -> dict[str, Any]:
        return dict(self._create(self._conn, data))

    def patch(self, record_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
        return dict(self._patch(self._conn, record_id, data))

    def remove(self, record_id: str) -> dict[str, Any]:
        return dict(self._remove(self._conn, record_id))

    def get(self, record_id: str) -> dict[str, Any]:
        return dict(self._get(self._conn, record_id))


class SqliteRecordStore:
    """Record store over the local SQLite database. Also an OwnerRepository."""

    def __init__(self, db_path: Path = DEFAULT_DB_PATH) -> None:
        self.db_path = db_path
        self.conn = db.get_connection(db_path)

    def service(self, name: str) -> _SqliteService:
        if name not in _SQLITE_OPS:
            raise _unknown_service(name)
        return _SqliteService(self.conn, name)

    def close(self) -> None:
        self.conn.close()

    def get_worktree(self, worktree_id: str) -> dict[str, Any]:
        return dict(db.get_worktree(self.conn, worktree_id))

    def is_owner(self, worktree_id: str, user_id: str) -> bool:
        return db.is_owner(self.conn, worktree_id, user_id)

    def get_owners(self, worktree_id: str) -> list[str]:
        return db.get_owners(self.conn, worktree_id)

    def add_owner(self, worktree_id: str, user_id: str) -> None:
        db.add_owner(self.conn, worktree_id, user_id)

    def remove_owner(self, worktree_id: str, user_id: str) -> None:
        db.remove_owner(self.conn, worktree_id, user_id)

    def get_user(self, user_id: str) -> dict[str, Any]:
        return dict(db.get_user(self.conn, user_id))


# -- HTTP --


def _raise_for_status(response: httpx.Response, what: str) -> None:
    if response.is_success:
        return
    try:
        message = response.json().get("message") or response.text
    except ValueError:
        message = response.text
    message = f"{what} failed ({response.status_code}): {message}"
    if response.status_code == 401:
        raise NotAuthenticated(message)
    if response.status_code == 403:
        raise AuthorizationFailure(message)
    if response.status_code == 404:
        raise RecordNotFound(message)
    raise WtguardError(message, details={"status_code": response.status_code})


class _HttpService:
    def __init__(self, client: httpx.Client, name: str) -> None:
        self._client = client
        self._name = name

    def _request(self, method: str, path: str, what: str, **kwargs: Any) -> dict[str, Any]:
        response = self._client.request(method, path, **kwargs)
        _raise_for_status(response, f"{what} {self._name}")
        return response.json() if response.content else {}

    def create(self, data: Mapping[str, Any]) -> dict[str, Any]:
        return self._request("POST", f"/{self._name}", "create", json=dict(data))

    def patch(self, record_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
        return self._request("PATCH", f"/{self._name}/{record_id}", "patch", json=dict(data))

    def remove(self, record_id: str) -> dict[str, Any]:
        return self._request("DELETE", f"/{self._name}/{record_id}", "remove")

    def get(self, record_id: str) -> dict[str, Any]:
        return self._request("GET", f"/{self._name}/{record_id}", "get")


class HttpRecordStore:
    """Record store backed by the daemon's REST services."""

    def __init__(
        self,
        base_url: str,
        session_token: str | None = None,
        *,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if session_token:
            headers["Authorization"] = f"Bearer {session_token}"
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url, headers=headers, timeout=timeout, transport=transport
        )

    def service(self, name: str) -> _HttpService:
        return _HttpService(self._client, name)

    def close(self) -> None:
        self._client.close()


def open_store(daemon_url: str | None = None, session_token: str | None = None) -> RecordStore:
    """Open a store for *daemon_url*.

    ``http://`` / ``https://`` -> HttpRecordStore; ``sqlite:///path`` or
    nothing -> SqliteRecordStore (default database path when no URL).
    """
    if not daemon_url:
        return SqliteRecordStore()
    if daemon_url.startswith(("http://", "https://")):
        log.debug("Opening HTTP record store at %s", daemon_url)
        return HttpRecordStore(daemon_url, session_token)
    if daemon_url.startswith("sqlite://"):
        path = daemon_url.removeprefix("sqlite://")
        return SqliteRecordStore(Path(path) if path else DEFAULT_DB_PATH)
    raise ValueError(f"Unsupported daemon URL: {daemon_url!r}")


StoreFactory = Callable[[str | None, str | None], RecordStore]
