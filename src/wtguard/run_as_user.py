"""Run shell commands, optionally as another Unix user.

Impersonation always goes through ``sudo -n -u USER bash -c '...'``.
``sudo -u`` calls initgroups() at the moment of the identity switch, so the
target user sees group memberships granted after any long-lived shell of
theirs started. Every privileged call therefore re-elevates instead of
reusing a session.

``-n`` makes sudo fail immediately when a password would be required.
Expected sudoers rule for the daemon user::

    agorpg ALL=(%agor_users) NOPASSWD: ALL

``escape_shell_arg`` is the only quoting primitive in the package. Command
builders in ``groups``, ``users`` and ``symlinks`` pass every interpolated
value through it.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from collections.abc import Mapping, Sequence
from typing import NamedTuple

from wtguard.errors import CommandFailed, CommandTimeout, ElevationDenied

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 5000

# Never forwarded into an impersonated command.
IDENTITY_ENV_VARS = frozenset({"HOME", "USER", "LOGNAME", "SHELL"})

_ENV_KEY_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

# sudo prints these (exit 1) when the rule is missing or interaction is needed.
_SUDO_DENIAL_MARKERS = (
    "a password is required",
    "a terminal is required",
    "is not in the sudoers file",
    "is not allowed to execute",
    "may not run sudo",
)


def escape_shell_arg(arg: str) -> str:
    """Quote *arg* as a single POSIX shell word.

    ``hello'world`` becomes ``'hello'\\''world'``.
    """
    return "'" + arg.replace("'", "'\\''") + "'"


def build_run_command(command: str, as_user: str | None = None) -> str:
    """Return the full shell string ``run_as_user`` would execute."""
    if not as_user:
        return command
    return f"sudo -n -u {escape_shell_arg(as_user)} bash -c {escape_shell_arg(command)}"


def scrub_identity_env(env: Mapping[str, str] | None = None) -> dict[str, str]:
    """Copy *env* (default: ``os.environ``) without HOME/USER/LOGNAME/SHELL."""
    source = os.environ if env is None else env
    return {k: v for k, v in source.items() if k not in IDENTITY_ENV_VARS}


def _is_elevation_denial(as_user: str | None, returncode: int | None, stderr: str) -> bool:
    if not as_user or returncode != 1:
        return False
    lowered = stderr.lower()
    return lowered.startswith("sudo:") and any(m in lowered for m in _SUDO_DENIAL_MARKERS)


def run_as_user(
    command: str,
    *,
    as_user: str | None = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    env: Mapping[str, str] | None = None,
) -> str:
    """Run a shell command and return its stdout.

    Raises CommandTimeout when *timeout_ms* elapses, ElevationDenied when
    sudo itself refuses the identity switch, CommandFailed otherwise.
    """
    full_command = build_run_command(command, as_user)
    child_env = scrub_identity_env(env) if as_user else (dict(env) if env is not None else None)

    try:
        proc = subprocess.run(
            full_command,
            shell=True,
            capture_output=True,
            text=True,
            timeout=timeout_ms / 1000,
            env=child_env,
        )
    except subprocess.TimeoutExpired:
        raise CommandTimeout(
            f"Command timed out after {timeout_ms}ms",
            command=full_command,
        ) from None

    if proc.returncode != 0:
        stderr = (proc.stderr or "").strip()
        if _is_elevation_denial(as_user, proc.returncode, stderr):
            raise ElevationDenied(
                f"sudo refused to run as {as_user}: {stderr}",
                command=full_command,
                returncode=proc.returncode,
                stderr=stderr,
            )
        raise CommandFailed(
            f"Command failed with exit code {proc.returncode}: {stderr or '(no stderr)'}",
            command=full_command,
            returncode=proc.returncode,
            stderr=stderr,
        )
    return proc.stdout


def check_as_user(
    command: str,
    *,
    as_user: str | None = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> bool:
    """True if the command exits 0."""
    try:
        run_as_user(command, as_user=as_user, timeout_ms=timeout_ms)
    except CommandFailed:
        return False
    return True


class SpawnArgs(NamedTuple):
    cmd: str
    args: list[str]


def build_spawn_args(
    command: str,
    args: Sequence[str] = (),
    *,
    as_user: str | None = None,
    env: Mapping[str, str] | None = None,
) -> SpawnArgs:
    """Build (cmd, args) for launching a long-running process.

    Without *as_user* the input comes back unchanged and the caller passes
    *env* to its launcher directly. With *as_user* the identity switch
    discards the launcher's environment, so *env* is injected as an
    ``env KEY='value' ...`` prefix inside the impersonated shell.
    """
    if not as_user:
        return SpawnArgs(command, list(args))

    env_prefix = ""
    if env:
        entries = []
        for key, value in env.items():
            if not _ENV_KEY_RE.fullmatch(key):
                raise ValueError(f"Invalid environment variable name: {key!r}")
            entries.append(f"{key}={escape_shell_arg(value)}")
        env_prefix = "env " + " ".join(entries) + " "

    inner = f"{env_prefix}{command}"
    if args:
        inner += " " + " ".join(escape_shell_arg(a) for a in args)

    return SpawnArgs("sudo", ["-n", "-u", as_user, "bash", "-c", inner])


class CommandExecutor:
    """Bound executor used by the provisioning layer.

    Holds the admin identity and timeout so call sites stay short, and is the
    seam tests replace with a recording fake.
    """

    def __init__(self, *, admin_user: str | None = "root", timeout_ms: int = DEFAULT_TIMEOUT_MS):
        self.admin_user = admin_user
        self.timeout_ms = timeout_ms

    def run(self, command: str, *, as_user: str | None = None) -> str:
        log.debug("exec as=%s: %s", as_user or "(self)", command)
        return run_as_user(command, as_user=as_user, timeout_ms=self.timeout_ms)

    def check(self, command: str, *, as_user: str | None = None) -> bool:
        return check_as_user(command, as_user=as_user, timeout_ms=self.timeout_ms)

    def run_privileged(self, command: str) -> str:
        return self.run(command, as_user=self.admin_user)

    def check_privileged(self, command: str) -> bool:
        return self.check(command, as_user=self.admin_user)
