"""Error taxonomy shared by the executor, git and transaction layers.

Library code raises these; transaction entry points convert them into
structured failure results, and the CLI turns them into JSON errors.
"""

from __future__ import annotations


class WtguardError(Exception):
    """Base class. ``code`` is the stable machine-readable identifier."""

    code = "WTGUARD_ERROR"

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class ValidationFailure(WtguardError, ValueError):
    """Bad input, rejected before any side effect."""

    code = "VALIDATION_FAILED"


class CommandFailed(WtguardError, RuntimeError):
    """A shell command exited non-zero."""

    code = "COMMAND_FAILED"

    def __init__(
        self,
        message: str,
        *,
        command: str = "",
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(
            message,
            details={"command": command, "returncode": returncode, "stderr": stderr},
        )
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class CommandTimeout(CommandFailed):
    """A shell command exceeded its timeout. Handled like any other failure."""

    code = "COMMAND_TIMEOUT"


class ElevationDenied(CommandFailed):
    """sudo refused to switch identity (no rule, or a password was required)."""

    code = "ELEVATION_DENIED"


class FilesystemFailure(WtguardError, RuntimeError):
    """git-level failure; partial side effects may exist."""

    code = "FILESYSTEM_FAILED"


class ProvisioningFailure(WtguardError, RuntimeError):
    """Unix group or symlink step failed. Never fatal to a transaction."""

    code = "PROVISIONING_FAILED"


class AuthorizationFailure(WtguardError, PermissionError):
    code = "FORBIDDEN"


class NotAuthenticated(AuthorizationFailure):
    code = "NOT_AUTHENTICATED"


class RecordNotFound(WtguardError, LookupError):
    code = "NOT_FOUND"


class InvalidTransition(WtguardError, ValueError):
    """filesystem_status change other than creating -> ready|failed."""

    code = "INVALID_TRANSITION"
