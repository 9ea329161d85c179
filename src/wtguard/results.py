"""Structured transaction results.

Hard failures go in ``error``; soft failures (isolation steps that did not
apply) go in ``warnings`` so callers can tell "created but unisolated"
apart from an outright failure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, TypedDict


class ErrorInfo(TypedDict):
    code: str
    message: str
    details: dict[str, Any]


class SoftFailure(TypedDict):
    code: str
    message: str


@dataclass
class ExecutorResult:
    success: bool
    data: dict[str, Any] | None = None
    error: ErrorInfo | None = None
    warnings: list[SoftFailure] = field(default_factory=list)

    @classmethod
    def ok(cls, data: dict[str, Any], warnings: list[SoftFailure] | None = None) -> ExecutorResult:
        return cls(success=True, data=data, warnings=list(warnings or []))

    @classmethod
    def fail(
        cls,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
        warnings: list[SoftFailure] | None = None,
    ) -> ExecutorResult:
        return cls(
            success=False,
            error={"code": code, "message": message, "details": details or {}},
            warnings=list(warnings or []),
        )

    @property
    def isolated(self) -> bool:
        """False when any provisioning warning was recorded."""
        return not self.warnings

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.success:
            out["data"] = self.data or {}
        else:
            out["error"] = self.error
        if self.warnings:
            out["warnings"] = self.warnings
        return out


def warning(code: str, exc: BaseException | str) -> SoftFailure:
    return {"code": code, "message": str(exc)}
