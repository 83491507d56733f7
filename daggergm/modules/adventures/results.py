from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class OperationFailure:
    code: str
    message: str
    details: dict = field(default_factory=dict)


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of one lifecycle operation: a value, or the reason it was refused."""

    ok: bool
    value: T | None = None
    error: OperationFailure | None = None

    @classmethod
    def success(cls, value: T) -> "OperationResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, exc: Exception) -> "OperationResult[T]":
        return cls(
            ok=False,
            error=OperationFailure(
                code=str(getattr(exc, "code", "ERROR")),
                message=str(exc),
                details=dict(getattr(exc, "details", {}) or {}),
            ),
        )
