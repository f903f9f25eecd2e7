"""Soft-failure result types for best-effort persistence.

Durable writes never raise across the capture boundary. They report a
SoftError instead, wrapped in a Persisted value, and the caller decides
whether to log and continue or escalate.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class SoftError:
    """A non-fatal durable-storage failure."""

    operation: str
    message: str

    @classmethod
    def from_exception(cls, operation: str, error: BaseException) -> SoftError:
        return cls(operation=operation, message=f"{type(error).__name__}: {error}")

    def __str__(self) -> str:
        return f"{self.operation} failed ({self.message})"


@dataclass(frozen=True)
class Persisted(Generic[T]):
    """A value that always reached the in-memory mirror and maybe the durable store."""

    value: T
    durable: bool = False
    error: SoftError | None = None
