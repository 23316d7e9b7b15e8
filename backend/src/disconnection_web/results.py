from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Literal, TypeVar

ErrorKind = Literal["not_found", "ineligible", "validation", "no_recipients", "invalid_state"]

T = TypeVar("T")


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of an engine operation; expected failures never raise."""

    value: T | None = None
    error: ErrorKind | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T, message: str = "") -> OperationResult[T]:
        return cls(value=value, message=message)

    @classmethod
    def failure(cls, error: ErrorKind, message: str) -> OperationResult[T]:
        return cls(error=error, message=message)
