"""Explicit success/failure results returned by the engine operations."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(Enum):
    """Recoverable failure categories surfaced to callers."""

    INVALID_RANGE = "invalid_range"
    INVALID_BIN_SIZE = "invalid_bin_size"
    INVALID_INTERVAL = "invalid_interval"
    SCHEDULE_NOT_FOUND = "schedule_not_found"
    UNBOUNDED_LOOK_AHEAD = "unbounded_look_ahead"


@dataclass(frozen=True, slots=True)
class EngineError:
    kind: ErrorKind
    message: str


class EngineFailure(Exception):
    """Raised by :meth:`Result.unwrap` when the result holds an error."""

    def __init__(self, error: EngineError) -> None:
        super().__init__(error.message)
        self.error = error

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind


@dataclass(frozen=True, slots=True)
class Result(Generic[T]):
    """Either a value or an :class:`EngineError`, never both."""

    value: Optional[T] = None
    error: Optional[EngineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "Result[T]":
        return cls(error=EngineError(kind=kind, message=message))

    def unwrap(self) -> T:
        if self.error is not None:
            raise EngineFailure(self.error)
        return self.value  # type: ignore[return-value]


def check_range(start: int, end: int) -> Optional[Result]:
    """Return an ``INVALID_RANGE`` failure when ``end`` is not after ``start``."""
    if end <= start:
        return Result.failure(
            ErrorKind.INVALID_RANGE,
            f"end ({end}) must be after start ({start})",
        )
    return None
