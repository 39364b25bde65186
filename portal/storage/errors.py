from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageError(Exception):
    """Raised when the backing store fails or lacks a required capability."""

    def __init__(self, message: str, *, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


@dataclass(frozen=True)
class StorageResult(Generic[T]):
    """Outcome of a read whose failure the caller may choose to tolerate.

    Stores return this instead of raising so that the caller, not the
    store, decides which fallback value applies.
    """

    value: Optional[T] = None
    error: Optional[StorageError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "StorageResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: StorageError) -> "StorageResult[T]":
        return cls(error=error)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.error is None else default


__all__ = ["ConstraintViolation", "StorageError", "StorageResult"]
