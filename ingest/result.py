"""
Typed success/failure results returned by use cases.

Use cases never raise across their boundary: callers inspect ``success`` and
either read ``value`` or ``error``.

Usage:
    result = await use_case.execute(...)
    if not result.success:
        return error_response(result.error.code, result.error.message)
    payload = result.value
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

from ingest.errors import ErrorCode

T = TypeVar("T")


@dataclass(frozen=True)
class ResultError:
    """Failure details carried by an unsuccessful Result."""

    code: ErrorCode
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a use case."""

    success: bool
    value: Optional[T] = None
    error: Optional[ResultError] = None

    @classmethod
    def ok(cls, value: T) -> "Result[T]":
        return cls(success=True, value=value)

    @classmethod
    def fail(
        cls,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> "Result[T]":
        return cls(success=False, error=ResultError(code=code, message=message, details=details or {}))

    @property
    def error_code(self) -> Optional[ErrorCode]:
        """Shortcut for ``result.error.code`` (None on success)."""
        return self.error.code if self.error else None
