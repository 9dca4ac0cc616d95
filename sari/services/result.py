"""Outcome of a service call that reports failure instead of raising."""

from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

from sari.errors import SariError

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error_code is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: str, code: str, context: Optional[dict[str, Any]] = None) -> "Result[T]":
        return cls(error=error, error_code=code, context=context or {})

    @classmethod
    def from_error(cls, exc: SariError) -> "Result[T]":
        """Carry a pipeline error's code and context without raising it."""
        return cls.failure(str(exc), exc.code, exc.context)
