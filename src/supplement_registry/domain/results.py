"""Uniform result shape returned by store operations."""

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Generic, TypeVar

from supplement_registry.domain.errors import StoreError

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of an operation: data on success, a typed error otherwise.

    Warnings describe degraded-but-successful outcomes, such as a
    collaborator that failed while the record was still written.
    """

    success: bool
    data: T | None = None
    error: StoreError | None = None
    warnings: tuple[str, ...] = ()

    @classmethod
    def ok(cls, data: T, warnings: Iterable[str] = ()) -> "Result[T]":
        """Build a successful result."""
        return cls(success=True, data=data, warnings=tuple(warnings))

    @classmethod
    def fail(cls, error: StoreError, warnings: Iterable[str] = ()) -> "Result[T]":
        """Build a failed result."""
        return cls(success=False, error=error, warnings=tuple(warnings))

    def unwrap(self) -> T:
        """Return the data or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.data  # type: ignore[return-value]

    def with_warnings(self, warnings: Iterable[str]) -> "Result[T]":
        """Return a copy with extra warnings appended."""
        extra = tuple(warnings)
        if not extra:
            return self
        return Result(
            success=self.success,
            data=self.data,
            error=self.error,
            warnings=self.warnings + extra,
        )
