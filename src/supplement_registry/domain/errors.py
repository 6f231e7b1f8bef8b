"""Error kinds surfaced by the supplement store."""

from dataclasses import dataclass
from enum import StrEnum
from typing import ClassVar


class ErrorKind(StrEnum):
    """Stable error identifiers exposed to callers."""

    VALIDATION = "ValidationError"
    NOT_FOUND = "NotFoundError"
    PERSISTENCE = "PersistenceError"
    INITIALIZATION = "InitializationError"
    MIGRATION = "MigrationError"


class StoreError(Exception):
    """Base class for every error the store reports."""

    kind: ClassVar[ErrorKind]

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, object]:
        """Serialize the error for API responses."""
        return {"kind": self.kind.value, "message": self.message}


@dataclass(frozen=True)
class FieldIssue:
    """Single schema violation."""

    field: str
    message: str


class ValidationError(StoreError):
    """A candidate or merged record violates the schema."""

    kind = ErrorKind.VALIDATION

    def __init__(self, issues: list[FieldIssue]) -> None:
        self.issues = issues
        summary = "; ".join(f"{issue.field}: {issue.message}" for issue in issues)
        super().__init__(f"Validation failed: {summary}")

    @property
    def fields(self) -> list[str]:
        """Return offending field paths in first-seen order."""
        return list(dict.fromkeys(issue.field for issue in self.issues))

    def to_dict(self) -> dict[str, object]:
        """Serialize the error including every offending field."""
        payload = super().to_dict()
        payload["fields"] = [
            {"field": issue.field, "message": issue.message} for issue in self.issues
        ]
        return payload


class NotFoundError(StoreError):
    """No record exists for a barcode and none could be created."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, barcode: str | None) -> None:
        self.barcode = barcode
        super().__init__(f"Supplement with barcode {barcode} not found")


class PersistenceError(StoreError):
    """Backup or write to the storage medium failed."""

    kind = ErrorKind.PERSISTENCE


class InitializationError(StoreError):
    """The storage medium is unreadable or the store is not initialized."""

    kind = ErrorKind.INITIALIZATION


class MigrationError(StoreError):
    """A single legacy record could not be transformed."""

    kind = ErrorKind.MIGRATION

    def __init__(self, message: str, index: int | None = None) -> None:
        self.index = index
        prefix = f"Item {index}: " if index is not None else ""
        super().__init__(f"{prefix}{message}")
        self.reason = message

    def at(self, index: int) -> "MigrationError":
        """Return a copy of the error bound to a batch position."""
        return MigrationError(self.reason, index=index)

    def to_dict(self) -> dict[str, object]:
        """Serialize the error with its batch position."""
        payload = super().to_dict()
        payload["index"] = self.index
        return payload
