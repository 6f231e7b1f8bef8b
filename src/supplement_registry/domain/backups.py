"""Domain models for persisted state and its snapshots."""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class BackupHandle:
    """Reference to an immutable snapshot of the persisted container."""

    name: str
    created_at: datetime
    location: str | None = None
