"""Storage abstraction for the persisted record container."""

import json
from typing import Protocol

from supplement_registry.domain.backups import BackupHandle


class Storage(Protocol):
    """Persistence interface for the record container and its snapshots.

    Implementations raise ``OSError`` when the medium cannot be read or
    written.
    """

    def exists(self) -> bool:
        """Return whether the container has been created."""

    def load(self) -> bytes:
        """Return the raw container content."""

    def save(self, data: bytes) -> None:
        """Replace the container content atomically."""

    def snapshot(self) -> BackupHandle:
        """Copy the current container content into a new backup."""

    def list_snapshots(self) -> list[BackupHandle]:
        """Return retained backups, newest first."""

    def prune_snapshots(self, keep: int) -> list[BackupHandle]:
        """Delete all but the newest ``keep`` backups and return the deleted ones."""


class CorruptContainerError(ValueError):
    """Persisted content is not a JSON list of records."""


def decode_container(data: bytes) -> list[object]:
    """Parse container bytes into a list of raw record payloads."""
    if not data.strip():
        return []
    try:
        payload = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CorruptContainerError(f"container is not valid JSON: {exc}") from exc
    if not isinstance(payload, list):
        raise CorruptContainerError(
            f"container must hold a list, found {type(payload).__name__}"
        )
    return payload


def encode_container(payloads: list[object]) -> bytes:
    """Serialize raw record payloads into container bytes."""
    return (json.dumps(payloads, indent=2, ensure_ascii=False) + "\n").encode("utf-8")
