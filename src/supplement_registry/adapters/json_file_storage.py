"""JSON file storage with timestamped backups."""

import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from supplement_registry.domain.backups import BackupHandle
from supplement_registry.services.persistence import Storage

BACKUP_PREFIX = "supplements-backup-"
BACKUP_SUFFIX = ".json"
_STAMP_FORMAT = "%Y-%m-%dT%H-%M-%S-%fZ"

_logger = logging.getLogger(__name__)


@dataclass
class JsonFileStorage(Storage):
    """Stores the record container as one JSON file on local disk.

    Writes go through a temporary file that replaces the target, so a crash
    never leaves a half-written container behind. Backups are full copies
    named after their UTC creation time.
    """

    path: Path
    backup_dir: Path
    _last_stamp: datetime | None = field(default=None, init=False, repr=False)
    _stamp_lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )

    def __post_init__(self) -> None:
        self.path = Path(self.path)
        self.backup_dir = Path(self.backup_dir)

    def exists(self) -> bool:
        """Return whether the container file exists."""
        return self.path.is_file()

    def load(self) -> bytes:
        """Return the container file content."""
        return self.path.read_bytes()

    def save(self, data: bytes) -> None:
        """Replace the container file atomically."""
        atomic_write_bytes(self.path, data)

    def snapshot(self) -> BackupHandle:
        """Copy the container file into a new timestamped backup."""
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        created_at = self._next_stamp()
        target = self.backup_dir / backup_name(created_at)
        content = self.path.read_bytes() if self.exists() else b""
        atomic_write_bytes(target, content)
        _logger.debug("Created backup %s", target.name)
        return BackupHandle(
            name=target.name, created_at=created_at, location=str(target)
        )

    def list_snapshots(self) -> list[BackupHandle]:
        """Return retained backups, newest first."""
        if not self.backup_dir.is_dir():
            return []
        handles = []
        for entry in self.backup_dir.glob(f"{BACKUP_PREFIX}*{BACKUP_SUFFIX}"):
            created_at = parse_backup_name(entry.name)
            if created_at is None:
                continue
            handles.append(
                BackupHandle(
                    name=entry.name, created_at=created_at, location=str(entry)
                )
            )
        return sorted(handles, key=lambda handle: handle.created_at, reverse=True)

    def prune_snapshots(self, keep: int) -> list[BackupHandle]:
        """Delete all but the newest ``keep`` backups."""
        stale = self.list_snapshots()[max(keep, 0) :]
        for handle in stale:
            (self.backup_dir / handle.name).unlink(missing_ok=True)
        return stale

    def _next_stamp(self) -> datetime:
        with self._stamp_lock:
            stamp = datetime.now(tz=UTC)
            if self._last_stamp is not None and stamp <= self._last_stamp:
                stamp = self._last_stamp + timedelta(microseconds=1)
            while (self.backup_dir / backup_name(stamp)).exists():
                stamp += timedelta(microseconds=1)
            self._last_stamp = stamp
            return stamp


def backup_name(created_at: datetime) -> str:
    """Return the file name of a backup created at ``created_at``."""
    stamp = created_at.astimezone(UTC).strftime(_STAMP_FORMAT)
    return f"{BACKUP_PREFIX}{stamp}{BACKUP_SUFFIX}"


def parse_backup_name(name: str) -> datetime | None:
    """Return the creation time encoded in a backup file name."""
    if not (name.startswith(BACKUP_PREFIX) and name.endswith(BACKUP_SUFFIX)):
        return None
    stamp = name[len(BACKUP_PREFIX) : -len(BACKUP_SUFFIX)]
    try:
        return datetime.strptime(stamp, _STAMP_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write ``data`` to a temporary sibling and move it over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + f".tmp.{os.getpid()}")
    try:
        tmp.write_bytes(data)
        tmp.replace(path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise
