"""Shared test fixtures."""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from supplement_registry.config import Settings
from supplement_registry.containers import AppContainer, build_container
from supplement_registry.domain.backups import BackupHandle
from supplement_registry.domain.classification import CategoryResult
from supplement_registry.domain.records import SupplementRecord
from supplement_registry.services.classification import (
    CategoryClassifier,
    QualityAnalyzer,
)
from supplement_registry.services.persistence import Storage, encode_container
from supplement_registry.services.store import SupplementStore

BASE_TIME = datetime(2024, 1, 1, tzinfo=UTC)


@dataclass
class InMemoryStorage(Storage):
    """In-memory container storage with failure switches for tests."""

    data: bytes | None = None
    snapshots: list[tuple[BackupHandle, bytes]] = field(default_factory=list)
    fail_save: bool = False
    fail_snapshot: bool = False
    save_count: int = 0
    created: int = 0

    def exists(self) -> bool:
        return self.data is not None

    def load(self) -> bytes:
        if self.data is None:
            raise FileNotFoundError("container missing")
        return self.data

    def save(self, data: bytes) -> None:
        if self.fail_save:
            raise OSError("disk full")
        self.data = data
        self.save_count += 1

    def snapshot(self) -> BackupHandle:
        if self.fail_snapshot:
            raise OSError("backup directory is read-only")
        self.created += 1
        handle = BackupHandle(
            name=f"supplements-backup-{self.created:04d}.json",
            created_at=BASE_TIME + timedelta(microseconds=self.created),
        )
        self.snapshots.append((handle, self.data or b""))
        return handle

    def list_snapshots(self) -> list[BackupHandle]:
        return sorted(
            (handle for handle, _ in self.snapshots),
            key=lambda handle: handle.created_at,
            reverse=True,
        )

    def prune_snapshots(self, keep: int) -> list[BackupHandle]:
        stale = self.list_snapshots()[keep:]
        names = {handle.name for handle in stale}
        self.snapshots = [item for item in self.snapshots if item[0].name not in names]
        return stale


@dataclass
class FakeCategoryClassifier(CategoryClassifier):
    """Classifier returning a fixed verdict and recording its calls."""

    result: CategoryResult = field(
        default_factory=lambda: CategoryResult("supplement", "other", 0.3)
    )
    error: Exception | None = None
    calls: list[tuple[str, list[str]]] = field(default_factory=list)

    def classify(
        self, product_name: str, ingredients: Sequence[Mapping[str, object]]
    ) -> CategoryResult:
        self.calls.append(
            (product_name, [str(item.get("name")) for item in ingredients])
        )
        if self.error is not None:
            raise self.error
        return self.result


@dataclass
class FakeQualityAnalyzer(QualityAnalyzer):
    """Quality analyzer returning a fixed payload."""

    payload: dict[str, object] = field(
        default_factory=lambda: {
            "underDosed": False,
            "overDosed": False,
            "fillerRisk": False,
            "bioavailability": "high",
        }
    )
    error: Exception | None = None

    def analyze(self, record: SupplementRecord) -> Mapping[str, object]:
        if self.error is not None:
            raise self.error
        return self.payload


def make_record(**overrides: object) -> SupplementRecord:
    """Build a valid record from camelCase overrides."""
    payload: dict[str, object] = {
        "meta": {
            "source": "ai",
            "verified": False,
            "lastUpdated": BASE_TIME,
            "sourceMap": {},
        }
    }
    payload.update(overrides)
    return SupplementRecord.model_validate(payload)


def container_bytes(*records: object) -> bytes:
    """Encode raw payloads or records as container content."""
    return encode_container(
        [
            record.to_payload() if isinstance(record, SupplementRecord) else record
            for record in records
        ]
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        admin_token="admin-token",
        data_dir=tmp_path / "data",
        environment="test",
    )


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def classifier() -> FakeCategoryClassifier:
    return FakeCategoryClassifier()


@pytest.fixture
def quality_analyzer() -> FakeQualityAnalyzer:
    return FakeQualityAnalyzer()


@pytest.fixture
def store(
    storage: InMemoryStorage,
    classifier: FakeCategoryClassifier,
    quality_analyzer: FakeQualityAnalyzer,
) -> SupplementStore:
    supplement_store = SupplementStore(
        storage=storage,
        classifier=classifier,
        quality_analyzer=quality_analyzer,
    )
    assert supplement_store.initialize().success
    return supplement_store


@pytest.fixture
def container(settings: Settings) -> AppContainer:
    return build_container(settings)
