"""Dependency container wiring for the application."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from supplement_registry.adapters.json_file_storage import JsonFileStorage
from supplement_registry.adapters.keyword_category_classifier import (
    KeywordCategoryClassifier,
)
from supplement_registry.config import Settings
from supplement_registry.services.classification import CategoryClassifier
from supplement_registry.services.persistence import Storage
from supplement_registry.services.store import SupplementStore


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    storage: Storage
    classifier: CategoryClassifier
    store: SupplementStore
    close_resources: Callable[[], Awaitable[None]]


def build_container(settings: Settings | None = None) -> AppContainer:
    """Create the default dependency container."""
    resolved_settings = settings or Settings()
    storage = JsonFileStorage(
        path=resolved_settings.supplements_path,
        backup_dir=resolved_settings.backups_path,
    )
    classifier = KeywordCategoryClassifier()
    store = SupplementStore(
        storage=storage,
        classifier=classifier,
        max_backups=resolved_settings.max_backups,
        confidence_threshold=resolved_settings.category_confidence_threshold,
        default_currency=resolved_settings.default_currency,
    )

    async def close_resources() -> None:
        store.close()

    return AppContainer(
        settings=resolved_settings,
        storage=storage,
        classifier=classifier,
        store=store,
        close_resources=close_resources,
    )
