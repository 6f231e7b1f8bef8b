"""Tests for the supplement store."""

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from supplement_registry.domain.classification import CategoryResult
from supplement_registry.domain.errors import ErrorKind
from supplement_registry.domain.stats import Pagination, SearchFilters
from supplement_registry.services.store import SupplementStore
from tests.conftest import (
    BASE_TIME,
    FakeCategoryClassifier,
    InMemoryStorage,
    container_bytes,
    make_record,
)

SOLID_MAGNESIUM = {
    "brand": "SOLID",
    "productName": "Magnesium Bisglycinate 400mg",
    "ingredients": [{"name": "Magnesium bisglycinate", "dosage": 400, "unit": "mg"}],
    "form": "capsule",
}


def _candidate(name: str, **fields: object) -> dict[str, object]:
    return {"productName": name, "category": "supplement", **fields}


def test_get_or_create_deduplicates_by_key(store, classifier) -> None:
    first = store.get_or_create(None, SOLID_MAGNESIUM)
    second = store.get_or_create(None, SOLID_MAGNESIUM)

    assert first.success
    assert second.success
    assert second.unwrap() == first.unwrap()
    assert len(store.export().unwrap()) == 1
    assert len(classifier.calls) == 1


def test_get_or_create_returns_existing_barcode_unchanged(store) -> None:
    created = store.get_or_create("123", _candidate("Zinc")).unwrap()

    again = store.get_or_create("123", _candidate("Iron", brand="Other"))

    assert again.unwrap() == created
    assert [record.barcode for record in store.export().unwrap()] == ["123"]


def test_get_or_create_without_candidate_is_not_found(store) -> None:
    result = store.get_or_create("404")

    assert not result.success
    assert result.error.kind is ErrorKind.NOT_FOUND


def test_key_match_gains_missing_barcode(store, storage) -> None:
    created = store.get_or_create(None, SOLID_MAGNESIUM).unwrap()

    result = store.get_or_create("7350", SOLID_MAGNESIUM)

    record = result.unwrap()
    assert record.barcode == "7350"
    assert record.meta.last_updated > created.meta.last_updated
    assert len(store.export().unwrap()) == 1
    assert json.loads(storage.data)[0]["barcode"] == "7350"


def test_key_match_holding_other_barcode_is_reported(store) -> None:
    store.get_or_create("111", SOLID_MAGNESIUM)

    result = store.get_or_create("222", SOLID_MAGNESIUM)

    assert result.unwrap().barcode == "111"
    assert any("Barcode conflict" in warning for warning in result.warnings)
    assert len(store.export().unwrap()) == 1


def test_shared_key_is_reported_as_ambiguous() -> None:
    storage = InMemoryStorage(
        data=container_bytes(
            make_record(barcode="1", productName="Zinc"),
            make_record(barcode="2", productName="Zinc"),
        )
    )
    store = SupplementStore(storage=storage)
    store.initialize()

    result = store.get_or_create(None, {"productName": "Zinc"})

    assert result.unwrap().barcode == "1"
    assert any(warning.startswith("MergeAmbiguous") for warning in result.warnings)


def test_new_record_adopts_confident_category(store, classifier) -> None:
    classifier.result = CategoryResult("vitamin", "mineral", 0.9)

    record = store.get_or_create("1", SOLID_MAGNESIUM).unwrap()

    assert record.category == "vitamin"
    assert record.sub_category == "mineral"
    assert record.meta.source_map["category"] == "auto-detected"
    assert record.meta.source_map["subCategory"] == "auto-detected"
    assert record.meta.source_map["brand"] == "user"
    assert record.quality.bioavailability == "high"


def test_new_record_ignores_unconfident_category(store, classifier) -> None:
    classifier.result = CategoryResult("herb", "adaptogen", 0.5)

    record = store.get_or_create("1", SOLID_MAGNESIUM).unwrap()

    assert record.category == "supplement"
    assert "category" not in record.meta.source_map


def test_failing_classifier_degrades_to_warning(store, classifier) -> None:
    classifier.error = RuntimeError("model offline")

    result = store.get_or_create("1", SOLID_MAGNESIUM)

    assert result.success
    assert result.unwrap().category == "supplement"
    assert result.warnings == ("category classification failed: model offline",)


def test_failing_quality_analyzer_degrades_to_warning(store, quality_analyzer) -> None:
    quality_analyzer.error = ValueError("no reference doses")

    result = store.get_or_create("1", _candidate("Zinc"))

    assert result.success
    assert result.unwrap().quality.bioavailability is None
    assert result.warnings == ("quality analysis failed: no reference doses",)


def test_invalid_candidate_is_not_stored(store, storage) -> None:
    saves = storage.save_count

    result = store.get_or_create("1", _candidate("Zinc", form="pill"))

    assert not result.success
    assert result.error.fields == ["form"]
    assert storage.save_count == saves
    assert store.export().unwrap() == []


def test_created_record_derives_price_per_serving(store) -> None:
    record = store.get_or_create(
        "1", _candidate("Creatine", price={"value": 300}, servingsPerContainer=60)
    ).unwrap()

    assert record.price.price_per_serving == 5.0
    assert record.price.currency == "SEK"


def test_correction_adopts_confident_category(store, classifier) -> None:
    store.get_or_create("123", _candidate("Night Formula"))
    classifier.result = CategoryResult("vitamin", "mineral", 0.92)

    result = store.update(
        "123", {"ingredients": [{"name": "Magnesium", "dosage": 200}]}
    )

    record = result.unwrap()
    assert record.category == "vitamin"
    assert record.meta.source_map["category"] == "auto-detected"
    assert record.meta.verified is True


def test_correction_keeps_category_on_low_confidence(store, classifier) -> None:
    store.get_or_create("123", _candidate("Night Formula"))
    classifier.result = CategoryResult("vitamin", "mineral", 0.5)

    record = store.update("123", {"ingredients": [{"name": "Magnesium"}]}).unwrap()

    assert record.category == "supplement"
    assert record.meta.source_map["category"] == "user"
    assert record.meta.verified is True


def test_correction_of_unknown_barcode_is_not_found(store) -> None:
    result = store.update("404", {"brand": "Nordic"})

    assert result.error.kind is ErrorKind.NOT_FOUND


def test_correction_updates_price_per_serving(store) -> None:
    store.get_or_create(
        "1", _candidate("Creatine", price={"value": 150}, servingsPerContainer=60)
    )

    record = store.update("1", {"price": {"value": 300}}).unwrap()

    assert record.price.price_per_serving == 5.0


def test_merge_never_overrides_corrected_fields(store) -> None:
    store.get_or_create("123", {"productName": "Zinc"}, source="ai")
    store.update("123", {"brand": "Nordic"})

    record = store.merge(
        "123", {"brand": "Other", "form": "tablet"}, "external-catalog"
    ).unwrap()

    assert record.brand == "Nordic"
    assert record.form == "tablet"
    assert record.meta.source == "combined"
    assert record.meta.source_map["form"] == "external-catalog"


def test_merge_without_changes_does_not_write(store, storage) -> None:
    store.get_or_create("1", _candidate("Zinc", brand="Nordic"))
    saves = storage.save_count

    result = store.merge("1", {"brand": "Other"}, "ai")

    assert result.success
    assert storage.save_count == saves


def test_delete_removes_record(store) -> None:
    store.get_or_create("1", _candidate("Zinc"))

    deleted = store.delete("1")

    assert deleted.unwrap().barcode == "1"
    assert store.get_by_barcode("1").error.kind is ErrorKind.NOT_FOUND
    assert store.delete("1").error.kind is ErrorKind.NOT_FOUND


def test_backups_are_bounded_to_most_recent(store, storage) -> None:
    for index in range(11):
        store.get_or_create(str(index), _candidate(f"Product {index}"))

    names = [handle.name for handle in store.backups().unwrap()]

    assert len(names) == 10
    assert names[0] == "supplements-backup-0012.json"
    assert names[-1] == "supplements-backup-0003.json"


def test_failed_write_leaves_memory_unchanged(store, storage) -> None:
    store.get_or_create("1", _candidate("Zinc"))
    before = storage.data
    storage.fail_save = True

    result = store.get_or_create("2", _candidate("Iron"))

    assert not result.success
    assert result.error.kind is ErrorKind.PERSISTENCE
    assert storage.data == before
    assert [record.barcode for record in store.export().unwrap()] == ["1"]


def test_failed_backup_aborts_mutation(store, storage) -> None:
    store.get_or_create("1", _candidate("Zinc"))
    storage.fail_snapshot = True

    result = store.delete("1")

    assert result.error.kind is ErrorKind.PERSISTENCE
    assert store.get_by_barcode("1").success


def test_search_matches_names_brands_and_ingredients(store) -> None:
    store.get_or_create("1", SOLID_MAGNESIUM)
    store.get_or_create("2", _candidate("Calm Night", brand="Nordic"))
    store.get_or_create("3", _candidate("Zinc", brand="nordic", category="vitamin"))

    by_ingredient = store.search("BISGLYCINATE").unwrap()
    by_brand = store.search(filters=SearchFilters(brand="NORDIC")).unwrap()
    filtered = store.search(
        "nordic", filters=SearchFilters(category="vitamin")
    ).unwrap()

    assert [record.barcode for record in by_ingredient.items] == ["1"]
    assert by_brand.total == 2
    assert [record.barcode for record in filtered.items] == ["3"]


def test_search_clamps_pagination(store) -> None:
    for index in range(3):
        store.get_or_create(str(index), _candidate(f"Product {index}"))

    page = store.search(pagination=Pagination(offset=1, limit=0)).unwrap()
    wide = store.search(pagination=Pagination(limit=500)).unwrap()

    assert page.limit == 1
    assert [record.barcode for record in page.items] == ["1"]
    assert page.has_more
    assert wide.limit == 100
    assert wide.total == 3


def test_stats_summarize_store(store) -> None:
    store.get_or_create("1", _candidate("Zinc", category="vitamin"))
    store.get_or_create(None, _candidate("Herbal Tea", category="herb"), source="ai")
    store.update("1", {"brand": "Nordic"})

    stats = store.stats().unwrap()

    assert stats.total == 2
    assert stats.verified == 1
    assert stats.with_barcode == 1
    assert stats.by_category == {"vitamin": 1, "herb": 1}
    assert stats.by_source == {"user": 1, "ai": 1}
    assert stats.last_updated is not None


def test_initialize_quarantines_bad_and_duplicate_items() -> None:
    invalid = {
        "schemaVersion": 1,
        "category": "candy",
        "meta": {"source": "ai", "lastUpdated": "2024-01-01T00:00:00Z"},
    }
    duplicate = make_record(barcode="1", productName="Copy").to_payload()
    legacy = {"name": "Ashwagandha KSM-66 extract", "price": "249"}
    storage = InMemoryStorage(
        data=container_bytes(make_record(barcode="1"), invalid, duplicate, legacy)
    )
    store = SupplementStore(storage=storage)

    result = store.initialize()

    assert result.success
    assert len(result.warnings) == 2
    records = store.export().unwrap()
    assert [record.category for record in records] == ["supplement", "herb"]

    store.get_or_create("2", _candidate("Zinc"))

    saved = json.loads(storage.data)
    assert len(saved) == 5
    assert saved[-2:] == [invalid, duplicate]


def test_initialize_is_idempotent_on_current_store() -> None:
    original = container_bytes(make_record(barcode="1"))
    storage = InMemoryStorage(data=original)
    store = SupplementStore(storage=storage)

    first = store.initialize()
    second = store.initialize()

    assert first.unwrap().migrated_count == 0
    assert second.unwrap().migrated_count == 0
    assert storage.data == original
    assert storage.save_count == 0


def test_corrupt_container_fails_initialization() -> None:
    store = SupplementStore(storage=InMemoryStorage(data=b"{not json"))

    result = store.initialize()

    assert result.error.kind is ErrorKind.INITIALIZATION
    assert not store.initialized
    assert store.get_by_barcode("1").error.kind is ErrorKind.INITIALIZATION


def test_close_requires_reinitialization(store) -> None:
    store.get_or_create("1", _candidate("Zinc"))

    store.close()

    assert store.search().error.kind is ErrorKind.INITIALIZATION
    assert store.initialize().success
    assert store.get_by_barcode("1").success


def test_last_updated_strictly_increases() -> None:
    classifier = FakeCategoryClassifier()
    store = SupplementStore(
        storage=InMemoryStorage(), classifier=classifier, clock=lambda: BASE_TIME
    )
    store.initialize()

    created = store.get_or_create("1", _candidate("Zinc")).unwrap()
    corrected = store.update("1", {"brand": "Nordic"}).unwrap()

    assert created.meta.last_updated == BASE_TIME
    assert corrected.meta.last_updated > created.meta.last_updated


def test_migrate_reloads_upgraded_container(store, storage) -> None:
    storage.data = container_bytes({"name": "Vitamin C 500 mg tablets", "price": "89"})

    result = store.migrate()

    assert result.unwrap().migrated_count == 1
    records = store.export().unwrap()
    assert [record.form for record in records] == ["tablet"]
    assert records[0].price.currency == "SEK"


@dataclass
class LockAwareClassifier(FakeCategoryClassifier):
    """Records whether the store lock was held on every call."""

    store: SupplementStore | None = field(default=None, repr=False)
    lock_held: list[bool] = field(default_factory=list)
    on_first_call: bytes | None = None
    storage: InMemoryStorage | None = field(default=None, repr=False)

    def classify(
        self, product_name: str, ingredients: Sequence[Mapping[str, object]]
    ) -> CategoryResult:
        assert self.store is not None
        self.lock_held.append(self.store._lock.locked())
        if self.on_first_call is not None and self.storage is not None:
            self.storage.data = self.on_first_call
            self.on_first_call = None
        return super().classify(product_name, ingredients)


def test_migration_classifies_outside_the_lock() -> None:
    storage = InMemoryStorage(data=container_bytes({"name": "Ginkgo Biloba 120 mg"}))
    classifier = LockAwareClassifier()
    store = SupplementStore(storage=storage, classifier=classifier)
    classifier.store = store

    assert store.initialize().success
    storage.data = container_bytes({"name": "Vitamin C 500 mg tablets"})
    assert store.migrate().success

    assert classifier.lock_held == [False, False]
    assert [record.category for record in store.export().unwrap()] == ["vitamin"]


def test_migration_replans_when_container_changes_meanwhile() -> None:
    storage = InMemoryStorage(data=container_bytes({"name": "Ginkgo Biloba 120 mg"}))
    classifier = LockAwareClassifier(storage=storage)
    classifier.on_first_call = container_bytes(
        {"name": "Ginkgo Biloba 120 mg"}, {"name": "Vitamin D3 2000 IU"}
    )
    store = SupplementStore(storage=storage, classifier=classifier)
    classifier.store = store

    result = store.initialize()

    assert result.unwrap().migrated_count == 2
    assert len(classifier.calls) == 3
    assert [record.category for record in store.export().unwrap()] == [
        "herb",
        "vitamin",
    ]
    assert storage.save_count == 1


def test_runtime_migration_write_failure_is_a_persistence_error(
    store, storage
) -> None:
    store.get_or_create("1", _candidate("Zinc"))
    before = store.export().unwrap()
    storage.data = container_bytes({"name": "Vitamin C 500 mg tablets"})
    storage.fail_save = True

    result = store.migrate()

    assert result.error.kind is ErrorKind.PERSISTENCE
    assert store.export().unwrap() == before


def test_startup_migration_write_failure_fails_initialization() -> None:
    storage = InMemoryStorage(data=container_bytes({"name": "Vitamin C 500 mg"}))
    storage.fail_save = True
    store = SupplementStore(storage=storage)

    result = store.initialize()

    assert result.error.kind is ErrorKind.INITIALIZATION
    assert not store.initialized


def test_correcting_servings_to_null_clears_price_per_serving(store) -> None:
    created = store.get_or_create(
        "1", _candidate("Creatine", price={"value": 300}, servingsPerContainer=60)
    ).unwrap()

    corrected = store.update("1", {"servingsPerContainer": None}).unwrap()

    assert created.price.price_per_serving == 5.0
    assert corrected.servings_per_container is None
    assert corrected.price.value == 300
    assert corrected.price.price_per_serving is None
    saved = json.loads(store.storage.data)
    assert saved[0]["price"]["pricePerServing"] is None


def test_verified_flag_survives_later_writes() -> None:
    verified = make_record(
        productName="Magnesium Bisglycinate 400mg",
        brand="SOLID",
        ingredients=[{"name": "Magnesium bisglycinate", "dosage": 400, "unit": "mg"}],
        form="capsule",
        meta={
            "source": "user",
            "verified": True,
            "lastUpdated": BASE_TIME,
            "sourceMap": {},
        },
    )
    storage = InMemoryStorage(data=container_bytes(verified))
    store = SupplementStore(storage=storage)
    assert store.initialize().success

    backfilled = store.get_or_create("7350", SOLID_MAGNESIUM).unwrap()
    assert backfilled.barcode == "7350"
    assert backfilled.meta.verified is True

    corrected = store.update("7350", {"servingsPerContainer": 90}).unwrap()
    assert corrected.meta.verified is True

    merged = store.merge("7350", {"price": {"value": 249}}, "ai").unwrap()
    assert merged.price.value == 249
    assert merged.meta.verified is True
    assert store.get_by_barcode("7350").unwrap().meta.verified is True
