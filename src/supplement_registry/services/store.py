"""Supplement store: the single gateway to persisted supplement records."""

import logging
import threading
from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from supplement_registry.domain.backups import BackupHandle
from supplement_registry.domain.errors import (
    FieldIssue,
    InitializationError,
    NotFoundError,
    PersistenceError,
    StoreError,
    ValidationError,
)
from supplement_registry.domain.records import (
    FIELD_DEFAULTS,
    RECORD_FIELDS,
    SupplementRecord,
)
from supplement_registry.domain.results import Result
from supplement_registry.domain.stats import (
    Pagination,
    SearchFilters,
    SearchPage,
    StoreStats,
)
from supplement_registry.services.classification import (
    CategoryClassifier,
    QualityAnalyzer,
    analyze_safely,
    classify_safely,
)
from supplement_registry.services.identity import find_key_matches
from supplement_registry.services.merge import (
    AUTO_DETECTED,
    DEFAULT_CONFIDENCE_THRESHOLD,
    MERGE_SOURCES,
    apply_correction,
    merge_sources,
    needs_category_detection,
    refresh_price_per_serving,
)
from supplement_registry.services.migration import (
    DEFAULT_CURRENCY,
    MigrationResult,
    SchemaMigrator,
)
from supplement_registry.services.persistence import (
    CorruptContainerError,
    Storage,
    encode_container,
)
from supplement_registry.services.schema import validate

DEFAULT_MAX_BACKUPS = 10
MERGE_AMBIGUOUS = "MergeAmbiguous"

_logger = logging.getLogger(__name__)
_CANDIDATE_SKIP_KEYS = frozenset({"barcode", "schemaVersion", "meta"})
_MIGRATION_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class _State:
    records: tuple[SupplementRecord, ...] = ()
    quarantine: tuple[object, ...] = ()


@dataclass
class SupplementStore:
    """Owns the canonical records, the persisted container and its backups.

    Mutations are serialized by a lock and committed in a fixed order:
    validate, back up, write, swap the in-memory state, prune backups. Readers
    take the current immutable state without locking.
    """

    storage: Storage
    classifier: CategoryClassifier | None = None
    quality_analyzer: QualityAnalyzer | None = None
    max_backups: int = DEFAULT_MAX_BACKUPS
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    default_currency: str = DEFAULT_CURRENCY
    clock: Callable[[], datetime] = _utcnow
    _state: _State = field(default_factory=_State, init=False, repr=False)
    _initialized: bool = field(default=False, init=False, repr=False)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )

    @property
    def initialized(self) -> bool:
        """Return whether the store is ready to serve requests."""
        return self._initialized

    def initialize(self) -> Result[MigrationResult]:
        """Create the container if needed, migrate it and load every record."""
        with self._lock:
            try:
                if not self.storage.exists():
                    _logger.info("Creating empty supplement container")
                    self.storage.save(encode_container([]))
            except OSError as exc:
                _logger.error("Failed to create supplement container: %s", exc)
                return Result.fail(
                    InitializationError(f"Could not create container: {exc}")
                )
        result = self._migrate_and_load(InitializationError, initializing=True)
        if result.success:
            state = self._state
            _logger.info(
                "Supplement store ready with %s records (%s quarantined)",
                len(state.records),
                len(state.quarantine),
            )
        return result

    def close(self) -> Result[None]:
        """Release the in-memory state; later calls need ``initialize`` again."""
        with self._lock:
            self._state = _State()
            self._initialized = False
        _logger.info("Supplement store closed")
        return Result.ok(None)

    def migrate(self) -> Result[MigrationResult]:
        """Re-run schema migration over the container and reload it."""
        error = self._not_ready()
        if error is not None:
            return Result.fail(error)
        return self._migrate_and_load(PersistenceError)

    def get_or_create(
        self,
        barcode: str | None,
        candidate: Mapping[str, object] | None = None,
        source: str = "user",
    ) -> Result[SupplementRecord]:
        """Return the record for a product, creating it from ``candidate``.

        Lookup goes by barcode first and by normalized key second. A key
        match without a barcode gains the requested one. New records get
        safe defaults, a detected category when none was given and a
        quality analysis.
        """
        error = self._not_ready()
        if error is not None:
            return Result.fail(error)
        barcode = _clean_barcode(barcode)
        if candidate is not None and not isinstance(candidate, Mapping):
            return Result.fail(
                ValidationError([FieldIssue("record", "Input should be an object")])
            )
        if barcode is None and candidate is not None:
            barcode = _clean_barcode(candidate.get("barcode"))

        existing = _by_barcode(self._state.records, barcode)
        if existing is not None:
            return Result.ok(existing)
        if candidate is None:
            return Result.fail(NotFoundError(barcode))
        if source not in MERGE_SOURCES:
            return Result.fail(
                ValidationError([FieldIssue("source", f"Unsupported source: {source}")])
            )

        lookup = {**candidate, "barcode": barcode}
        prepared: Result[SupplementRecord] | None = None
        if not find_key_matches(self._state.records, lookup):
            prepared = self._prepare_record(barcode, candidate, source)
            if not prepared.success:
                return prepared

        with self._lock:
            records = self._state.records
            existing = _by_barcode(records, barcode)
            if existing is not None:
                return Result.ok(existing)
            matches = find_key_matches(records, lookup)
            if matches:
                return self._adopt_key_match(records, matches, barcode)
            if prepared is None:
                # The key match seen before locking was deleted meanwhile.
                prepared = self._prepare_record(barcode, candidate, source)
                if not prepared.success:
                    return prepared
            record = prepared.unwrap()
            committed = self._commit(records + (record,))
            if committed is not None:
                return Result.fail(committed, prepared.warnings)
            _logger.info("Created supplement %s (%s)", record.product_name, barcode)
            return Result.ok(record, prepared.warnings)

    def get_by_barcode(self, barcode: str) -> Result[SupplementRecord]:
        """Return the record holding ``barcode``."""
        error = self._not_ready()
        if error is not None:
            return Result.fail(error)
        record = _by_barcode(self._state.records, _clean_barcode(barcode))
        if record is None:
            return Result.fail(NotFoundError(barcode))
        return Result.ok(record)

    def update(
        self, barcode: str, updates: Mapping[str, object]
    ) -> Result[SupplementRecord]:
        """Apply a user correction and mark the record verified."""
        error = self._not_ready()
        if error is not None:
            return Result.fail(error)
        snapshot = _by_barcode(self._state.records, _clean_barcode(barcode))
        if snapshot is None:
            return Result.fail(NotFoundError(barcode))

        classification = None
        warnings: list[str] = []
        if isinstance(updates, Mapping) and needs_category_detection(updates):
            name = updates.get("productName")
            classification, warning = classify_safely(
                self.classifier,
                name if isinstance(name, str) and name else snapshot.product_name,
                _ingredient_mappings(updates.get("ingredients")),
            )
            if warning:
                warnings.append(warning)

        with self._lock:
            records = self._state.records
            index = _index_of(records, snapshot.barcode)
            if index is None:
                return Result.fail(NotFoundError(barcode), warnings)
            current = records[index]
            corrected = apply_correction(
                current,
                updates,
                classification=classification,
                threshold=self.confidence_threshold,
            )
            if not corrected.success:
                return corrected.with_warnings(warnings)
            record = self._touch(corrected.unwrap(), current)
            committed = self._commit(_replace(records, index, record))
            if committed is not None:
                return Result.fail(committed, warnings)
            _logger.info("Corrected supplement %s", barcode)
            return Result.ok(record, warnings)

    def merge(
        self, barcode: str, candidate: Mapping[str, object], source: str
    ) -> Result[SupplementRecord]:
        """Fill gaps in an existing record from another source's observation."""
        error = self._not_ready()
        if error is not None:
            return Result.fail(error)
        with self._lock:
            records = self._state.records
            index = _index_of(records, _clean_barcode(barcode))
            if index is None:
                return Result.fail(NotFoundError(barcode))
            current = records[index]
            merged = merge_sources(current, candidate, source)
            if not merged.success:
                return merged
            if merged.data is current:
                return merged
            record = self._touch(merged.unwrap(), current)
            committed = self._commit(_replace(records, index, record))
            if committed is not None:
                return Result.fail(committed)
            _logger.info("Merged %s data into supplement %s", source, barcode)
            return Result.ok(record)

    def delete(self, barcode: str) -> Result[SupplementRecord]:
        """Remove the record holding ``barcode`` and return it."""
        error = self._not_ready()
        if error is not None:
            return Result.fail(error)
        with self._lock:
            records = self._state.records
            index = _index_of(records, _clean_barcode(barcode))
            if index is None:
                return Result.fail(NotFoundError(barcode))
            removed = records[index]
            committed = self._commit(records[:index] + records[index + 1 :])
            if committed is not None:
                return Result.fail(committed)
            _logger.info("Deleted supplement %s", barcode)
            return Result.ok(removed)

    def search(
        self,
        query: str | None = None,
        filters: SearchFilters | None = None,
        pagination: Pagination | None = None,
    ) -> Result[SearchPage]:
        """Substring search over names, brands and ingredient names."""
        error = self._not_ready()
        if error is not None:
            return Result.fail(error)
        needle = (query or "").strip().casefold()
        filters = filters or SearchFilters()
        matches = [
            record
            for record in self._state.records
            if _matches_text(record, needle) and _matches_filters(record, filters)
        ]
        window = (pagination or Pagination()).clamp()
        items = matches[window.offset : window.offset + window.limit]
        return Result.ok(
            SearchPage(
                items=items,
                total=len(matches),
                offset=window.offset,
                limit=window.limit,
            )
        )

    def stats(self) -> Result[StoreStats]:
        """Return aggregate counts over the current records."""
        error = self._not_ready()
        if error is not None:
            return Result.fail(error)
        records = self._state.records
        return Result.ok(
            StoreStats(
                total=len(records),
                verified=sum(1 for record in records if record.meta.verified),
                with_barcode=sum(1 for record in records if record.barcode),
                last_updated=max(
                    (record.meta.last_updated for record in records), default=None
                ),
                by_category=dict(Counter(record.category for record in records)),
                by_source=dict(Counter(record.meta.source for record in records)),
            )
        )

    def export(self) -> Result[list[SupplementRecord]]:
        """Return every canonical record in insertion order."""
        error = self._not_ready()
        if error is not None:
            return Result.fail(error)
        return Result.ok(list(self._state.records))

    def backups(self) -> Result[list[BackupHandle]]:
        """Return retained backups, newest first."""
        try:
            return Result.ok(self.storage.list_snapshots())
        except OSError as exc:
            _logger.error("Failed to list backups: %s", exc)
            return Result.fail(PersistenceError(f"Could not list backups: {exc}"))

    def _not_ready(self) -> StoreError | None:
        if self._initialized:
            return None
        return InitializationError("Supplement store is not initialized")

    def _migrate_and_load(
        self, write_error: type[StoreError], initializing: bool = False
    ) -> Result[MigrationResult]:
        """Migrate the container and load it into memory.

        Records are upgraded and classified outside the lock. Under the lock
        the container is re-read; if another writer changed it meanwhile the
        plan is discarded and rebuilt. Backup and write failures are reported
        as ``write_error``.
        """
        migrator = SchemaMigrator(
            storage=self.storage,
            classifier=self.classifier,
            default_currency=self.default_currency,
            confidence_threshold=self.confidence_threshold,
        )
        for _ in range(_MIGRATION_ATTEMPTS):
            try:
                plan = migrator.plan()
            except (OSError, CorruptContainerError) as exc:
                _logger.error("Failed to load supplement container: %s", exc)
                return Result.fail(
                    InitializationError(f"Could not load supplements: {exc}")
                )
            with self._lock:
                try:
                    current = self.storage.load()
                except OSError as exc:
                    _logger.error("Failed to load supplement container: %s", exc)
                    return Result.fail(
                        InitializationError(f"Could not load supplements: {exc}")
                    )
                if current != plan.source:
                    _logger.info("Container changed during migration, retrying")
                    continue
                try:
                    migration = migrator.apply(plan)
                except OSError as exc:
                    _logger.error("Failed to persist migration: %s", exc)
                    return Result.fail(
                        write_error(f"Could not persist migration: {exc}")
                    )
                warnings = self._load_migrated(migration)
                if initializing:
                    self._initialized = True
                self._prune()
                return Result.ok(migration, warnings)
        return Result.fail(
            write_error("Container kept changing while it was being migrated")
        )

    def _load_migrated(self, migration: MigrationResult) -> list[str]:
        """Swap in the migrated records, quarantining items that cannot load."""
        failed = {error.index for error in migration.errors}
        warnings = [error.message for error in migration.errors]
        records: list[SupplementRecord] = []
        quarantine: list[object] = []
        seen: set[str] = set()
        for index, raw in enumerate(migration.records):
            if index in failed:
                quarantine.append(raw)
                continue
            validated = validate(raw)
            if not validated.success:
                _logger.warning("Quarantined item %s: %s", index, validated.error)
                warnings.append(f"Item {index}: {validated.error.message}")
                quarantine.append(raw)
                continue
            record = validated.unwrap()
            if record.barcode is not None and record.barcode in seen:
                _logger.warning(
                    "Quarantined item %s: duplicate barcode %s", index, record.barcode
                )
                warnings.append(f"Item {index}: duplicate barcode {record.barcode}")
                quarantine.append(raw)
                continue
            if record.barcode is not None:
                seen.add(record.barcode)
            records.append(record)

        self._state = _State(records=tuple(records), quarantine=tuple(quarantine))
        return warnings

    def _prepare_record(
        self, barcode: str | None, candidate: Mapping[str, object], source: str
    ) -> Result[SupplementRecord]:
        """Build a validated record from a candidate; collaborators may warn."""
        payload: dict[str, object] = {
            key: value
            for key, value in candidate.items()
            if key not in _CANDIDATE_SKIP_KEYS
            and not (key in FIELD_DEFAULTS and _is_blank(value))
        }
        payload["barcode"] = barcode
        source_map = {
            key: source
            for key, value in payload.items()
            if key in RECORD_FIELDS and value is not None
        }
        warnings: list[str] = []

        if "category" not in payload:
            name = payload.get("productName")
            result, warning = classify_safely(
                self.classifier,
                name if isinstance(name, str) else FIELD_DEFAULTS["productName"],
                _ingredient_mappings(payload.get("ingredients")),
            )
            if warning:
                warnings.append(warning)
            if result is not None and result.confidence > self.confidence_threshold:
                payload["category"] = result.category
                source_map["category"] = AUTO_DETECTED
                if "subCategory" not in payload:
                    payload["subCategory"] = result.sub_category
                    source_map["subCategory"] = AUTO_DETECTED

        price = payload.get("price")
        if (
            isinstance(price, Mapping)
            and price.get("value") is not None
            and not price.get("currency")
        ):
            payload["price"] = {**price, "currency": self.default_currency}

        payload["meta"] = {
            "source": source,
            "verified": False,
            "lastUpdated": self.clock(),
            "sourceMap": source_map,
        }
        validated = validate(payload)
        if not validated.success:
            return validated.with_warnings(warnings)
        record = refresh_price_per_serving(validated.unwrap())

        if "quality" not in payload:
            quality, warning = analyze_safely(self.quality_analyzer, record)
            if warning:
                warnings.append(warning)
            if quality is not None:
                record = record.model_copy(update={"quality": quality})
        return Result.ok(record, warnings)

    def _adopt_key_match(
        self,
        records: tuple[SupplementRecord, ...],
        matches: list[SupplementRecord],
        barcode: str | None,
    ) -> Result[SupplementRecord]:
        match = matches[0]
        warnings: list[str] = []
        if len(matches) > 1:
            _logger.warning(
                "%s records share the key of %s; using the first",
                len(matches),
                match.product_name,
            )
            warnings.append(
                f"{MERGE_AMBIGUOUS}: {len(matches)} records share this key"
            )
        if barcode is None or match.barcode == barcode:
            return Result.ok(match, warnings)
        if match.barcode is not None:
            _logger.warning(
                "Key match %s already holds barcode %s, not %s",
                match.product_name,
                match.barcode,
                barcode,
            )
            warnings.append(
                f"Barcode conflict: matching record holds barcode {match.barcode}"
            )
            return Result.ok(match, warnings)

        index = records.index(match)
        payload = match.to_payload()
        payload["barcode"] = barcode
        backfilled = self._touch(validate(payload).unwrap(), match)
        committed = self._commit(_replace(records, index, backfilled))
        if committed is not None:
            return Result.fail(committed, warnings)
        _logger.info("Backfilled barcode %s on %s", barcode, match.product_name)
        return Result.ok(backfilled, warnings)

    def _touch(
        self, record: SupplementRecord, previous: SupplementRecord
    ) -> SupplementRecord:
        """Stamp ``lastUpdated`` so it strictly increases across writes."""
        stamp = self.clock()
        if stamp <= previous.meta.last_updated:
            stamp = previous.meta.last_updated + timedelta(microseconds=1)
        meta = record.meta.model_copy(update={"last_updated": stamp})
        return record.model_copy(update={"meta": meta})

    def _commit(self, records: tuple[SupplementRecord, ...]) -> StoreError | None:
        """Persist ``records`` and swap them in; the caller holds the lock."""
        duplicate = _duplicate_barcode(records)
        if duplicate is not None:
            return ValidationError(
                [FieldIssue("barcode", f"Barcode {duplicate} is already in use")]
            )
        quarantine = self._state.quarantine
        payloads = [record.to_payload() for record in records] + list(quarantine)
        try:
            self.storage.snapshot()
            self.storage.save(encode_container(payloads))
        except OSError as exc:
            _logger.error("Failed to persist supplements: %s", exc)
            return PersistenceError(f"Could not persist supplements: {exc}")
        self._state = _State(records=records, quarantine=quarantine)
        self._prune()
        return None

    def _prune(self) -> None:
        try:
            deleted = self.storage.prune_snapshots(self.max_backups)
        except OSError as exc:
            _logger.warning("Failed to prune backups: %s", exc)
            return
        if deleted:
            _logger.debug("Pruned %s old backups", len(deleted))


def _clean_barcode(barcode: object) -> str | None:
    if not isinstance(barcode, str):
        return None
    barcode = barcode.strip()
    return barcode or None


def _by_barcode(
    records: Sequence[SupplementRecord], barcode: str | None
) -> SupplementRecord | None:
    index = _index_of(records, barcode)
    return records[index] if index is not None else None


def _index_of(records: Sequence[SupplementRecord], barcode: str | None) -> int | None:
    if barcode is None:
        return None
    for index, record in enumerate(records):
        if record.barcode == barcode:
            return index
    return None


def _replace(
    records: tuple[SupplementRecord, ...], index: int, record: SupplementRecord
) -> tuple[SupplementRecord, ...]:
    return records[:index] + (record,) + records[index + 1 :]


def _duplicate_barcode(records: Sequence[SupplementRecord]) -> str | None:
    seen: set[str] = set()
    for record in records:
        if record.barcode is None:
            continue
        if record.barcode in seen:
            return record.barcode
        seen.add(record.barcode)
    return None


def _ingredient_mappings(value: object) -> list[Mapping[str, object]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, Mapping)]


def _is_blank(value: object) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _matches_text(record: SupplementRecord, needle: str) -> bool:
    if not needle:
        return True
    haystack = [record.product_name, record.brand]
    haystack.extend(ingredient.name for ingredient in record.ingredients)
    return any(needle in text.casefold() for text in haystack)


def _matches_filters(record: SupplementRecord, filters: SearchFilters) -> bool:
    if filters.category is not None and record.category != filters.category:
        return False
    if (
        filters.brand is not None
        and record.brand.casefold() != filters.brand.strip().casefold()
    ):
        return False
    if filters.verified is not None and record.meta.verified != filters.verified:
        return False
    return True
