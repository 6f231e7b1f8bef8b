"""Schema migration for persisted supplement records."""

import logging
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from supplement_registry.domain.backups import BackupHandle
from supplement_registry.domain.errors import MigrationError
from supplement_registry.domain.records import (
    FORMS,
    RECORD_FIELDS,
    SCHEMA_VERSION,
    UNITS,
    UNKNOWN_BRAND,
    UNKNOWN_PRODUCT,
    SupplementRecord,
)
from supplement_registry.services.classification import (
    CategoryClassifier,
    classify_safely,
)
from supplement_registry.services.merge import DEFAULT_CONFIDENCE_THRESHOLD
from supplement_registry.services.persistence import (
    Storage,
    decode_container,
    encode_container,
)
from supplement_registry.services.schema import derive_price_per_serving, validate

DEFAULT_CURRENCY = "SEK"

_logger = logging.getLogger(__name__)

_VERSION_KEYS = ("schemaVersion", "_schemaVersion")
_SOURCE_ALIASES = {"openfoodfacts": "external-catalog"}

_VITAMIN_KEYWORDS = ("vitamin", "d3", "b12")
_HERB_KEYWORDS = ("ashwagandha", "ginkgo", "extract")

_FORM_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("capsule", ("capsule", "softgel", "kapsl", "kapsel")),
    ("tablet", ("tablet",)),
    ("powder", ("powder", "pulver")),
    ("liquid", ("liquid", "drops", "droppar", "flytande")),
    ("gummy", ("gummy", "gummies")),
)

_UNIT_ALIASES = {
    "g": "g",
    "gr": "g",
    "gram": "g",
    "grams": "g",
    "mg": "mg",
    "mcg": "mcg",
    "ug": "mcg",
    "µg": "mcg",
    "μg": "mcg",
    "iu": "IU",
    "ie": "IU",
    "ml": "ml",
    "capsule": "capsule",
    "capsules": "capsule",
    "caps": "capsule",
    "softgel": "capsule",
    "softgels": "capsule",
    "kapsel": "capsule",
    "kapslar": "capsule",
    "tablet": "tablet",
    "tablets": "tablet",
    "tabs": "tablet",
    "tablett": "tablet",
    "tabletter": "tablet",
    "scoop": "scoop",
    "scoops": "scoop",
    "skopa": "scoop",
    "skopor": "scoop",
    "%": "%",
}
_AMOUNT_PATTERN = re.compile(r"(\d+(?:[.,]\d+)?)\s*([^\d\s(),;]+)?")


@dataclass(frozen=True)
class MigrationResult:
    """Outcome of a migration pass over the persisted container."""

    migrated_count: int
    errors: list[MigrationError]
    backup: BackupHandle
    records: list[object]

    @property
    def success(self) -> bool:
        """Return whether every record migrated or validated cleanly."""
        return not self.errors


@dataclass(frozen=True)
class MigrationPlan:
    """Upgraded records computed from one read of the container."""

    source: bytes
    records: list[object]
    errors: list[MigrationError]
    migrated_count: int


@dataclass
class SchemaMigrator:
    """Upgrades the persisted container to the current schema version.

    ``plan`` only reads and may call the classifier. ``apply`` does the
    writing, so callers can hold a lock around the second step alone.
    """

    storage: Storage
    classifier: CategoryClassifier | None = None
    default_currency: str = DEFAULT_CURRENCY
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD

    def migrate(self) -> MigrationResult:
        """Back up, upgrade every record and write the batch once.

        Raises ``OSError`` when the backup or the write fails and
        ``CorruptContainerError`` when the container cannot be decoded.
        """
        return self.apply(self.plan())

    def plan(self) -> MigrationPlan:
        """Read the container and upgrade every record in memory."""
        source = self.storage.load()
        raw_records = decode_container(source)
        now = datetime.now(tz=UTC)

        records: list[object] = []
        errors: list[MigrationError] = []
        migrated_count = 0
        for index, raw in enumerate(raw_records):
            try:
                upgraded, changed = upgrade_record(
                    raw,
                    classifier=self.classifier,
                    currency=self.default_currency,
                    threshold=self.confidence_threshold,
                    now=now,
                )
            except MigrationError as exc:
                error = exc.at(index)
                _logger.warning("Migration failed: %s", error.message)
                errors.append(error)
                records.append(raw)
                continue
            if changed:
                migrated_count += 1
            records.append(upgraded)
        return MigrationPlan(
            source=source,
            records=records,
            errors=errors,
            migrated_count=migrated_count,
        )

    def apply(self, plan: MigrationPlan) -> MigrationResult:
        """Back up the container and write the planned records if any changed."""
        backup = self.storage.snapshot()
        if plan.migrated_count:
            self.storage.save(encode_container(plan.records))
            _logger.info(
                "Migrated %s records (backup %s)", plan.migrated_count, backup.name
            )
        return MigrationResult(
            migrated_count=plan.migrated_count,
            errors=plan.errors,
            backup=backup,
            records=plan.records,
        )


def detect_version(raw: object) -> int:
    """Return the declared schema version, or 0 for legacy records."""
    if not isinstance(raw, Mapping):
        return 0
    for key in _VERSION_KEYS:
        version = raw.get(key)
        if isinstance(version, int) and not isinstance(version, bool) and version >= 0:
            return version
    return 0


def upgrade_record(
    raw: object,
    *,
    classifier: CategoryClassifier | None = None,
    currency: str = DEFAULT_CURRENCY,
    threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    now: datetime | None = None,
) -> tuple[object, bool]:
    """Return the record in current-schema form and whether it was rewritten."""
    version = detect_version(raw)
    if version == 0:
        record = migrate_legacy_to_v1(
            raw,
            classifier=classifier,
            currency=currency,
            threshold=threshold,
            now=now,
        )
        return record.to_payload(), True
    if version != SCHEMA_VERSION:
        raise MigrationError(f"Unsupported schema version: {version}")
    changed = "schemaVersion" not in raw  # type: ignore[operator]
    payload = _rename_legacy_keys(raw) if changed else raw
    result = validate(payload)
    if not result.success:
        raise MigrationError(result.error.message)
    return (result.unwrap().to_payload() if changed else raw), changed


def migrate_legacy_to_v1(
    raw: object,
    *,
    classifier: CategoryClassifier | None = None,
    currency: str = DEFAULT_CURRENCY,
    threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    now: datetime | None = None,
) -> SupplementRecord:
    """Transform an unversioned record into a version 1 record."""
    if not isinstance(raw, Mapping):
        raise MigrationError(
            f"Legacy record must be an object, found {type(raw).__name__}"
        )
    name = _text(raw.get("name")) or _text(raw.get("productName")) or UNKNOWN_PRODUCT
    ingredients = normalize_ingredients(raw.get("ingredients"))
    category, sub_category = _infer_category(
        name, ingredients, classifier, threshold
    )
    servings = _positive(parse_number(raw.get("servingsPerContainer")))
    price_value, price_currency = _legacy_price(raw.get("price"))
    if price_value is not None:
        price_currency = price_currency or currency

    payload = {
        "schemaVersion": SCHEMA_VERSION,
        "barcode": _text(raw.get("barcode")),
        "productName": name,
        "brand": _text(raw.get("brand")) or UNKNOWN_BRAND,
        "category": category,
        "subCategory": sub_category,
        "form": guess_form(raw),
        "servingsPerContainer": servings,
        "servingSize": parse_serving_size(raw.get("servingSize")),
        "ingredients": ingredients,
        "price": {
            "value": price_value,
            "currency": price_currency,
            "pricePerServing": derive_price_per_serving(price_value, servings),
        },
        "quality": {
            "underDosed": None,
            "overDosed": None,
            "fillerRisk": None,
            "bioavailability": None,
        },
        "meta": {
            "source": "ai",
            "verified": False,
            "lastUpdated": now or datetime.now(tz=UTC),
            "sourceMap": {},
        },
    }
    result = validate(payload)
    if not result.success:
        raise MigrationError(result.error.message)
    return result.unwrap()


def guess_category(name: str, ingredient_names: Sequence[str]) -> str:
    """Conservative keyword guess used when the classifier is missing or unsure."""
    combined = " ".join([name, *ingredient_names]).lower()
    if any(keyword in combined for keyword in _VITAMIN_KEYWORDS):
        return "vitamin"
    if any(keyword in combined for keyword in _HERB_KEYWORDS):
        return "herb"
    return "supplement"


def guess_form(raw: Mapping[str, object]) -> str:
    """Infer the physical form from an explicit field or name keywords."""
    explicit = raw.get("form")
    if isinstance(explicit, str) and explicit.lower() in FORMS:
        return explicit.lower()
    combined = " ".join(
        str(raw.get(key) or "") for key in ("name", "productName", "form")
    ).lower()
    for form, keywords in _FORM_KEYWORDS:
        if any(keyword in combined for keyword in keywords):
            return form
    return "other"


def parse_number(value: object) -> float | None:
    """Coerce a loosely formatted number, returning None when it cannot be read."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None
    cleaned = re.sub(r"[^0-9.,-]", "", value)
    if "," in cleaned and "." not in cleaned:
        cleaned = cleaned.replace(",", ".")
    else:
        cleaned = cleaned.replace(",", "")
    try:
        return float(cleaned)
    except ValueError:
        return None


def parse_serving_size(value: object) -> dict[str, object]:
    """Parse a free-text or structured serving size into amount and unit."""
    if isinstance(value, Mapping):
        return {
            "amount": _non_negative(parse_number(value.get("amount"))),
            "unit": normalize_unit(value.get("unit")),
        }
    if isinstance(value, int | float) and not isinstance(value, bool):
        return {"amount": _non_negative(parse_number(value)), "unit": None}
    if not isinstance(value, str) or not value.strip():
        return {"amount": None, "unit": None}
    amount, unit = _amount_and_unit(value)
    return {"amount": amount, "unit": unit}


def normalize_unit(value: object) -> str | None:
    """Map a unit spelling onto the canonical unit vocabulary."""
    if not isinstance(value, str):
        return None
    token = value.strip().rstrip(".:")
    if token in UNITS:
        return token
    return _UNIT_ALIASES.get(token.lower())


def normalize_ingredients(value: object) -> list[dict[str, object]]:
    """Convert a legacy ingredient list or name-keyed mapping to the canonical list."""
    if isinstance(value, Mapping):
        ingredients = []
        for name, data in value.items():
            if isinstance(data, Mapping) and data.get("isIncluded") is False:
                continue
            ingredients.append(_ingredient(name, data))
        return ingredients
    if isinstance(value, list):
        ingredients = []
        for item in value:
            if isinstance(item, Mapping):
                ingredients.append(_ingredient(item.get("name"), item))
            elif isinstance(item, str) and item.strip():
                ingredients.append(_ingredient(item, None))
        return ingredients
    return []


def _ingredient(name: object, data: object) -> dict[str, object]:
    dosage: float | None = None
    unit: str | None = None
    is_standardized = False
    standardized_to: str | None = None
    if isinstance(data, Mapping):
        raw_dosage = _first_present(data, ("dosage", "amount", "dosage_mg"))
        if isinstance(raw_dosage, str):
            dosage, unit = _amount_and_unit(raw_dosage)
        else:
            dosage = _non_negative(parse_number(raw_dosage))
        unit = normalize_unit(data.get("unit")) or unit
        if unit is None and dosage is not None and "dosage_mg" in data:
            unit = "mg"
        is_standardized = data.get("isStandardized") is True
        standardized_to = _text(data.get("standardizedTo"))
    elif isinstance(data, str):
        dosage, unit = _amount_and_unit(data)
    else:
        dosage = _non_negative(parse_number(data))
    return {
        "name": _text(name) or "Unknown Ingredient",
        "dosage": dosage,
        "unit": unit,
        "isStandardized": is_standardized,
        "standardizedTo": standardized_to,
    }


def _amount_and_unit(text: str) -> tuple[float | None, str | None]:
    match = _AMOUNT_PATTERN.search(text)
    amount = None
    unit = None
    if match:
        amount = _non_negative(parse_number(match.group(1)))
        if match.group(2):
            unit = normalize_unit(match.group(2))
    if unit is None:
        for word in re.findall(r"[^\W\d_]+|%", text.lower()):
            unit = normalize_unit(word)
            if unit is not None:
                break
    return amount, unit


def _infer_category(
    name: str,
    ingredients: list[dict[str, object]],
    classifier: CategoryClassifier | None,
    threshold: float,
) -> tuple[str, str]:
    result, _ = classify_safely(classifier, name, ingredients)
    if result is not None and result.confidence > threshold:
        return result.category, result.sub_category
    ingredient_names = [str(item["name"]) for item in ingredients]
    category = guess_category(name, ingredient_names)
    # A weak verdict still names the sub-category when it agrees.
    if result is not None and result.category == category:
        return category, result.sub_category
    return category, "other"


def _legacy_price(value: object) -> tuple[float | None, str | None]:
    if isinstance(value, Mapping):
        return _non_negative(parse_number(value.get("value"))), _text(
            value.get("currency")
        )
    return _non_negative(parse_number(value)), None


def _rename_legacy_keys(raw: Mapping[str, object]) -> dict[str, object]:
    payload = {key: value for key, value in raw.items() if key != "_schemaVersion"}
    payload["schemaVersion"] = raw.get("_schemaVersion")
    meta = payload.get("meta")
    if isinstance(meta, Mapping):
        meta = dict(meta)
        source = meta.get("source")
        meta["source"] = _SOURCE_ALIASES.get(source, source)
        source_map = meta.get("sourceMap")
        if isinstance(source_map, Mapping):
            meta["sourceMap"] = {
                field: _SOURCE_ALIASES.get(tag, tag)
                for field, tag in source_map.items()
                if field in RECORD_FIELDS
            }
        elif source_map is None:
            meta.pop("sourceMap", None)
        payload["meta"] = meta
    return payload


def _first_present(data: Mapping[str, object], keys: tuple[str, ...]) -> object:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _text(value: object) -> str | None:
    if isinstance(value, int | float) and not isinstance(value, bool):
        value = str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _non_negative(value: float | None) -> float | None:
    if value is None or value < 0:
        return None
    return value


def _positive(value: float | None) -> float | None:
    if value is None or value <= 0:
        return None
    return value
