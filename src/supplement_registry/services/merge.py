"""Source-precedence merge policy and user corrections."""

from collections.abc import Mapping

from supplement_registry.domain.classification import CategoryResult
from supplement_registry.domain.errors import FieldIssue, ValidationError
from supplement_registry.domain.records import (
    FIELD_DEFAULTS,
    RECORD_FIELDS,
    SupplementRecord,
)
from supplement_registry.domain.results import Result
from supplement_registry.services.schema import derive_price_per_serving, validate

USER = "user"
AUTO_DETECTED = "auto-detected"
COMBINED = "combined"
MERGE_SOURCES = ("external-catalog", "ai", "user")
DEFAULT_CONFIDENCE_THRESHOLD = 0.8

_NESTED_FIELDS = frozenset(
    {"servingSize", "price", "quality", "preWorkoutData", "herbData", "proteinData"}
)
_DERIVED_KEYS = {"price": frozenset({"pricePerServing"})}
_LOCKED_FIELDS = frozenset({"barcode", "schemaVersion", "meta"})


def merge_sources(
    base: SupplementRecord,
    incoming: SupplementRecord | Mapping[str, object],
    incoming_source: str,
) -> Result[SupplementRecord]:
    """Fill gaps in ``base`` from another source without overriding known data.

    A field is taken from ``incoming`` only when ``base`` has no value for it
    (null, empty, or an untouched creation default). Fields a user corrected
    are never changed by other sources. Ingredients merge by name.
    """
    if incoming_source not in MERGE_SOURCES:
        return Result.fail(
            ValidationError(
                [FieldIssue("source", f"Unsupported merge source: {incoming_source}")]
            )
        )
    incoming_result = _incoming_payload(base, incoming)
    if not incoming_result.success:
        return incoming_result  # type: ignore[return-value]
    supplied = incoming_result.unwrap()

    current = base.to_payload()
    source_map: dict[str, str] = dict(current["meta"]["sourceMap"])
    changed: list[str] = []
    for field, new_value in supplied.items():
        if source_map.get(field) == USER and incoming_source != USER:
            continue
        old_value = current[field]
        if field == "ingredients":
            merged = _merge_ingredients(old_value, new_value)
        elif field in _NESTED_FIELDS and isinstance(old_value, dict):
            merged = _fill_nested(field, old_value, new_value)
        elif _is_unset(field, old_value, source_map) and not _is_empty(new_value):
            merged = new_value
        else:
            continue
        if merged != old_value:
            current[field] = merged
            source_map[field] = incoming_source
            changed.append(field)

    if not changed:
        return Result.ok(base)
    current["meta"]["sourceMap"] = source_map
    current["meta"]["source"] = _merged_source(current["meta"]["source"], source_map)
    result = validate(current)
    if not result.success:
        return result
    return Result.ok(refresh_price_per_serving(result.unwrap(), base))


def apply_correction(
    existing: SupplementRecord,
    updates: Mapping[str, object],
    classification: CategoryResult | None = None,
    threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
) -> Result[SupplementRecord]:
    """Force-write user corrections and mark the record verified.

    ``classification`` is the classifier's verdict on the corrected
    ingredient list; it is adopted only when the correction leaves the
    category alone and the confidence exceeds ``threshold``.
    """
    if not isinstance(updates, Mapping):
        return Result.fail(
            ValidationError([FieldIssue("record", "Updates should be an object")])
        )
    issues = [
        FieldIssue(field, "Field cannot be corrected")
        for field in updates
        if field in _LOCKED_FIELDS
    ]
    issues.extend(
        FieldIssue(field, "Unknown field")
        for field in updates
        if field not in RECORD_FIELDS and field not in _LOCKED_FIELDS
    )
    if issues:
        return Result.fail(ValidationError(issues))

    current = existing.to_payload()
    source_map: dict[str, str] = dict(current["meta"]["sourceMap"])
    for field, value in updates.items():
        old_value = current[field]
        if field in _NESTED_FIELDS and isinstance(old_value, dict):
            current[field] = (
                {**old_value, **value} if isinstance(value, Mapping) else value
            )
        else:
            current[field] = value
        source_map[field] = USER

    if (
        needs_category_detection(updates)
        and classification is not None
        and classification.confidence > threshold
    ):
        current["category"] = classification.category
        source_map["category"] = AUTO_DETECTED
        if "subCategory" not in updates:
            current["subCategory"] = classification.sub_category
            source_map["subCategory"] = AUTO_DETECTED

    current["meta"]["sourceMap"] = source_map
    current["meta"]["source"] = _merged_source(current["meta"]["source"], source_map)
    current["meta"]["verified"] = True
    result = validate(current)
    if not result.success:
        return result
    return Result.ok(refresh_price_per_serving(result.unwrap(), existing))


def needs_category_detection(updates: Mapping[str, object]) -> bool:
    """Return whether a correction should consult the category classifier."""
    return "ingredients" in updates and "category" not in updates


def refresh_price_per_serving(
    record: SupplementRecord, previous: SupplementRecord | None = None
) -> SupplementRecord:
    """Recompute the derived per-serving price when its inputs changed.

    On an update where either input changed, an unknown input clears the
    stored per-serving price. A new record keeps a supplied value until
    both inputs are known.
    """
    if (
        previous is not None
        and record.price.value == previous.price.value
        and record.servings_per_container == previous.servings_per_container
    ):
        return record
    derived = derive_price_per_serving(
        record.price.value, record.servings_per_container
    )
    if derived == record.price.price_per_serving:
        return record
    if derived is None and previous is None:
        return record
    price = record.price.model_copy(update={"price_per_serving": derived})
    return record.model_copy(update={"price": price})


def _incoming_payload(
    base: SupplementRecord, incoming: SupplementRecord | Mapping[str, object]
) -> Result[dict[str, object]]:
    """Validate an incoming observation and keep only the fields it supplied."""
    if isinstance(incoming, SupplementRecord):
        payload = incoming.to_payload()
        return Result.ok({field: payload[field] for field in RECORD_FIELDS})
    if not isinstance(incoming, Mapping):
        return Result.fail(
            ValidationError([FieldIssue("record", "Input should be an object")])
        )
    supplied = [field for field in incoming if field not in _LOCKED_FIELDS]
    partial: dict[str, object] = {field: incoming[field] for field in supplied}
    partial["meta"] = base.to_payload()["meta"]
    if "barcode" in incoming:
        partial["barcode"] = incoming["barcode"]
        supplied.append("barcode")
    result = validate(partial)
    if not result.success:
        return Result.fail(result.error)  # type: ignore[arg-type]
    payload = result.unwrap().to_payload()
    return Result.ok({field: payload[field] for field in supplied})


def _merge_ingredients(
    base: list[dict[str, object]], incoming: list[dict[str, object]]
) -> list[dict[str, object]]:
    merged = [dict(item) for item in base]
    by_name = {_ingredient_key(item): item for item in merged}
    for item in incoming:
        existing = by_name.get(_ingredient_key(item))
        if existing is None:
            added = dict(item)
            merged.append(added)
            by_name[_ingredient_key(added)] = added
            continue
        if existing["dosage"] is None and item["dosage"] is not None:
            existing["dosage"] = item["dosage"]
        if existing["unit"] is None and item["unit"] is not None:
            existing["unit"] = item["unit"]
    return merged


def _fill_nested(
    field: str, base: dict[str, object], incoming: object
) -> dict[str, object]:
    if not isinstance(incoming, Mapping):
        return base
    derived = _DERIVED_KEYS.get(field, frozenset())
    filled = dict(base)
    for key, value in incoming.items():
        if key in derived:
            continue
        if filled.get(key) is None and value is not None:
            filled[key] = value
    return filled


def _merged_source(current: str, source_map: Mapping[str, str]) -> str:
    contributors = {tag for tag in source_map.values() if tag in MERGE_SOURCES}
    if current in MERGE_SOURCES:
        contributors.add(current)
    if current == COMBINED or len(contributors) > 1:
        return COMBINED
    return next(iter(contributors), current)


def _is_unset(field: str, value: object, source_map: Mapping[str, str]) -> bool:
    if _is_empty(value):
        return True
    return (
        field in FIELD_DEFAULTS
        and value == FIELD_DEFAULTS[field]
        and field not in source_map
    )


def _is_empty(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, list | dict):
        return not value
    return False


def _ingredient_key(item: Mapping[str, object]) -> str:
    return str(item["name"]).strip().casefold()
