"""Identity resolution for supplement records."""

import hashlib
from collections.abc import Mapping, Sequence

from supplement_registry.domain.records import (
    UNKNOWN_BRAND,
    UNKNOWN_PRODUCT,
    SupplementRecord,
)

Candidate = SupplementRecord | Mapping[str, object]


def normalized_key(record: Candidate) -> str:
    """Return the fallback identity of a record or candidate.

    Candidates are keyed with the defaults a new record would receive, so a
    candidate and the record created from it always share a key.
    """
    brand, name, primary, form = _identity_parts(record)
    digest = hashlib.md5(
        f"{brand}-{name}-{primary}-{form}".encode(), usedforsecurity=False
    )
    return digest.hexdigest()[:16]


def find_existing(
    records: Sequence[SupplementRecord], candidate: Candidate
) -> SupplementRecord | None:
    """Locate an existing record by barcode, then by normalized key."""
    barcode = _barcode_of(candidate)
    if barcode:
        for record in records:
            if record.barcode == barcode:
                return record
    matches = find_key_matches(records, candidate)
    return matches[0] if matches else None


def find_key_matches(
    records: Sequence[SupplementRecord], candidate: Candidate
) -> list[SupplementRecord]:
    """Return every record sharing the candidate's key, in insertion order."""
    key = normalized_key(candidate)
    return [record for record in records if normalized_key(record) == key]


def _identity_parts(record: Candidate) -> tuple[str, str, str, str]:
    if isinstance(record, SupplementRecord):
        primary = record.ingredients[0].name if record.ingredients else ""
        return (
            _normalize(record.brand),
            _normalize(record.product_name),
            _normalize(primary),
            record.form,
        )
    ingredients = record.get("ingredients")
    primary = ""
    if isinstance(ingredients, Sequence) and ingredients:
        first = ingredients[0]
        if isinstance(first, Mapping):
            primary = str(first.get("name") or "")
    return (
        _normalize(_text_or(record.get("brand"), UNKNOWN_BRAND)),
        _normalize(_text_or(record.get("productName"), UNKNOWN_PRODUCT)),
        _normalize(primary),
        str(record.get("form") or "other"),
    )


def _text_or(value: object, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value
    return default


def _barcode_of(candidate: Candidate) -> str | None:
    if isinstance(candidate, SupplementRecord):
        return candidate.barcode
    barcode = candidate.get("barcode")
    return str(barcode) if barcode else None


def _normalize(value: str) -> str:
    return value.lower().strip()
