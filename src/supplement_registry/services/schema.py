"""Schema validation for supplement records."""

from collections.abc import Mapping

from pydantic import ValidationError as PydanticValidationError

from supplement_registry.domain.errors import FieldIssue, ValidationError
from supplement_registry.domain.records import SupplementRecord
from supplement_registry.domain.results import Result


def validate(candidate: object) -> Result[SupplementRecord]:
    """Validate a candidate payload against the current record schema.

    Invalid input never raises; the failed result lists every violated field.
    """
    if isinstance(candidate, SupplementRecord):
        candidate = candidate.model_dump(by_alias=True)
    if not isinstance(candidate, Mapping):
        return Result.fail(
            ValidationError([FieldIssue("record", "Input should be an object")])
        )
    try:
        record = SupplementRecord.model_validate(dict(candidate))
    except PydanticValidationError as exc:
        return Result.fail(ValidationError(_issues_from(exc)))
    return Result.ok(record)


def derive_price_per_serving(
    value: float | None, servings_per_container: float | None
) -> float | None:
    """Return the price of one serving, rounded to cents, when both are known."""
    if value is None or not servings_per_container:
        return None
    return round(value / servings_per_container, 2)


def _issues_from(exc: PydanticValidationError) -> list[FieldIssue]:
    issues = []
    for error in exc.errors(include_url=False):
        path = ".".join(str(part) for part in error["loc"]) or "record"
        issues.append(FieldIssue(field=path, message=error["msg"]))
    return issues
