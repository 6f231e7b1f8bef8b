"""Contracts for category and quality collaborators."""

import logging
from collections.abc import Mapping, Sequence
from typing import Protocol

from pydantic import ValidationError as PydanticValidationError

from supplement_registry.domain.classification import CategoryResult
from supplement_registry.domain.records import (
    CATEGORIES,
    SUB_CATEGORIES,
    Quality,
    SupplementRecord,
)

_logger = logging.getLogger(__name__)


class CategoryClassifier(Protocol):
    """Pure function guessing a category from a name and ingredient list."""

    def classify(
        self, product_name: str, ingredients: Sequence[Mapping[str, object]]
    ) -> CategoryResult:
        """Return the best category guess with a confidence in 0..1."""


class QualityAnalyzer(Protocol):
    """Pure function scoring a possibly incomplete record."""

    def analyze(self, record: SupplementRecord) -> Mapping[str, object]:
        """Return underDosed, overDosed, fillerRisk and bioavailability."""


def classify_safely(
    classifier: CategoryClassifier | None,
    product_name: str,
    ingredients: Sequence[Mapping[str, object]],
) -> tuple[CategoryResult | None, str | None]:
    """Run the classifier and report a failure as a warning."""
    if classifier is None:
        return None, None
    try:
        result = classifier.classify(product_name, ingredients)
    except Exception as exc:
        _logger.warning("Category classification failed for %s: %s", product_name, exc)
        return None, f"category classification failed: {exc}"
    if result.category not in CATEGORIES or result.sub_category not in SUB_CATEGORIES:
        _logger.warning(
            "Classifier returned unknown category %s/%s",
            result.category,
            result.sub_category,
        )
        return None, (
            "category classification returned unknown category "
            f"{result.category}/{result.sub_category}"
        )
    return result, None


def analyze_safely(
    analyzer: QualityAnalyzer | None, record: SupplementRecord
) -> tuple[Quality | None, str | None]:
    """Run the quality analyzer and report a failure as a warning."""
    if analyzer is None:
        return None, None
    try:
        payload = analyzer.analyze(record)
        return Quality.model_validate(dict(payload)), None
    except PydanticValidationError as exc:
        _logger.warning("Quality analyzer returned an invalid payload: %s", exc)
        return None, "quality analysis returned an invalid payload"
    except Exception as exc:
        _logger.warning("Quality analysis failed for %s: %s", record.product_name, exc)
        return None, f"quality analysis failed: {exc}"
