"""Models exchanged with classification collaborators."""

from dataclasses import dataclass


@dataclass(frozen=True)
class CategoryResult:
    """Category guess reported by a classifier."""

    category: str
    sub_category: str
    confidence: float
    reasoning: str | None = None
