"""Domain models for searching and summarizing the store."""

from dataclasses import dataclass, field
from datetime import datetime

from supplement_registry.domain.records import SupplementRecord

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50


@dataclass(frozen=True)
class SearchFilters:
    """Equality filters applied after the text query."""

    category: str | None = None
    brand: str | None = None
    verified: bool | None = None


@dataclass(frozen=True)
class Pagination:
    """Offset/limit window over search results."""

    offset: int = 0
    limit: int = DEFAULT_PAGE_SIZE

    def clamp(self) -> "Pagination":
        """Return a window with a non-negative offset and a bounded limit."""
        return Pagination(
            offset=max(self.offset, 0),
            limit=min(max(self.limit, 1), MAX_PAGE_SIZE),
        )


@dataclass(frozen=True)
class SearchPage:
    """One page of search results with the total match count."""

    items: list[SupplementRecord]
    total: int
    offset: int
    limit: int

    @property
    def has_more(self) -> bool:
        """Return whether more results follow this page."""
        return self.offset + self.limit < self.total


@dataclass(frozen=True)
class StoreStats:
    """Aggregate counts over the store."""

    total: int
    verified: int
    with_barcode: int
    last_updated: datetime | None
    by_category: dict[str, int] = field(default_factory=dict)
    by_source: dict[str, int] = field(default_factory=dict)
