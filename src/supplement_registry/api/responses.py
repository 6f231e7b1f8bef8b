"""Response envelopes and serializers for store results."""

from collections.abc import Callable
from typing import Any

from fastapi import status
from fastapi.responses import JSONResponse

from supplement_registry.domain.backups import BackupHandle
from supplement_registry.domain.errors import ErrorKind
from supplement_registry.domain.records import SupplementRecord
from supplement_registry.domain.results import Result
from supplement_registry.domain.stats import SearchPage, StoreStats

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.PERSISTENCE: 500,
    ErrorKind.INITIALIZATION: 503,
    ErrorKind.MIGRATION: 500,
}


def envelope(
    result: Result[Any], serialize: Callable[[Any], object] = lambda data: data
) -> JSONResponse:
    """Render a store result as ``{success, data?, error?, warnings}``."""
    body: dict[str, object] = {
        "success": result.success,
        "warnings": list(result.warnings),
    }
    if result.error is not None:
        body["error"] = result.error.to_dict()
        return JSONResponse(
            status_code=STATUS_BY_KIND.get(
                result.error.kind, status.HTTP_500_INTERNAL_SERVER_ERROR
            ),
            content=body,
        )
    body["data"] = serialize(result.data)
    return JSONResponse(status_code=status.HTTP_200_OK, content=body)


def record_payload(record: SupplementRecord) -> dict[str, object]:
    """Serialize a record with its persisted camelCase keys."""
    return record.to_payload()


def records_payload(records: list[SupplementRecord]) -> list[dict[str, object]]:
    """Serialize a list of records."""
    return [record.to_payload() for record in records]


def page_payload(page: SearchPage) -> dict[str, object]:
    """Serialize a search page."""
    return {
        "items": records_payload(page.items),
        "total": page.total,
        "offset": page.offset,
        "limit": page.limit,
        "hasMore": page.has_more,
    }


def stats_payload(stats: StoreStats) -> dict[str, object]:
    """Serialize aggregate store counts."""
    return {
        "total": stats.total,
        "verified": stats.verified,
        "withBarcode": stats.with_barcode,
        "lastUpdated": stats.last_updated.isoformat() if stats.last_updated else None,
        "byCategory": stats.by_category,
        "bySource": stats.by_source,
    }


def backups_payload(backups: list[BackupHandle]) -> list[dict[str, object]]:
    """Serialize backup handles, newest first."""
    return [
        {
            "name": handle.name,
            "createdAt": handle.created_at.isoformat(),
            "location": handle.location,
        }
        for handle in backups
    ]
