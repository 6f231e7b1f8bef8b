"""Admin API endpoints with simple token auth."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse  # noqa: TC002

from supplement_registry.api.responses import (
    backups_payload,
    envelope,
    records_payload,
)

if TYPE_CHECKING:
    from supplement_registry.containers import AppContainer

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_admin_token(request: Request) -> str:
    container: AppContainer = request.app.state.container
    return container.settings.admin_token


async def require_admin(
    x_admin_token: str | None = Header(default=None),
    admin_token: str = Depends(_get_admin_token),
) -> None:
    """Ensure requests include a valid admin token."""
    if not x_admin_token or x_admin_token != admin_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)


@router.get("/health", dependencies=[Depends(require_admin)])
async def admin_health(request: Request) -> dict[str, object]:
    """Report store readiness and backup retention."""
    container: AppContainer = request.app.state.container
    store = container.store
    stats = store.stats()
    backups = store.backups()
    return {
        "status": "ok" if store.initialized else "unavailable",
        "records": stats.data.total if stats.success else None,
        "backups": len(backups.data) if backups.success else None,
        "maxBackups": store.max_backups,
    }


@router.get("/backups", dependencies=[Depends(require_admin)])
async def list_backups(request: Request) -> JSONResponse:
    """Return retained container backups, newest first."""
    container: AppContainer = request.app.state.container
    return envelope(container.store.backups(), backups_payload)


@router.get("/export", dependencies=[Depends(require_admin)])
async def export_records(request: Request) -> JSONResponse:
    """Return every canonical record."""
    container: AppContainer = request.app.state.container
    return envelope(container.store.export(), records_payload)

