"""FastAPI application factory."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Body, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from supplement_registry.api.admin import require_admin
from supplement_registry.api.admin import router as admin_router
from supplement_registry.api.models import MergeRequest, ProductRequest
from supplement_registry.api.responses import (
    envelope,
    page_payload,
    record_payload,
    stats_payload,
)
from supplement_registry.app_logging import configure_logging
from supplement_registry.containers import AppContainer
from supplement_registry.domain.stats import (
    DEFAULT_PAGE_SIZE,
    Pagination,
    SearchFilters,
)


def create_app(container: AppContainer) -> FastAPI:
    """Create a FastAPI app configured with dependencies."""
    configure_logging(container.settings.log_level)
    logger = logging.getLogger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        result = app.state.container.store.initialize()
        if not result.success:
            logger.error("Failed to initialize supplement store: %s", result.error)
        for warning in result.warnings:
            logger.warning("Store initialization: %s", warning)
        yield
        await app.state.container.close_resources()

    app = FastAPI(lifespan=lifespan)
    app.state.container = container

    app.include_router(admin_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Simple health check endpoint."""
        return {"status": "ok"}

    @app.post("/products")
    async def get_or_create_product(
        payload: ProductRequest, request: Request
    ) -> JSONResponse:
        """Return an existing product or create it from the candidate."""
        state_container: AppContainer = request.app.state.container
        result = state_container.store.get_or_create(
            payload.barcode, payload.candidate, source=payload.source
        )
        return envelope(result, record_payload)

    @app.get("/products/{barcode}")
    async def get_product(barcode: str, request: Request) -> JSONResponse:
        """Return the product holding a barcode."""
        state_container: AppContainer = request.app.state.container
        return envelope(state_container.store.get_by_barcode(barcode), record_payload)

    @app.delete("/products/{barcode}", dependencies=[Depends(require_admin)])
    async def delete_product(barcode: str, request: Request) -> JSONResponse:
        """Remove a product; requires the admin token."""
        state_container: AppContainer = request.app.state.container
        return envelope(state_container.store.delete(barcode), record_payload)

    @app.api_route("/products/{barcode}/correction", methods=["PUT", "PATCH"])
    async def correct_product(
        barcode: str,
        request: Request,
        updates: dict[str, object] = Body(...),
    ) -> JSONResponse:
        """Apply a user correction to a product."""
        state_container: AppContainer = request.app.state.container
        return envelope(state_container.store.update(barcode, updates), record_payload)

    @app.post("/products/{barcode}/merge")
    async def merge_product(
        barcode: str, payload: MergeRequest, request: Request
    ) -> JSONResponse:
        """Merge another source's observation into a product."""
        state_container: AppContainer = request.app.state.container
        result = state_container.store.merge(barcode, payload.candidate, payload.source)
        return envelope(result, record_payload)

    @app.get("/search")
    async def search_products(  # noqa: PLR0913
        request: Request,
        q: str | None = None,
        category: str | None = None,
        brand: str | None = None,
        verified: bool | None = None,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> JSONResponse:
        """Search products by name, brand or ingredient."""
        state_container: AppContainer = request.app.state.container
        result = state_container.store.search(
            q,
            SearchFilters(category=category, brand=brand, verified=verified),
            Pagination(offset=offset, limit=limit),
        )
        return envelope(result, page_payload)

    @app.get("/stats")
    async def store_stats(request: Request) -> JSONResponse:
        """Return aggregate counts over the store."""
        state_container: AppContainer = request.app.state.container
        return envelope(state_container.store.stats(), stats_payload)

    return app
