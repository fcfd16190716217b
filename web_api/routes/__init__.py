from __future__ import annotations

from fastapi import APIRouter, FastAPI

from . import export, merchants, orders, stats, system, templates


def register_routes(app: FastAPI) -> None:
    """Attach all routers to FastAPI application."""
    api_router = APIRouter(prefix="/api")

    for router in (stats.router, orders.router, merchants.router, templates.router, export.router, system.router):
        api_router.include_router(router)

    app.include_router(api_router)
