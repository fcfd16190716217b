from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import config as CFG
from xiaoji_booking.errors import (
    BindCodeError,
    BookingError,
    DeliveryError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)

from .routes import register_routes

logger = logging.getLogger(__name__)


def _status_for(exc: BookingError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, PermissionDenied):
        return 403
    if isinstance(exc, (ValidationError, BindCodeError)):
        return 400
    return 500


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="小鸡预约系统 管理后台 API",
        description="商家、订单、评价、消息模板与数据导出的管理接口",
        version="1.0.0",
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CFG.CORS_ORIGINS or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error("%s %s 失败: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"success": False, "detail": str(exc)})

    @app.exception_handler(DeliveryError)
    async def delivery_error_handler(request: Request, exc: DeliveryError) -> JSONResponse:
        logger.error("%s %s 发送 Telegram 消息失败: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=502, content={"success": False, "detail": str(exc)})

    @app.get("/health")
    async def health_check():
        """Return basic application health information."""
        return {"status": "ok", "service": "xiaoji-booking-api"}

    register_routes(app)
    return app


app = create_app()
