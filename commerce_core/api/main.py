"""
Main FastAPI application.

Order, payment and inventory API with:
- CORS configuration
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..config import Settings, get_settings
from ..core.service import CommerceService
from ..monitoring.health import HealthCheck
from ..monitoring.logging import setup_logging
from .routes import (
    admin_router,
    balance_router,
    gateway_router,
    inventory_router,
    monitoring_router,
    order_router,
    payment_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None, commerce: Optional[CommerceService] = None
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings; loaded from the environment when omitted
        commerce: Prebuilt service; built from settings when omitted and then
            owned (started and stopped) by the application

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()
    setup_logging(settings)
    owns_commerce = commerce is None
    commerce = commerce or CommerceService.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            gateway=commerce.gateway.name,
        )

        # An unreachable database aborts startup
        try:
            await commerce.startup()
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

        yield

        logger.info("application_shutdown")
        if owns_commerce:
            try:
                await commerce.shutdown()
                logger.info("database_connections_closed")
            except Exception as e:
                logger.error("database_shutdown_error", error=str(e))

    app = FastAPI(
        title="Commerce Core",
        description=(
            "Order, payment and inventory consistency service. "
            "Features: atomic stock reservation, idempotent gateway operations, "
            "refund accounting, signed webhook delivery and reconciliation."
        ),
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings
    app.state.commerce = commerce
    app.state.health_check = HealthCheck(
        commerce.db, commerce.gateway, commerce.idempotency.redis_client
    )

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Honours an incoming X-Request-ID and adds timing information and
        structured logging context.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled exceptions.
        """
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=exc,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": {
                    "message": "An unexpected error occurred. Please try again later.",
                    "category": None,
                    "code": "internal_error",
                    "details": {},
                },
            },
        )

    app.include_router(order_router)
    app.include_router(payment_router)
    app.include_router(inventory_router)
    app.include_router(webhook_router)
    app.include_router(gateway_router)
    app.include_router(balance_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": "1.0.0",
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "commerce_core.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
