"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from merchant_billing.api.v1.router import api_router
from merchant_billing.config import settings
from merchant_billing.core.exceptions import AppException
from merchant_billing.core.middleware import RequestLoggingMiddleware
from merchant_billing.database import close_db, init_db
from merchant_billing.gateways.base import GatewayType
from merchant_billing.services.gateway_service import gateway_service
from merchant_billing.services.notification_service import notification_service

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def enabled_providers() -> list[str]:
    return [gateway_type.value for gateway_type in GatewayType if gateway_service.is_enabled(gateway_type)]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan events."""
    # Startup
    if settings.debug:
        await init_db()
    logger.info(f"{settings.app_name} {settings.app_version} starting ({settings.environment})")
    providers = enabled_providers()
    if not providers:
        logger.warning("No payment gateway is enabled; sales and subscriptions will be rejected")
    for provider in providers:
        if not gateway_service.get_webhook_secret(provider):
            logger.warning(f"Webhook secret for {provider} is not configured; its webhooks will be refused")

    yield

    # Shutdown
    await notification_service.close()
    await close_db()


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Merchant payments, subscriptions and dunning API",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    # Exception handlers
    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
        """Handle custom application exceptions."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=exc.headers,
        )

    # Middleware (order matters - first added = last executed)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API routes
    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
            "gateways": enabled_providers(),
            "recurring_billing": settings.enable_recurring_billing,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    return app


app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "merchant_billing.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
