"""FastAPI application entry-point for the Kindred billing service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from billing_core.errors import (
    ConcurrencyError,
    InvalidRequestError,
    NotFoundError,
    PayloadError,
    ProviderRejectedError,
    TransientProviderError,
    VerificationError,
)
from billing_core.ingestion import AppStoreJWSVerifier
from billing_core.state.database import get_engine, get_session_factory
from billing_core.state.sqlite_adapter import create_tables
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from billing_api import __version__
from billing_api.config import PlatformEnv, load_api_settings
from billing_api.dependencies import get_billing_settings
from billing_api.middleware.logging import RequestLoggingMiddleware
from billing_api.routers import health, payments, subscriptions, webhooks
from billing_api.services.app_store_client import AppStoreClient
from billing_api.services.event_bus import build_event_bus
from billing_api.services.stripe_client import StripeClient

logger = logging.getLogger(__name__)

_DEV_JWT_SECRET_PREFIX = "kindred-dev-"


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine and session factory.
    - Create tables in dev or local SQLite mode.
    - Build the event bus, the provider clients and the App Store
      notification verifier, and store them on ``app.state``.

    On shutdown:
    - Close the App Store HTTP client.
    - Dispose the database engine connection pool.
    """
    settings = load_api_settings()
    billing_settings = get_billing_settings()

    # Fail fast: refuse to start outside dev with the development JWT secret.
    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION) and (
        settings.jwt_secret.get_secret_value().startswith(_DEV_JWT_SECRET_PREFIX)
    ):
        raise RuntimeError(f"API_JWT_SECRET must be set in {settings.platform_env.value} mode. Refusing to start.")

    # Structured JSON logging.
    if settings.structured_logging:
        from billing_api.middleware.json_formatter import configure_json_logging

        configure_json_logging()
        logger.info("Structured JSON logging enabled")

    engine = get_engine(settings.database_url)
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url.split("://", 1)[0],
        "local" if settings.is_local else "postgres",
    )

    # Auto-create tables in dev or local SQLite mode (idempotent).
    if settings.platform_env == PlatformEnv.DEV or settings.is_local:
        await create_tables(engine)
        logger.info("Database tables ensured")

    app.state.session_factory = get_session_factory(engine)
    app.state.event_bus = build_event_bus()
    app.state.stripe_client = StripeClient(billing_settings)
    app.state.app_store_client = AppStoreClient(billing_settings)
    app.state.app_store_verifier = AppStoreJWSVerifier.from_settings(billing_settings)
    logger.info(
        "Billing services initialised (environment=%s, %d bus handler(s))",
        billing_settings.environment.value,
        app.state.event_bus.handler_count,
    )

    yield

    # Shutdown.
    app.state.event_bus.clear()
    await app.state.app_store_client.close()
    await engine.dispose()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(VerificationError)
    async def verification_error_handler(request: Request, exc: VerificationError) -> JSONResponse:
        logger.warning("Rejected unauthenticated notification on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid signature"})

    @app.exception_handler(InvalidRequestError)
    async def invalid_request_handler(request: Request, exc: InvalidRequestError) -> JSONResponse:
        logger.info("Invalid request on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ProviderRejectedError)
    async def provider_rejected_handler(request: Request, exc: ProviderRejectedError) -> JSONResponse:
        logger.info("Provider rejected request on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=402, content={"detail": str(exc)})

    @app.exception_handler(PayloadError)
    async def payload_error_handler(request: Request, exc: PayloadError) -> JSONResponse:
        logger.error("Unexpected provider response on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=502, content={"detail": "Unexpected provider response"})

    @app.exception_handler(TransientProviderError)
    async def transient_error_handler(request: Request, exc: TransientProviderError) -> JSONResponse:
        logger.warning("Transient failure on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable"})

    @app.exception_handler(ConcurrencyError)
    async def concurrency_error_handler(request: Request, exc: ConcurrencyError) -> JSONResponse:
        logger.warning("Concurrent update conflict on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable"})


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Kindred Billing API",
        description="Subscription reconciliation and entitlements for Stripe and the App Store.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(webhooks.router, prefix="/api/v1")
    app.include_router(subscriptions.router, prefix="/api/v1")
    app.include_router(payments.router, prefix="/api/v1")

    # Liveness check outside versioning.
    app.include_router(health.router)

    _register_exception_handlers(app)
    return app


# Module-level application instance used by ``uvicorn billing_api.main:app``.
app = create_app()
