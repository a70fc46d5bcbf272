"""FastAPI application entry point for the Provenance Exchange.

Lifecycle:
    1. Startup: Initialize logging, the record store, Redis, the partner
       client and the payment gateway, then build the MarketplaceService.
    2. Running: Serve the REST API; verification pollers run as asyncio tasks.
    3. Shutdown: Dispose every poller, then close partner, database and Redis
       connections gracefully.

Run with:
    uv run uvicorn provenance_exchange.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from provenance_exchange import __version__
from provenance_exchange.config import get_settings
from provenance_exchange.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from provenance_exchange.config import Settings
    from provenance_exchange.domain.protocols import AuthenticationPartnerAPI, RecordStore


async def _build_store(settings: Settings) -> RecordStore:
    if settings.database_url:
        from provenance_exchange.infrastructure.database import (
            SqlRecordStore,
            get_session_factory,
            init_db,
        )

        await init_db()
        return SqlRecordStore(get_session_factory())

    from provenance_exchange.infrastructure.memory_store import InMemoryRecordStore

    return InMemoryRecordStore(capacity=settings.record_store_capacity)


def _build_partner_api(settings: Settings) -> AuthenticationPartnerAPI:
    from provenance_exchange.infrastructure.partners import HttpPartnerClient, SimulatedPartner

    if settings.partner_base_url_template:
        return HttpPartnerClient(
            settings.partner_base_url_template,
            api_key=settings.partner_api_key,
            timeout=settings.partner_timeout_seconds,
            retry_attempts=settings.partner_retry_attempts,
            retry_backoff_seconds=settings.partner_retry_backoff_seconds,
        )
    return SimulatedPartner()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        debug=settings.app_debug,
    )

    # 2. Initialize the record store
    store = await _build_store(settings)
    logger.info("app.store_ready", store=type(store).__name__)

    # 3. Initialize Redis
    from provenance_exchange.infrastructure.redis_client import close_redis, init_redis

    try:
        await init_redis()
    except Exception as exc:
        logger.warning("app.redis_unavailable", error=str(exc))

    # 4. External collaborators
    partner_api = _build_partner_api(settings)
    if not settings.payment_simulate:
        raise RuntimeError("No live payment processor is configured; set PAYMENT_SIMULATE=true")

    from provenance_exchange.infrastructure.notifications import LoggingNotificationSink
    from provenance_exchange.services.escrow_gateway import EscrowPaymentGateway
    from provenance_exchange.services.marketplace_service import MarketplaceService
    from provenance_exchange.services.payment_service import SimulatedPaymentProcessor

    gateway = EscrowPaymentGateway(
        SimulatedPaymentProcessor(),
        retry_attempts=settings.payment_retry_attempts,
    )

    # 5. Marketplace
    marketplace = MarketplaceService(
        store,
        LoggingNotificationSink(),
        partner_api,
        gateway,
        settings,
    )
    app.state.marketplace = marketplace
    await marketplace.resume_pollers()

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    await marketplace.pollers.dispose_all()
    if hasattr(partner_api, "aclose"):
        await partner_api.aclose()
    if settings.database_url:
        from provenance_exchange.infrastructure.database import close_db

        await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory — creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Provenance Exchange",
        description=(
            "Marketplace core for authenticated luxury goods: listings, bids, "
            "counteroffers, escrow and third-party authentication."
        ),
        version=__version__,
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from provenance_exchange.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from provenance_exchange.api.routes.authentication import router as authentication_router
    from provenance_exchange.api.routes.health import router as health_router
    from provenance_exchange.api.routes.listings import router as listings_router
    from provenance_exchange.api.routes.orders import router as orders_router
    from provenance_exchange.api.routes.pricing import router as pricing_router

    app.include_router(health_router)
    app.include_router(listings_router)
    app.include_router(orders_router)
    app.include_router(authentication_router)
    app.include_router(pricing_router)

    return app


# The app instance used by Uvicorn
app = create_app()
