"""Health check endpoint.

Verifies connectivity to the record store and Redis, returns structured status.
Used by Docker healthchecks, load balancers, and monitoring systems.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import text

from provenance_exchange import __version__
from provenance_exchange.api.deps import get_app_settings, get_marketplace
from provenance_exchange.config import Settings
from provenance_exchange.logging_config import get_logger
from provenance_exchange.schemas.marketplace import HealthResponse
from provenance_exchange.services.marketplace_service import MarketplaceService

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check(
    settings: Settings = Depends(get_app_settings),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> HealthResponse:
    """Check connectivity to the database and Redis."""
    db_status = "in-memory"
    redis_status = "unknown"

    if settings.database_url:
        try:
            from provenance_exchange.infrastructure.database.engine import _get_engine

            engine = _get_engine()
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            db_status = "healthy"
        except Exception as exc:
            db_status = f"unhealthy: {exc}"
            logger.error("health.db_check_failed", error=str(exc))

    try:
        from provenance_exchange.infrastructure.redis_client import get_redis

        redis = get_redis()
        await redis.ping()
        redis_status = "healthy"
    except Exception as exc:
        redis_status = f"unhealthy: {exc}"
        logger.error("health.redis_check_failed", error=str(exc))

    healthy = db_status in ("healthy", "in-memory") and redis_status == "healthy"

    return HealthResponse(
        status="ok" if healthy else "degraded",
        version=__version__,
        database=db_status,
        redis=redis_status,
        active_pollers=len(marketplace.pollers),
    )
