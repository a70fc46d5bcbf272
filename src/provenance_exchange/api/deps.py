"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject the marketplace
service, the acting user and configuration.
"""

from __future__ import annotations

from fastapi import Header, Request

from provenance_exchange.config import Settings, get_settings
from provenance_exchange.domain.protocols import ActorContext
from provenance_exchange.logging_config import bind_actor
from provenance_exchange.services.marketplace_service import MarketplaceService


def get_marketplace(request: Request) -> MarketplaceService:
    """Provide the MarketplaceService built during startup."""
    return request.app.state.marketplace


async def get_actor(
    x_user_id: str = Header(..., alias="X-User-Id", min_length=1),
    x_user_verified: bool = Header(False, alias="X-User-Verified"),
) -> ActorContext:
    """Build the acting user from the gateway-supplied identity headers."""
    bind_actor(x_user_id)
    return ActorContext(user_id=x_user_id, is_verified=x_user_verified)


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()
