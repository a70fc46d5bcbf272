"""Pricing quote route.

Routes:
    GET    /api/v1/pricing/quote — Buyer cost breakdown for an item price
"""

from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, Query

from provenance_exchange.api.deps import get_marketplace
from provenance_exchange.schemas.marketplace import PricingResponse
from provenance_exchange.services.marketplace_service import MarketplaceService

router = APIRouter(prefix="/api/v1/pricing", tags=["Pricing"])


@router.get(
    "/quote",
    response_model=PricingResponse,
    summary="Quote the buyer's total",
)
async def quote(
    item_price: Decimal = Query(..., gt=0),
    listing_id: str | None = Query(default=None),
    partner_id: str | None = Query(default=None),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> PricingResponse:
    """Break down what a buyer pays; the partner follows the listing unless given."""
    listing = await marketplace.get_listing(listing_id) if listing_id else None
    breakdown = marketplace.quote(item_price, listing=listing, partner_id=partner_id)
    return PricingResponse.model_validate(breakdown)
