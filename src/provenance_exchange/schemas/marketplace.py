"""Pydantic schemas for the marketplace API.

These schemas define the request/response shapes for the REST API. They are
separate from the domain models so the wire format can stay stable while the
snapshots held by the record store evolve.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from provenance_exchange.domain.enums import (
    AuthenticationOutcome,
    OrderStatus,
    ReturnType,
)

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateListingRequest(BaseModel):
    """Request body for opening a listing."""

    starting_price: Decimal = Field(
        ...,
        gt=0,
        decimal_places=2,
        description="Minimum acceptable bid in USD",
        examples=[8500],
    )
    title: str = Field(..., min_length=3, max_length=200, examples=["Rolex Submariner 126610LN"])
    description: str = Field(default="", max_length=5000)
    brand: str = Field(default="", max_length=100, examples=["Rolex"])
    model: str = Field(default="", max_length=100, examples=["Submariner"])
    year: int | None = Field(default=None, ge=1800, le=2100)
    condition: str | None = Field(default=None, max_length=50)
    has_diamonds: bool = False
    image_url: str | None = None
    start_time: datetime | None = Field(
        default=None,
        description="Future start time; the listing is scheduled until then",
    )


class PlaceBidRequest(BaseModel):
    amount: Decimal = Field(..., decimal_places=2, description="Bid amount in USD", examples=[9000])


class AcceptBidRequest(BaseModel):
    """Request body for accepting a bid."""

    partner_id: str | None = Field(
        default=None,
        description="Authentication partner; chosen from the listing when omitted",
        examples=["watchbox"],
    )


class CounterofferRequest(BaseModel):
    bid_id: str
    amount: Decimal = Field(..., gt=0, decimal_places=2, examples=[9500])
    message: str = Field(default="", max_length=1000)


class RespondCounterofferRequest(BaseModel):
    accept: bool
    partner_id: str | None = None


class ShipOrderRequest(BaseModel):
    """Request body for shipping an order.

    Omit tracking_number to have a label created by the shipping provider.
    """

    tracking_number: str | None = Field(default=None, min_length=4, max_length=64)
    carrier: str | None = Field(default=None, max_length=40, examples=["FedEx"])
    estimated_delivery: datetime | None = None


class AdvanceOrderRequest(BaseModel):
    status: OrderStatus
    notes: str | None = Field(default=None, max_length=2000)
    reason: str | None = Field(default=None, max_length=2000)


class ReturnOrderRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=2000)
    return_type: ReturnType


class AuthenticationResultRequest(BaseModel):
    """Verdict pushed by an authentication partner."""

    outcome: AuthenticationOutcome
    details: str = Field(default="", max_length=5000)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class BidResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    item_id: str
    bidder_id: str
    amount: Decimal
    status: str
    timestamp: datetime
    expires_at: datetime | None
    accepted_at: datetime | None
    rejected_at: datetime | None
    authentication_request_id: str | None


class CounterofferResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    listing_id: str
    bid_id: str
    seller_id: str
    buyer_id: str
    original_amount: Decimal
    counter_amount: Decimal
    message: str
    status: str
    timestamp: datetime
    responded_at: datetime | None


class ListingResponse(BaseModel):
    """Response schema for a listing with its negotiation history."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    seller_id: str
    title: str
    description: str
    brand: str
    model: str
    year: int | None
    condition: str | None
    has_diamonds: bool
    image_url: str | None
    starting_price: Decimal
    current_price: Decimal
    status: str
    created_at: datetime
    start_time: datetime | None
    end_time: datetime
    sold_at: datetime | None
    highest_bid_id: str | None
    counteroffer_count: int
    bids: list[BidResponse]
    counteroffers: list[CounterofferResponse]


class PricingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_price: Decimal
    shipping_cost: Decimal
    verification_cost: Decimal
    commission_fee: Decimal
    insurance_cost: Decimal
    total_amount: Decimal


class AuthenticationResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    is_authentic: bool
    confidence: float
    details: str
    completed_at: datetime


class AuthenticationRequestResponse(BaseModel):
    """Response schema for an authentication case."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    bid_id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    partner_id: str
    partner_reference: str | None
    status: str
    authentication_fee: Decimal
    shipping_costs: Decimal
    cancellation_fee: Decimal
    total_seller_costs: Decimal | None
    created_at: datetime
    started_at: datetime | None
    estimated_completion: datetime | None
    completed_at: datetime | None
    result: AuthenticationResultResponse | None


class OrderResponse(BaseModel):
    """Response schema for an order."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    listing_id: str
    bid_id: str
    buyer_id: str
    seller_id: str
    final_price: Decimal
    status: str
    authentication_request_id: str | None
    payment_intent_id: str | None
    pricing: PricingResponse | None
    created_at: datetime
    updated_at: datetime
    payment_confirmed_at: datetime | None
    shipped_at: datetime | None
    delivered_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    tracking_number: str | None
    carrier: str | None
    estimated_delivery: datetime | None
    return_reason: str | None
    return_type: str | None
    return_shipping_cost: Decimal | None
    payout_released_at: datetime | None
    refunded_at: datetime | None


class SaleResponse(BaseModel):
    """Everything produced by accepting a bid or counteroffer."""

    listing_id: str
    bid: BidResponse
    order: OrderResponse
    authentication_request: AuthenticationRequestResponse
    pricing: PricingResponse


class SweepResponse(BaseModel):
    listing_id: str
    status: str
    expired_bid_ids: list[str]


class OrderSummaryResponse(BaseModel):
    """Order counts per status for one user."""

    user_id: str
    role: str
    total_orders: int
    by_status: dict[str, int]
    total_value: Decimal


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    redis: str
    active_pollers: int = 0
