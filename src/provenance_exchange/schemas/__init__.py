"""Pydantic API schemas."""

from provenance_exchange.schemas.marketplace import (
    AcceptBidRequest,
    AdvanceOrderRequest,
    AuthenticationRequestResponse,
    AuthenticationResultRequest,
    BidResponse,
    CounterofferRequest,
    CounterofferResponse,
    CreateListingRequest,
    HealthResponse,
    ListingResponse,
    OrderResponse,
    OrderSummaryResponse,
    PlaceBidRequest,
    PricingResponse,
    RespondCounterofferRequest,
    ReturnOrderRequest,
    SaleResponse,
    ShipOrderRequest,
    SweepResponse,
)

__all__ = [
    "AcceptBidRequest",
    "AdvanceOrderRequest",
    "AuthenticationRequestResponse",
    "AuthenticationResultRequest",
    "BidResponse",
    "CounterofferRequest",
    "CounterofferResponse",
    "CreateListingRequest",
    "HealthResponse",
    "ListingResponse",
    "OrderResponse",
    "OrderSummaryResponse",
    "PlaceBidRequest",
    "PricingResponse",
    "RespondCounterofferRequest",
    "ReturnOrderRequest",
    "SaleResponse",
    "ShipOrderRequest",
    "SweepResponse",
]
