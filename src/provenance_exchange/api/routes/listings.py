"""Listing and negotiation REST API routes.

Routes:
    POST   /api/v1/listings                                  — Open a listing
    GET    /api/v1/listings/{id}                             — Get listing with bids
    POST   /api/v1/listings/{id}/bids                        — Place a bid
    POST   /api/v1/listings/{id}/bids/{bid_id}/accept        — Seller accepts a bid
    POST   /api/v1/listings/{id}/bids/{bid_id}/reject        — Seller rejects a bid
    POST   /api/v1/listings/{id}/counteroffers               — Seller counters a bid
    POST   /api/v1/listings/{id}/counteroffers/{co_id}/respond — Buyer answers
    POST   /api/v1/listings/{id}/sweep                       — Expire stale bids
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header

from provenance_exchange.api.deps import get_actor, get_marketplace
from provenance_exchange.domain.exceptions import DuplicateOperationError
from provenance_exchange.domain.protocols import ActorContext
from provenance_exchange.infrastructure import redis_client
from provenance_exchange.logging_config import get_logger
from provenance_exchange.schemas.marketplace import (
    AcceptBidRequest,
    AuthenticationRequestResponse,
    BidResponse,
    CounterofferRequest,
    CounterofferResponse,
    CreateListingRequest,
    ListingResponse,
    OrderResponse,
    PlaceBidRequest,
    PricingResponse,
    RespondCounterofferRequest,
    SaleResponse,
    SweepResponse,
)
from provenance_exchange.services.marketplace_service import MarketplaceService
from provenance_exchange.services.saga import AcceptedSale

router = APIRouter(prefix="/api/v1/listings", tags=["Listings"])
logger = get_logger(__name__)


def sale_response(sale: AcceptedSale) -> SaleResponse:
    return SaleResponse(
        listing_id=sale.listing.id,
        bid=BidResponse.model_validate(sale.bid),
        order=OrderResponse.model_validate(sale.order),
        authentication_request=AuthenticationRequestResponse.model_validate(
            sale.authentication_request
        ),
        pricing=PricingResponse.model_validate(sale.pricing),
    )


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=ListingResponse,
    status_code=201,
    summary="Open a listing",
)
async def create_listing(
    request: CreateListingRequest,
    actor: ActorContext = Depends(get_actor),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> ListingResponse:
    """Create a listing, active now or scheduled for `start_time`."""
    fields = request.model_dump(exclude={"starting_price", "start_time"})
    result = await marketplace.create_listing(
        actor, request.starting_price, start_time=request.start_time, **fields
    )
    return ListingResponse.model_validate(result.unwrap())


@router.get(
    "/{listing_id}",
    response_model=ListingResponse,
    summary="Get listing details",
)
async def get_listing(
    listing_id: str,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> ListingResponse:
    return ListingResponse.model_validate(await marketplace.get_listing(listing_id))


@router.post(
    "/{listing_id}/sweep",
    response_model=SweepResponse,
    summary="Expire stale bids and apply the listing clock",
)
async def sweep_listing(
    listing_id: str,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> SweepResponse:
    expired = (await marketplace.sweep_listing(listing_id)).unwrap()
    listing = await marketplace.get_listing(listing_id)
    return SweepResponse(listing_id=listing.id, status=listing.status, expired_bid_ids=expired)


# ---------------------------------------------------------------------------
# Bids
# ---------------------------------------------------------------------------


@router.post(
    "/{listing_id}/bids",
    response_model=BidResponse,
    status_code=201,
    summary="Place a bid",
)
async def place_bid(
    listing_id: str,
    request: PlaceBidRequest,
    actor: ActorContext = Depends(get_actor),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> BidResponse:
    """Place a bid. Requires a verified account (X-User-Verified: true)."""
    bid = (await marketplace.place_bid(actor, listing_id, request.amount)).unwrap()
    return BidResponse.model_validate(bid)


@router.post(
    "/{listing_id}/bids/{bid_id}/accept",
    response_model=SaleResponse,
    summary="Accept a bid",
)
async def accept_bid(
    listing_id: str,
    bid_id: str,
    request: AcceptBidRequest | None = None,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    actor: ActorContext = Depends(get_actor),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> SaleResponse:
    """Accept a bid: hold the buyer's funds, open the authentication case, close the sale.

    Replays carrying the same Idempotency-Key are rejected with 409 while
    Redis is reachable.
    """
    partner_id = request.partner_id if request else None
    claimed = False
    if idempotency_key and redis_client.redis_available():
        if not await redis_client.claim_idempotency(idempotency_key):
            raise DuplicateOperationError(idempotency_key)
        claimed = True

    result = await marketplace.accept_bid(actor, listing_id, bid_id, partner_id=partner_id)
    if not result.ok and claimed:
        await redis_client.release_idempotency(idempotency_key)
    return sale_response(result.unwrap())


@router.post(
    "/{listing_id}/bids/{bid_id}/reject",
    response_model=BidResponse,
    summary="Reject a bid",
)
async def reject_bid(
    listing_id: str,
    bid_id: str,
    actor: ActorContext = Depends(get_actor),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> BidResponse:
    bid = (await marketplace.reject_bid(actor, listing_id, bid_id)).unwrap()
    return BidResponse.model_validate(bid)


# ---------------------------------------------------------------------------
# Counteroffers
# ---------------------------------------------------------------------------


@router.post(
    "/{listing_id}/counteroffers",
    response_model=CounterofferResponse,
    status_code=201,
    summary="Counter a bid",
)
async def make_counteroffer(
    listing_id: str,
    request: CounterofferRequest,
    actor: ActorContext = Depends(get_actor),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> CounterofferResponse:
    """Seller proposes a new price for a pending bid. At most three per listing."""
    counteroffer = (
        await marketplace.make_counteroffer(
            actor, listing_id, request.bid_id, request.amount, request.message
        )
    ).unwrap()
    return CounterofferResponse.model_validate(counteroffer)


@router.post(
    "/{listing_id}/counteroffers/{counteroffer_id}/respond",
    response_model=SaleResponse | CounterofferResponse,
    summary="Answer a counteroffer",
)
async def respond_to_counteroffer(
    listing_id: str,
    counteroffer_id: str,
    request: RespondCounterofferRequest,
    actor: ActorContext = Depends(get_actor),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> SaleResponse | CounterofferResponse:
    """Accepting closes the sale at the counter amount; declining leaves the listing open."""
    outcome = (
        await marketplace.respond_to_counteroffer(
            actor,
            listing_id,
            counteroffer_id,
            request.accept,
            partner_id=request.partner_id,
        )
    ).unwrap()
    if isinstance(outcome, AcceptedSale):
        return sale_response(outcome)
    return CounterofferResponse.model_validate(outcome)
