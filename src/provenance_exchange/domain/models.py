"""Domain entities for the Provenance Exchange.

Entities are pydantic models so the record store can snapshot them with
model_dump(mode="json") and restore them with model_validate(). Money is
always Decimal; timestamps are timezone-aware UTC datetimes.

Ownership:
    - A Listing exclusively owns its Bids and Counteroffers (embedded lists).
    - Bid.item_id is a weak back-reference to the owning listing.
    - Orders and AuthenticationRequests reference listings and bids by id only.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from provenance_exchange.domain.enums import (
    AuthenticationStatus,
    BidStatus,
    CounterofferStatus,
    EntityKind,
    EscrowPurpose,
    EscrowStatus,
    ListingStatus,
    NotificationType,
    OrderStatus,
    ReturnType,
)


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return uuid.uuid4().hex


class Bid(BaseModel):
    """A buyer's monetary offer against a listing."""

    id: str = Field(default_factory=new_id)
    item_id: str
    bidder_id: str
    amount: Decimal
    timestamp: datetime
    status: BidStatus = BidStatus.PENDING
    expires_at: datetime | None = None
    accepted_at: datetime | None = None
    rejected_at: datetime | None = None
    authentication_request_id: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at


class Counteroffer(BaseModel):
    """A seller's revised price in response to a bid."""

    id: str = Field(default_factory=new_id)
    listing_id: str
    bid_id: str
    seller_id: str
    buyer_id: str
    original_amount: Decimal
    counter_amount: Decimal
    message: str = ""
    timestamp: datetime
    status: CounterofferStatus = CounterofferStatus.PENDING
    responded_at: datetime | None = None


class Listing(BaseModel):
    """A sellable item open for bidding within a time window."""

    id: str = Field(default_factory=new_id)
    seller_id: str

    # --- Descriptive fields (opaque to the ledger) ---
    title: str = ""
    description: str = ""
    brand: str = ""
    model: str = ""
    year: int | None = None
    condition: str | None = None
    has_diamonds: bool = False
    image_url: str | None = None

    # --- Pricing and lifecycle ---
    starting_price: Decimal
    current_price: Decimal
    status: ListingStatus = ListingStatus.ACTIVE
    created_at: datetime = Field(default_factory=utc_now)
    start_time: datetime | None = None
    end_time: datetime
    sold_at: datetime | None = None

    # --- Negotiation (listing-owned) ---
    bids: list[Bid] = Field(default_factory=list)
    counteroffers: list[Counteroffer] = Field(default_factory=list)
    counteroffer_count: int = 0
    highest_bid_id: str | None = None

    def find_bid(self, bid_id: str) -> Bid | None:
        return next((b for b in self.bids if b.id == bid_id), None)

    def find_counteroffer(self, counteroffer_id: str) -> Counteroffer | None:
        return next((c for c in self.counteroffers if c.id == counteroffer_id), None)

    @property
    def highest_bid(self) -> Bid | None:
        return self.find_bid(self.highest_bid_id) if self.highest_bid_id else None

    @property
    def accepted_bid(self) -> Bid | None:
        return next((b for b in self.bids if b.status == BidStatus.ACCEPTED), None)


class AuthenticationPartner(BaseModel):
    """A third-party authentication service."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    base_fee: Decimal
    estimated_time: str
    official_brands: tuple[str, ...] = ()
    handles_diamonds: bool = False
    is_general: bool = False

    @property
    def max_days(self) -> int:
        """Upper bound of the advertised turnaround (e.g. 5 for "3-5 business days")."""
        try:
            return int(self.estimated_time.split(" ")[0].split("-")[-1])
        except ValueError:
            return 5


class AuthenticationResult(BaseModel):
    is_authentic: bool
    confidence: float = 0.0
    details: str = ""
    report: dict = Field(default_factory=dict)
    completed_at: datetime = Field(default_factory=utc_now)


class AuthenticationRequest(BaseModel):
    """A third-party authenticity-verification case tied to one accepted bid."""

    id: str = Field(default_factory=new_id)
    bid_id: str
    buyer_id: str
    seller_id: str
    listing_id: str
    partner_id: str
    partner_reference: str | None = None
    status: AuthenticationStatus = AuthenticationStatus.PENDING
    authentication_fee: Decimal
    shipping_costs: Decimal = Decimal("0")
    cancellation_fee: Decimal
    total_seller_costs: Decimal | None = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    estimated_completion: datetime | None = None
    completed_at: datetime | None = None
    result: AuthenticationResult | None = None


class PricingBreakdown(BaseModel):
    """Buyer-facing cost breakdown. total_amount is the sum of the other five."""

    model_config = ConfigDict(frozen=True)

    item_price: Decimal
    shipping_cost: Decimal
    verification_cost: Decimal
    commission_fee: Decimal
    insurance_cost: Decimal
    total_amount: Decimal


class Order(BaseModel):
    """The buyer/seller-visible record tracking a sale from payment through delivery."""

    id: str = Field(default_factory=new_id)
    listing_id: str
    bid_id: str
    buyer_id: str
    seller_id: str
    final_price: Decimal
    authentication_request_id: str | None = None
    payment_intent_id: str | None = None
    pricing: PricingBreakdown | None = None
    status: OrderStatus = OrderStatus.PENDING_BID
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    # --- One-shot transition timestamps ---
    promoted_at: datetime | None = None
    payment_confirmed_at: datetime | None = None
    authentication_started_at: datetime | None = None
    authenticated_at: datetime | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    buyer_confirmed_at: datetime | None = None
    return_requested_at: datetime | None = None
    returned_at: datetime | None = None
    payout_released_at: datetime | None = None
    refunded_at: datetime | None = None

    cancellation_reason: str | None = None
    notes: str | None = None

    # --- Shipping ---
    tracking_number: str | None = None
    carrier: str | None = None
    estimated_delivery: datetime | None = None

    # --- Returns ---
    return_reason: str | None = None
    return_type: ReturnType | None = None
    return_shipping_cost: Decimal | None = None
    return_shipping_paid_by: str | None = None


class EscrowRecord(BaseModel):
    """A single movement of funds through the payment processor."""

    intent_id: str
    purpose: EscrowPurpose
    amount: Decimal
    status: EscrowStatus
    related_order_id: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Notification(BaseModel):
    """One-way message to a user. Never read back by the core."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    title: str
    message: str
    type: NotificationType
    related_ids: dict[str, str] = Field(default_factory=dict)


# Snapshot type held by the record store for each entity kind.
RECORD_TYPES: dict[EntityKind, type[BaseModel]] = {
    EntityKind.LISTING: Listing,
    EntityKind.BID: Bid,
    EntityKind.COUNTEROFFER: Counteroffer,
    EntityKind.ORDER: Order,
    EntityKind.AUTHENTICATION_REQUEST: AuthenticationRequest,
}
