"""Listing Ledger: bids, counteroffers and the point-of-sale transition.

The ledger owns a Listing together with its embedded Bid and Counteroffer
collections. It is pure and synchronous: every operation works on a Listing
the caller fetched immediately before the call and mutates it in place. The
caller persists the listing afterwards.

Invariants enforced here:
    - A listing becomes SOLD exactly once; nothing reopens it.
    - A bid must exceed the listing's current price and come from someone
      other than the seller.
    - current_price only moves at the point of sale, not per bid.
    - At most `counteroffer_limit` counteroffers per listing.
    - The highest bid is the largest pending amount; ties go to the earliest
      timestamp, then to insertion order.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from provenance_exchange.domain.enums import BidStatus, CounterofferStatus, ListingStatus
from provenance_exchange.domain.exceptions import (
    BidExpiredError,
    InvalidBidError,
    LimitExceededError,
    NotActiveError,
    NotFoundError,
    NotPendingError,
    ValidationError,
)
from provenance_exchange.domain.models import Bid, Counteroffer, Listing
from provenance_exchange.domain.results import returns_result

if TYPE_CHECKING:
    from datetime import datetime

DEFAULT_LISTING_DURATION = timedelta(hours=48)
DEFAULT_BID_TTL = timedelta(hours=24)
DEFAULT_COUNTEROFFER_LIMIT = 3


class ListingLedger:
    """Enforces sale exclusivity and negotiation bounds on listings."""

    def __init__(
        self,
        bid_ttl: timedelta = DEFAULT_BID_TTL,
        listing_duration: timedelta = DEFAULT_LISTING_DURATION,
        counteroffer_limit: int = DEFAULT_COUNTEROFFER_LIMIT,
    ) -> None:
        self._bid_ttl = bid_ttl
        self._listing_duration = listing_duration
        self._counteroffer_limit = counteroffer_limit

    # ------------------------------------------------------------------
    # Listing creation
    # ------------------------------------------------------------------

    @returns_result
    def open_listing(
        self,
        seller_id: str,
        starting_price: Decimal,
        now: datetime,
        start_time: datetime | None = None,
        duration: timedelta | None = None,
        **descriptive: object,
    ) -> Listing:
        """Create a listing; it is SCHEDULED when start_time lies in the future."""
        if starting_price <= 0:
            raise ValidationError("Starting price must be greater than zero", "INVALID_PRICE")

        opens_at = start_time or now
        status = ListingStatus.SCHEDULED if opens_at > now else ListingStatus.ACTIVE
        return Listing(
            seller_id=seller_id,
            starting_price=starting_price,
            current_price=starting_price,
            status=status,
            created_at=now,
            start_time=opens_at,
            end_time=opens_at + (duration or self._listing_duration),
            **descriptive,
        )

    # ------------------------------------------------------------------
    # Bidding
    # ------------------------------------------------------------------

    @returns_result
    def place_bid(
        self,
        listing: Listing,
        bidder_id: str,
        amount: Decimal,
        now: datetime,
    ) -> Bid:
        """Append a pending bid. current_price is left untouched."""
        if listing.status != ListingStatus.ACTIVE:
            raise InvalidBidError(
                "LISTING_INACTIVE", f"Listing is not active (status: {listing.status})"
            )
        if now > listing.end_time:
            raise InvalidBidError("LISTING_EXPIRED", "Listing has expired")
        if amount <= 0:
            raise InvalidBidError("INVALID_AMOUNT", "Bid amount must be greater than zero")
        if bidder_id == listing.seller_id:
            raise InvalidBidError("SELF_BID", "You cannot bid on your own listing")
        if amount <= listing.current_price:
            raise InvalidBidError(
                "AMOUNT_TOO_LOW",
                f"Bid must exceed the current price of {listing.current_price}",
            )

        bid = Bid(
            item_id=listing.id,
            bidder_id=bidder_id,
            amount=amount,
            timestamp=now,
            expires_at=now + self._bid_ttl,
        )
        listing.bids.append(bid)
        self._recompute_highest(listing)
        return bid

    @returns_result
    def check_acceptable(self, listing: Listing, bid_id: str, now: datetime) -> Bid:
        """Run every accept_bid guard without mutating the listing."""
        return self._acceptable_bid(listing, bid_id, now)

    @returns_result
    def accept_bid(self, listing: Listing, bid_id: str, now: datetime) -> Bid:
        """Close the sale on a pending bid. This is the single point of sale."""
        bid = self._acceptable_bid(listing, bid_id, now)
        self._close_sale(listing, bid, bid.amount, now)
        return bid

    @returns_result
    def reject_bid(self, listing: Listing, bid_id: str, now: datetime) -> Bid:
        bid = self._get_bid(listing, bid_id)
        if bid.status not in (BidStatus.PENDING, BidStatus.COUNTERED):
            raise NotPendingError("Bid", bid.id, bid.status)

        bid.status = BidStatus.REJECTED
        bid.rejected_at = now
        if listing.highest_bid_id == bid.id:
            self._recompute_highest(listing)
        return bid

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    @returns_result
    def make_counteroffer(
        self,
        listing: Listing,
        bid_id: str,
        amount: Decimal,
        message: str,
        now: datetime,
    ) -> Counteroffer:
        """Answer a pending bid with a revised price (at most three per listing)."""
        if listing.status != ListingStatus.ACTIVE:
            raise NotActiveError(listing.id, listing.status)
        if listing.counteroffer_count >= self._counteroffer_limit:
            raise LimitExceededError(listing.id, self._counteroffer_limit)
        if amount <= 0:
            raise ValidationError("Counteroffer amount must be greater than zero", "INVALID_AMOUNT")

        bid = self._get_bid(listing, bid_id)
        if bid.status != BidStatus.PENDING:
            raise NotPendingError("Bid", bid.id, bid.status)

        counteroffer = Counteroffer(
            listing_id=listing.id,
            bid_id=bid.id,
            seller_id=listing.seller_id,
            buyer_id=bid.bidder_id,
            original_amount=bid.amount,
            counter_amount=amount,
            message=message,
            timestamp=now,
        )
        listing.counteroffers.append(counteroffer)
        listing.counteroffer_count += 1
        bid.status = BidStatus.COUNTERED
        self._recompute_highest(listing)
        return counteroffer

    @returns_result
    def check_counteroffer_acceptable(self, listing: Listing, counteroffer_id: str) -> Counteroffer:
        return self._answerable_counteroffer(listing, counteroffer_id, accepting=True)

    @returns_result
    def respond_to_counteroffer(
        self,
        listing: Listing,
        counteroffer_id: str,
        accept: bool,
        now: datetime,
    ) -> Counteroffer:
        """Record the buyer's answer.

        Accepting closes the sale at the counter amount through the same
        point-of-sale transition as accept_bid. Rejecting also rejects the bid.
        """
        counteroffer = self._answerable_counteroffer(listing, counteroffer_id, accepting=accept)
        bid = self._get_bid(listing, counteroffer.bid_id)
        counteroffer.responded_at = now

        if accept:
            counteroffer.status = CounterofferStatus.ACCEPTED
            self._close_sale(listing, bid, counteroffer.counter_amount, now)
        else:
            counteroffer.status = CounterofferStatus.REJECTED
            bid.status = BidStatus.REJECTED
            bid.rejected_at = now
        return counteroffer

    # ------------------------------------------------------------------
    # Time-based housekeeping
    # ------------------------------------------------------------------

    @returns_result
    def sweep_expired(self, listing: Listing, now: datetime) -> list[str]:
        """Apply the clock to a listing; return the ids of bids that expired."""
        if listing.status == ListingStatus.SCHEDULED and listing.start_time <= now:
            listing.status = ListingStatus.ACTIVE

        listing_ended = listing.status == ListingStatus.ACTIVE and now > listing.end_time
        if listing_ended:
            listing.status = ListingStatus.EXPIRED

        expired: list[str] = []
        for bid in listing.bids:
            if bid.status == BidStatus.PENDING and (listing_ended or bid.is_expired(now)):
                bid.status = BidStatus.EXPIRED
                expired.append(bid.id)

        if expired:
            self._recompute_highest(listing)
        return expired

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _get_bid(self, listing: Listing, bid_id: str) -> Bid:
        bid = listing.find_bid(bid_id)
        if bid is None:
            raise NotFoundError("Bid", bid_id)
        return bid

    def _acceptable_bid(self, listing: Listing, bid_id: str, now: datetime) -> Bid:
        if listing.status != ListingStatus.ACTIVE:
            raise NotActiveError(listing.id, listing.status)
        bid = self._get_bid(listing, bid_id)
        if bid.status != BidStatus.PENDING:
            raise NotPendingError("Bid", bid.id, bid.status)
        if bid.is_expired(now):
            raise BidExpiredError(bid.id)
        return bid

    def _answerable_counteroffer(
        self, listing: Listing, counteroffer_id: str, accepting: bool
    ) -> Counteroffer:
        counteroffer = listing.find_counteroffer(counteroffer_id)
        if counteroffer is None:
            raise NotFoundError("Counteroffer", counteroffer_id)
        if counteroffer.status != CounterofferStatus.PENDING:
            raise NotPendingError("Counteroffer", counteroffer.id, counteroffer.status)
        if accepting and listing.status != ListingStatus.ACTIVE:
            raise NotActiveError(listing.id, listing.status)
        return counteroffer

    def _close_sale(self, listing: Listing, bid: Bid, price: Decimal, now: datetime) -> None:
        listing.status = ListingStatus.SOLD
        listing.sold_at = now
        listing.current_price = price
        bid.status = BidStatus.ACCEPTED
        bid.accepted_at = now
        self._recompute_highest(listing)

    @staticmethod
    def _recompute_highest(listing: Listing) -> None:
        pending = [
            (index, bid)
            for index, bid in enumerate(listing.bids)
            if bid.status == BidStatus.PENDING
        ]
        if not pending:
            listing.highest_bid_id = None
            return
        _, best = min(pending, key=lambda item: (-item[1].amount, item[1].timestamp, item[0]))
        listing.highest_bid_id = best.id
