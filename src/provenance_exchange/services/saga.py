"""Accept-bid saga: close a sale across ledger, escrow and authentication.

Steps, in order:
    1. validate      — run the ledger's accept guards without mutating anything
    2. authorize     — hold the buyer's total (price + fees) in escrow
    3. open request  — create the pending AuthenticationRequest
    4. pivot         — accept the bid on a freshly fetched listing and persist it
    5. promote       — link bid and order, promote the order to pending_payment

Steps 2 and 3 have compensations (release the hold, discard the request) that
run in reverse order if anything before the pivot fails. The pivot is the
irreversible step: once the listing is SOLD nothing is rolled back, and the
remaining store writes are retried forward by the caller.

The pivot runs under a per-listing asyncio.Lock and writes the listing back
only if the store still holds it as active, so of two concurrent accepts
exactly one sells the listing and the other fails LISTING_NOT_ACTIVE.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from provenance_exchange.domain.enums import (
    EntityKind,
    EscrowPurpose,
    ListingStatus,
    OrderStatus,
)
from provenance_exchange.domain.exceptions import (
    ExchangeError,
    NotActiveError,
    NotFoundError,
    StaleRecordError,
)
from provenance_exchange.domain.pricing import FLAT_SHIPPING_COST, compute_breakdown
from provenance_exchange.domain.results import returns_result
from provenance_exchange.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime
    from decimal import Decimal

    from provenance_exchange.domain.listing_ledger import ListingLedger
    from provenance_exchange.domain.models import (
        AuthenticationRequest,
        Bid,
        EscrowRecord,
        Listing,
        Order,
        PricingBreakdown,
    )
    from provenance_exchange.domain.protocols import RecordStore
    from provenance_exchange.services.authentication_service import (
        AuthenticationCoordinator,
    )
    from provenance_exchange.services.escrow_gateway import EscrowPaymentGateway
    from provenance_exchange.services.order_service import OrderLifecycleManager

logger = get_logger(__name__)


@dataclass(frozen=True)
class AcceptedSale:
    """Everything the accept-bid saga produced."""

    listing: Listing
    bid: Bid
    order: Order
    authentication_request: AuthenticationRequest
    escrow: EscrowRecord
    pricing: PricingBreakdown


class AcceptBidSaga:
    """Runs the accept-bid steps with compensation up to the pivot."""

    def __init__(
        self,
        store: RecordStore,
        ledger: ListingLedger,
        coordinator: AuthenticationCoordinator,
        gateway: EscrowPaymentGateway,
        orders: OrderLifecycleManager,
        insurance: Callable[[Decimal], Decimal] | None = None,
        shipping_cost: Decimal = FLAT_SHIPPING_COST,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._coordinator = coordinator
        self._gateway = gateway
        self._orders = orders
        self._insurance = insurance
        self._shipping_cost = shipping_cost
        self._locks: dict[str, asyncio.Lock] = {}

    def listing_lock(self, listing_id: str) -> asyncio.Lock:
        """Lock serializing read-modify-write cycles on one listing."""
        return self._locks.setdefault(listing_id, asyncio.Lock())

    @returns_result
    async def run(
        self,
        listing_id: str,
        now: datetime,
        bid_id: str | None = None,
        counteroffer_id: str | None = None,
        partner_id: str | None = None,
    ) -> AcceptedSale:
        """Accept a bid (or the buyer's acceptance of a counteroffer).

        Exactly one of bid_id / counteroffer_id must be given.
        """
        if (bid_id is None) == (counteroffer_id is None):
            raise ValueError("Provide exactly one of bid_id or counteroffer_id")

        # --- Step 1: validate ---
        listing = await self._get_listing(listing_id)
        if counteroffer_id is not None:
            counteroffer = self._ledger.check_counteroffer_acceptable(
                listing, counteroffer_id
            ).unwrap()
            bid = listing.find_bid(counteroffer.bid_id)
            if bid is None:
                raise NotFoundError("Bid", counteroffer.bid_id)
            price = counteroffer.counter_amount
        else:
            bid = self._ledger.check_acceptable(listing, bid_id, now).unwrap()
            price = bid.amount

        partner = (
            self._coordinator.get_partner(partner_id)
            if partner_id
            else self._coordinator.select_partner(listing)
        )
        pricing = compute_breakdown(
            price,
            partner.base_fee,
            insurance=self._insurance,
            shipping_cost=self._shipping_cost,
        )

        compensations: list[tuple[str, Callable[[], Awaitable[object]]]] = []
        try:
            # --- Step 2: authorize escrow ---
            escrow = (
                await self._gateway.authorize(
                    EscrowPurpose.WINNING_BID_PAYMENT,
                    pricing.total_amount,
                    metadata={
                        "listing_id": listing.id,
                        "bid_id": bid.id,
                        "buyer_id": bid.bidder_id,
                    },
                )
            ).unwrap()
            compensations.append(
                ("release_authorization", lambda: self._gateway.refund(escrow.intent_id))
            )

            # --- Step 3: open the authentication request ---
            request = (
                await self._coordinator.open_request(bid, listing, partner.id, now)
            ).unwrap()
            compensations.append(
                ("discard_request", lambda: self._coordinator.discard(request.id))
            )

            # --- Step 4: pivot on a freshly fetched listing ---
            async with self.listing_lock(listing_id):
                listing = await self._get_listing(listing_id)
                if counteroffer_id is not None:
                    self._ledger.respond_to_counteroffer(
                        listing, counteroffer_id, True, now
                    ).unwrap()
                else:
                    self._ledger.accept_bid(listing, bid.id, now).unwrap()
                bid = listing.find_bid(bid.id)
                bid.authentication_request_id = request.id
                try:
                    await self._store.update(
                        EntityKind.LISTING, listing, expected_status=ListingStatus.ACTIVE
                    )
                except StaleRecordError as exc:
                    raise NotActiveError(listing_id, exc.actual) from exc
            self._locks.pop(listing_id, None)
        except ExchangeError as exc:
            await self._compensate(compensations, listing_id, exc)
            raise

        logger.info(
            "saga.pivot_committed",
            listing_id=listing.id,
            bid_id=bid.id,
            price=str(listing.current_price),
        )

        # --- Step 5: promote the order (forward-only) ---
        order = await self._orders.find_by_bid(bid.id)
        if order is None:
            order = (await self._orders.create_provisional(bid, listing, now)).unwrap()
        order = (
            await self._orders.promote(order.id, request.id, escrow.intent_id, pricing, now)
        ).unwrap()
        self._gateway.link_order(escrow.intent_id, order.id)
        await self._cancel_losing_orders(listing.id, order.id, now)

        return AcceptedSale(
            listing=listing,
            bid=bid,
            order=order,
            authentication_request=request,
            escrow=escrow,
            pricing=pricing,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_listing(self, listing_id: str) -> Listing:
        listing = await self._store.get(EntityKind.LISTING, listing_id)
        if listing is None:
            raise NotFoundError("Listing", listing_id)
        return listing

    async def _compensate(
        self,
        compensations: list[tuple[str, Callable[[], Awaitable[object]]]],
        listing_id: str,
        cause: ExchangeError,
    ) -> None:
        logger.warning(
            "saga.compensating",
            listing_id=listing_id,
            cause=cause.code,
            steps=[name for name, _ in reversed(compensations)],
        )
        for name, compensation in reversed(compensations):
            outcome = await compensation()
            ok = getattr(outcome, "ok", bool(outcome))
            if not ok:
                logger.error("saga.compensation_failed", listing_id=listing_id, step=name)

    async def _cancel_losing_orders(
        self, listing_id: str, winning_order_id: str, now: datetime
    ) -> None:
        """Close the provisional records of every other bid on a sold listing."""
        provisional = await self._store.query_by(
            EntityKind.ORDER, listing_id=listing_id, status=OrderStatus.PENDING_BID
        )
        for order in provisional:
            if order.id == winning_order_id:
                continue
            await self._orders.advance(
                order.id,
                OrderStatus.CANCELLED,
                now,
                reason="Listing sold to another bid",
            )
