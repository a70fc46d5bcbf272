"""Marketplace Service — the application layer REST routes call into.

Wires the components together:
    - ListingLedger         (bids, counteroffers, point of sale)
    - AcceptBidSaga         (escrow hold + authentication case + sale)
    - OrderLifecycleManager (buyer/seller-visible order)
    - AuthenticationCoordinator + VerificationStatusPoller (partner cases)
    - EscrowPaymentGateway  (capture, payout, refund)
    - NotificationSink      (one-way user messages)

Every public operation takes the acting user as an ActorContext and returns an
OperationResult. Storage failures propagate as StorageError.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from provenance_exchange.domain.enums import (
    AuthenticationOutcome,
    AuthenticationStatus,
    EntityKind,
    ListingStatus,
    NotificationType,
    OrderStatus,
)
from provenance_exchange.domain.exceptions import (
    ForbiddenError,
    InvalidBidError,
    NotFoundError,
    ValidationError,
    WrongStateError,
)
from provenance_exchange.domain.listing_ledger import ListingLedger
from provenance_exchange.domain.models import Notification, utc_now
from provenance_exchange.domain.pricing import compute_breakdown, flat_rate_insurance
from provenance_exchange.domain.results import OperationResult, returns_result
from provenance_exchange.logging_config import get_logger
from provenance_exchange.services.authentication_service import (
    DEFAULT_PARTNER_ID,
    AuthenticationCoordinator,
)
from provenance_exchange.services.order_service import OrderLifecycleManager
from provenance_exchange.services.saga import AcceptBidSaga, AcceptedSale
from provenance_exchange.services.verification_poller import (
    PollerRegistry,
    VerificationStatusPoller,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime
    from decimal import Decimal

    from provenance_exchange.config import Settings
    from provenance_exchange.domain.enums import ReturnType
    from provenance_exchange.domain.models import (
        AuthenticationRequest,
        Bid,
        Counteroffer,
        Listing,
        Order,
        PricingBreakdown,
    )
    from provenance_exchange.domain.protocols import (
        ActorContext,
        AuthenticationPartnerAPI,
        NotificationSink,
        RecordStore,
        ShippingRateProvider,
    )
    from provenance_exchange.services.escrow_gateway import EscrowPaymentGateway

logger = get_logger(__name__)


class MarketplaceService:
    """Single entry point for every marketplace operation."""

    def __init__(
        self,
        store: RecordStore,
        notifier: NotificationSink,
        partner_api: AuthenticationPartnerAPI,
        gateway: EscrowPaymentGateway,
        settings: Settings,
        pollers: PollerRegistry | None = None,
        shipping: ShippingRateProvider | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._partner_api = partner_api
        self._gateway = gateway
        self._settings = settings
        self._pollers = pollers or PollerRegistry()
        self._shipping = shipping
        self._clock = clock

        self._insurance = flat_rate_insurance(settings.insurance_rate)
        self.ledger = ListingLedger(
            bid_ttl=settings.bid_ttl,
            listing_duration=settings.listing_duration,
            counteroffer_limit=settings.counteroffer_limit,
        )
        self.coordinator = AuthenticationCoordinator(
            store, cancellation_fee=settings.cancellation_fee
        )
        self.orders = OrderLifecycleManager(
            store,
            return_window=settings.return_window,
            return_shipping_cost=settings.return_shipping_cost,
        )
        self.orders.add_payment_listener(self._on_payment_confirmed)
        self.saga = AcceptBidSaga(
            store,
            self.ledger,
            self.coordinator,
            gateway,
            self.orders,
            insurance=self._insurance,
            shipping_cost=settings.flat_shipping_cost,
        )

    @property
    def pollers(self) -> PollerRegistry:
        return self._pollers

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    @returns_result
    async def create_listing(
        self,
        actor: ActorContext,
        starting_price: Decimal,
        start_time: datetime | None = None,
        **descriptive: object,
    ) -> Listing:
        listing = self.ledger.open_listing(
            actor.user_id, starting_price, self._clock(), start_time=start_time, **descriptive
        ).unwrap()
        await self._store.save(EntityKind.LISTING, listing)
        logger.info(
            "listing.created",
            listing_id=listing.id,
            seller_id=actor.user_id,
            starting_price=str(starting_price),
            status=listing.status.value,
        )
        return listing

    async def get_listing(self, listing_id: str) -> Listing:
        listing = await self._store.get(EntityKind.LISTING, listing_id)
        if listing is None:
            raise NotFoundError("Listing", listing_id)
        return listing

    @returns_result
    async def sweep_listing(self, listing_id: str) -> list[str]:
        """Apply the clock to a listing and close the records of expired bids."""
        now = self._clock()
        async with self.saga.listing_lock(listing_id):
            listing = await self.get_listing(listing_id)
            before = listing.status
            expired = self.ledger.sweep_expired(listing, now).unwrap()
            if expired or listing.status != before:
                await self._store.update(EntityKind.LISTING, listing, expected_status=before)
        for bid_id in expired:
            await self._cancel_provisional(bid_id, "Bid expired", now)
        return expired

    # ------------------------------------------------------------------
    # Bidding and negotiation
    # ------------------------------------------------------------------

    @returns_result
    async def place_bid(self, actor: ActorContext, listing_id: str, amount: Decimal) -> Bid:
        if not actor.is_verified:
            raise InvalidBidError("UNVERIFIED_ACCOUNT", "Account verification is required to bid")

        now = self._clock()
        async with self.saga.listing_lock(listing_id):
            listing = await self.get_listing(listing_id)
            bid = self.ledger.place_bid(listing, actor.user_id, amount, now).unwrap()
            await self._store.update(
                EntityKind.LISTING, listing, expected_status=ListingStatus.ACTIVE
            )
        await self.orders.create_provisional(bid, listing, now)

        logger.info(
            "listing.bid_placed",
            listing_id=listing.id,
            bid_id=bid.id,
            bidder_id=actor.user_id,
            amount=str(amount),
        )
        await self._notify(
            listing.seller_id,
            "New bid received",
            f"A bid of ${amount} was placed on {listing.title or 'your listing'}",
            NotificationType.BID_RECEIVED,
            listing_id=listing.id,
            bid_id=bid.id,
        )
        return bid

    @returns_result
    async def accept_bid(
        self,
        actor: ActorContext,
        listing_id: str,
        bid_id: str,
        partner_id: str | None = None,
    ) -> AcceptedSale:
        listing = await self.get_listing(listing_id)
        self._require(actor, listing.seller_id, "accept bids on this listing")

        sale = (
            await self.saga.run(listing_id, self._clock(), bid_id=bid_id, partner_id=partner_id)
        ).unwrap()
        await self._announce_sale(sale)
        return sale

    @returns_result
    async def reject_bid(self, actor: ActorContext, listing_id: str, bid_id: str) -> Bid:
        now = self._clock()
        async with self.saga.listing_lock(listing_id):
            listing = await self.get_listing(listing_id)
            self._require(actor, listing.seller_id, "reject bids on this listing")

            bid = self.ledger.reject_bid(listing, bid_id, now).unwrap()
            await self._store.update(EntityKind.LISTING, listing, expected_status=listing.status)
        await self._cancel_provisional(bid.id, "Bid rejected by seller", now)

        logger.info("listing.bid_rejected", listing_id=listing.id, bid_id=bid.id)
        await self._notify(
            bid.bidder_id,
            "Bid declined",
            f"Your bid of ${bid.amount} was declined",
            NotificationType.BID_REJECTED,
            listing_id=listing.id,
            bid_id=bid.id,
        )
        return bid

    @returns_result
    async def make_counteroffer(
        self,
        actor: ActorContext,
        listing_id: str,
        bid_id: str,
        amount: Decimal,
        message: str = "",
    ) -> Counteroffer:
        async with self.saga.listing_lock(listing_id):
            listing = await self.get_listing(listing_id)
            self._require(actor, listing.seller_id, "counter bids on this listing")

            counteroffer = self.ledger.make_counteroffer(
                listing, bid_id, amount, message, self._clock()
            ).unwrap()
            await self._store.update(
                EntityKind.LISTING, listing, expected_status=ListingStatus.ACTIVE
            )

        logger.info(
            "listing.counteroffer_made",
            listing_id=listing.id,
            bid_id=bid_id,
            counteroffer_id=counteroffer.id,
            round=listing.counteroffer_count,
        )
        await self._notify(
            counteroffer.buyer_id,
            "Counteroffer received",
            f"The seller countered your ${counteroffer.original_amount} bid "
            f"with ${counteroffer.counter_amount}",
            NotificationType.COUNTEROFFER_RECEIVED,
            listing_id=listing.id,
            bid_id=bid_id,
            counteroffer_id=counteroffer.id,
        )
        return counteroffer

    @returns_result
    async def respond_to_counteroffer(
        self,
        actor: ActorContext,
        listing_id: str,
        counteroffer_id: str,
        accept: bool,
        partner_id: str | None = None,
    ) -> Counteroffer | AcceptedSale:
        """Buyer's answer. Accepting runs the same saga as accepting a bid."""
        now = self._clock()
        listing = await self.get_listing(listing_id)
        counteroffer = listing.find_counteroffer(counteroffer_id)
        if counteroffer is None:
            raise NotFoundError("Counteroffer", counteroffer_id)
        self._require(actor, counteroffer.buyer_id, "answer this counteroffer")

        await self._notify(
            counteroffer.seller_id,
            "Counteroffer answered",
            f"The buyer {'accepted' if accept else 'declined'} your counteroffer "
            f"of ${counteroffer.counter_amount}",
            NotificationType.COUNTEROFFER_ANSWERED,
            listing_id=listing.id,
            counteroffer_id=counteroffer.id,
        )

        if accept:
            sale = (
                await self.saga.run(
                    listing_id, now, counteroffer_id=counteroffer_id, partner_id=partner_id
                )
            ).unwrap()
            await self._announce_sale(sale)
            return sale

        async with self.saga.listing_lock(listing_id):
            listing = await self.get_listing(listing_id)
            answered = self.ledger.respond_to_counteroffer(
                listing, counteroffer_id, False, now
            ).unwrap()
            await self._store.update(EntityKind.LISTING, listing, expected_status=listing.status)
        await self._cancel_provisional(answered.bid_id, "Counteroffer declined", now)
        logger.info("listing.counteroffer_declined", counteroffer_id=counteroffer_id)
        return answered

    # ------------------------------------------------------------------
    # Payment and authentication
    # ------------------------------------------------------------------

    @returns_result
    async def confirm_payment(self, actor: ActorContext, order_id: str) -> Order:
        """Capture the escrow hold, then start authentication via the listener."""
        order = await self.orders.get_order(order_id)
        self._require(actor, order.buyer_id, "pay for this order")
        if order.status != OrderStatus.PENDING_PAYMENT:
            raise WrongStateError(order.status, OrderStatus.PAYMENT_CONFIRMED)
        if order.payment_intent_id is None:
            raise WrongStateError(order.status, "capture")

        (await self._gateway.capture(order.payment_intent_id)).unwrap()
        (await self.orders.confirm_payment(order.id, self._clock())).unwrap()
        return await self.orders.get_order(order.id)

    @returns_result
    async def start_authentication(self, order_id: str) -> AuthenticationRequest:
        """Submit the case to the partner and begin polling.

        Runs automatically after payment; callable again if the partner was
        unreachable at that moment.
        """
        order = await self.orders.get_order(order_id)
        if order.status != OrderStatus.PAYMENT_CONFIRMED:
            raise WrongStateError(order.status, OrderStatus.AUTHENTICATION_IN_PROGRESS)
        if order.authentication_request_id is None:
            raise NotFoundError("AuthenticationRequest", f"order:{order.id}")

        request = await self.coordinator.get_request(order.authentication_request_id)
        listing = await self.get_listing(order.listing_id)
        reference = await self._partner_api.submit(request, listing)

        now = self._clock()
        request = (await self.coordinator.start(request.id, reference, now)).unwrap()
        (await self.orders.advance(order.id, OrderStatus.AUTHENTICATION_IN_PROGRESS, now)).unwrap()

        self._watch(request.id, reference)
        return request

    async def resume_pollers(self) -> list[str]:
        """Re-arm a poller for every case a partner is still inspecting.

        Pollers live in memory; call this once at startup.
        """
        in_progress = await self._store.query_by(
            EntityKind.AUTHENTICATION_REQUEST, status=AuthenticationStatus.IN_PROGRESS
        )
        resumed = []
        for request in in_progress:
            if request.partner_reference is None:
                logger.error("authentication.missing_reference", request_id=request.id)
                continue
            existing = self._pollers.get(request.id)
            if existing is not None and not existing.done:
                continue
            self._watch(request.id, request.partner_reference)
            resumed.append(request.id)
        if resumed:
            logger.info("authentication.pollers_resumed", count=len(resumed))
        return resumed

    @returns_result
    async def record_authentication_result(
        self,
        request_id: str,
        outcome: AuthenticationOutcome,
        details: str = "",
    ) -> AuthenticationRequest:
        """Record a verdict delivered outside the poller (e.g. by a partner webhook)."""
        await self._pollers.dispose(request_id)
        request = (
            await self.coordinator.record_result(request_id, outcome, details, now=self._clock())
        ).unwrap()
        await self.on_authentication_result(request)
        return request

    async def on_authentication_result(self, request: AuthenticationRequest) -> None:
        """Drive the order, escrow and notifications from a terminal verdict."""
        orders = await self._store.query_by(
            EntityKind.ORDER, authentication_request_id=request.id
        )
        if not orders:
            logger.error("authentication.orphan_result", request_id=request.id)
            return

        now = self._clock()
        order = orders[0]
        applied = await self.orders.apply_authentication_result(order.id, request, now)
        if not applied.ok:
            logger.warning(
                "authentication.result_not_applied",
                order_id=order.id,
                request_id=request.id,
                code=applied.code,
            )
            return

        passed = request.status == AuthenticationStatus.SUCCESS
        notification_type = (
            NotificationType.AUTHENTICATION_PASSED
            if passed
            else NotificationType.AUTHENTICATION_FAILED
        )
        for user_id in (order.buyer_id, order.seller_id):
            await self._notify(
                user_id,
                "Authentication passed" if passed else "Authentication failed",
                (
                    "The item was verified authentic and will ship soon"
                    if passed
                    else "The item failed authentication; the order was cancelled"
                ),
                notification_type,
                order_id=order.id,
                authentication_request_id=request.id,
            )

        if not passed:
            refunded = await self._refund(order, None, now)
            if not refunded.ok:
                logger.error("authentication.refund_pending", order_id=order.id)

    # ------------------------------------------------------------------
    # Fulfilment
    # ------------------------------------------------------------------

    @returns_result
    async def ship(
        self,
        actor: ActorContext,
        order_id: str,
        tracking_number: str | None = None,
        carrier: str | None = None,
        estimated_delivery: datetime | None = None,
    ) -> Order:
        order = await self.orders.get_order(order_id)
        self._require(actor, order.seller_id, "ship this order")

        if tracking_number is None:
            if self._shipping is None:
                raise ValidationError("A tracking number is required", "TRACKING_REQUIRED")
            label = await self._shipping.create_label(order)
            tracking_number = label.tracking_number
            carrier = label.carrier
            estimated_delivery = label.estimated_delivery

        shipped = (
            await self.orders.attach_shipping(
                order.id,
                tracking_number,
                carrier or "unknown",
                self._clock(),
                estimated_delivery=estimated_delivery,
            )
        ).unwrap()

        await self._notify(
            shipped.buyer_id,
            "Your order has shipped",
            f"Tracking number {shipped.tracking_number} ({shipped.carrier})",
            NotificationType.ORDER_SHIPPED,
            order_id=shipped.id,
        )
        return shipped

    @returns_result
    async def mark_delivered(self, order_id: str) -> Order:
        return (
            await self.orders.advance(order_id, OrderStatus.DELIVERED, self._clock())
        ).unwrap()

    @returns_result
    async def advance_order(
        self,
        order_id: str,
        status: OrderStatus,
        notes: str | None = None,
        reason: str | None = None,
    ) -> Order:
        return (
            await self.orders.advance(order_id, status, self._clock(), notes=notes, reason=reason)
        ).unwrap()

    @returns_result
    async def confirm_receipt(self, actor: ActorContext, order_id: str) -> Order:
        order = await self.orders.get_order(order_id)
        self._require(actor, order.buyer_id, "confirm receipt of this order")
        return (await self.orders.confirm_receipt(order.id, self._clock())).unwrap()

    # ------------------------------------------------------------------
    # Returns and refunds
    # ------------------------------------------------------------------

    @returns_result
    async def request_return(
        self,
        actor: ActorContext,
        order_id: str,
        reason: str,
        return_type: ReturnType,
    ) -> Order:
        order = await self.orders.get_order(order_id)
        self._require(actor, order.buyer_id, "return this order")
        return (
            await self.orders.request_return(order.id, reason, return_type, self._clock())
        ).unwrap()

    @returns_result
    async def process_return(self, actor: ActorContext, order_id: str) -> Order:
        """Seller received the item back; refund the buyer."""
        order = await self.orders.get_order(order_id)
        self._require(actor, order.seller_id, "process the return of this order")

        now = self._clock()
        returned = (await self.orders.process_return(order.id, now)).unwrap()
        (await self._refund(returned, self.orders.refund_amount(returned), now)).unwrap()
        return await self.orders.get_order(order.id)

    @returns_result
    async def issue_refund(self, order_id: str) -> Order:
        """Refund a cancelled or returned order whose refund has not gone out yet."""
        order = await self.orders.get_order(order_id)
        if order.status == OrderStatus.CANCELLED:
            amount = None
        elif order.status == OrderStatus.RETURNED:
            amount = self.orders.refund_amount(order)
        else:
            raise WrongStateError(order.status, "refund")

        (await self._refund(order, amount, self._clock())).unwrap()
        return await self.orders.get_order(order.id)

    # ------------------------------------------------------------------
    # Payout
    # ------------------------------------------------------------------

    @returns_result
    async def release_payout(self, order_id: str) -> Order:
        """Pay the seller once the order clears the payout gate."""
        now = self._clock()
        order = (await self.orders.check_payout(order_id, now)).unwrap()
        (await self._gateway.payout(order.id, order.seller_id, order.final_price)).unwrap()
        released = (await self.orders.mark_payout_released(order.id, now)).unwrap()

        await self._notify(
            released.seller_id,
            "Payout released",
            f"${released.final_price} for your sale is on its way",
            NotificationType.PAYOUT_RELEASED,
            order_id=released.id,
        )
        return released

    async def run_maintenance(self) -> list[str]:
        """Auto-complete delivered orders whose return window has elapsed."""
        return await self.orders.sweep_return_windows(self._clock())

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_order(self, actor: ActorContext, order_id: str) -> Order:
        order = await self.orders.get_order(order_id)
        if actor.user_id not in (order.buyer_id, order.seller_id):
            raise ForbiddenError(actor.user_id, f"view order {order_id}")
        return order

    async def list_orders(self, actor: ActorContext, role: str = "buyer") -> list[Order]:
        orders = await self.orders.list_for_user(actor.user_id, role)
        return [o for o in orders if o.status != OrderStatus.PENDING_BID]

    async def get_authentication_request(self, request_id: str) -> AuthenticationRequest:
        return await self.coordinator.get_request(request_id)

    def quote(
        self,
        item_price: Decimal,
        listing: Listing | None = None,
        partner_id: str | None = None,
    ) -> PricingBreakdown:
        """Price breakdown a buyer would pay for an item at `item_price`."""
        if partner_id:
            partner = self.coordinator.get_partner(partner_id)
        elif listing is not None:
            partner = self.coordinator.select_partner(listing)
        else:
            partner = self.coordinator.get_partner(DEFAULT_PARTNER_ID)
        return compute_breakdown(
            item_price,
            partner.base_fee,
            insurance=self._insurance,
            shipping_cost=self._settings.flat_shipping_cost,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _on_payment_confirmed(self, order: Order) -> None:
        result = await self.start_authentication(order.id)
        if not result.ok:
            # Order stays payment_confirmed; start_authentication can be retried.
            logger.warning(
                "authentication.start_deferred",
                order_id=order.id,
                code=result.code,
                message=result.error.message,
            )

    async def _announce_sale(self, sale: AcceptedSale) -> None:
        await self._notify(
            sale.bid.bidder_id,
            "Your offer was accepted",
            f"Pay ${sale.pricing.total_amount} to complete your purchase",
            NotificationType.BID_ACCEPTED,
            listing_id=sale.listing.id,
            bid_id=sale.bid.id,
            order_id=sale.order.id,
        )

    async def _refund(
        self, order: Order, amount: Decimal | None, now: datetime
    ) -> OperationResult:
        """Refund the buyer's payment; `amount=None` refunds it in full."""
        if order.payment_intent_id is None or order.refunded_at is not None:
            return OperationResult.success(None)

        result = await self._gateway.refund(order.payment_intent_id, amount)
        if not result.ok:
            logger.error(
                "escrow.refund_failed",
                order_id=order.id,
                intent_id=order.payment_intent_id,
                code=result.code,
            )
            return result

        await self.orders.mark_refunded(order.id, now)
        await self._notify(
            order.buyer_id,
            "Refund issued",
            f"${result.value.amount} has been refunded to you",
            NotificationType.REFUND_ISSUED,
            order_id=order.id,
        )
        return result

    async def _cancel_provisional(self, bid_id: str, reason: str, now: datetime) -> None:
        order = await self.orders.find_by_bid(bid_id)
        if order is not None and order.status == OrderStatus.PENDING_BID:
            await self.orders.advance(order.id, OrderStatus.CANCELLED, now, reason=reason)

    def _watch(self, request_id: str, reference: str) -> None:
        self._pollers.start(
            VerificationStatusPoller(
                request_id,
                reference,
                self._partner_api,
                self.coordinator,
                on_terminal=self.on_authentication_result,
                interval=self._settings.poll_interval_seconds,
            )
        )

    async def _notify(
        self,
        user_id: str,
        title: str,
        message: str,
        notification_type: NotificationType,
        **related_ids: str,
    ) -> None:
        await self._notifier.emit(
            Notification(
                user_id=user_id,
                title=title,
                message=message,
                type=notification_type,
                related_ids=related_ids,
            )
        )

    @staticmethod
    def _require(actor: ActorContext, user_id: str, action: str) -> None:
        if actor.user_id != user_id:
            raise ForbiddenError(actor.user_id, action)

