"""Order Lifecycle Manager — the buyer/seller-visible record of a sale.

Coordinates between:
    - Domain state machine (OrderStateMachine transition guard)
    - The record store (one Order snapshot per sale)
    - Payment-confirmed listeners (authentication start)

Every transition is validated by OrderStateMachine before the status field
changes, and stamps its one-shot timestamp. Payout eligibility is a dual gate:
the order must be delivered (or completed) AND either the buyer confirmed
receipt or the return window has elapsed since delivery.
"""

from __future__ import annotations

from collections import Counter
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from provenance_exchange.domain.enums import (
    AuthenticationStatus,
    EntityKind,
    OrderStatus,
    ReturnType,
)
from provenance_exchange.domain.exceptions import (
    AlreadyShippedError,
    NotFoundError,
    PayoutNotAllowedError,
    StateConflictError,
    ValidationError,
    WrongStateError,
)
from provenance_exchange.domain.models import Order, utc_now
from provenance_exchange.domain.results import returns_result
from provenance_exchange.domain.state_machine import (
    ORDER_EVENT_FOR_STATUS,
    OrderStateMachine,
    fire_transition,
)
from provenance_exchange.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from provenance_exchange.domain.models import (
        AuthenticationRequest,
        Bid,
        Listing,
        PricingBreakdown,
    )
    from provenance_exchange.domain.protocols import RecordStore

    PaymentListener = Callable[[Order], Awaitable[None]]

logger = get_logger(__name__)

DEFAULT_RETURN_WINDOW = timedelta(hours=72)
RETURN_SHIPPING_COST = Decimal("25")

# Timestamp stamped the first time an order enters each status.
_TIMESTAMP_FIELD: dict[OrderStatus, str] = {
    OrderStatus.PENDING_PAYMENT: "promoted_at",
    OrderStatus.PAYMENT_CONFIRMED: "payment_confirmed_at",
    OrderStatus.AUTHENTICATION_IN_PROGRESS: "authentication_started_at",
    OrderStatus.AUTHENTICATED: "authenticated_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.RETURN_REQUESTED: "return_requested_at",
    OrderStatus.RETURNED: "returned_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

_SELLER_PAYS_RETURN = (ReturnType.ITEM_MISMATCH, ReturnType.NOT_AS_DESCRIBED)


class OrderLifecycleManager:
    """Manages the order lifecycle from provisional record through payout."""

    def __init__(
        self,
        store: RecordStore,
        return_window: timedelta = DEFAULT_RETURN_WINDOW,
        return_shipping_cost: Decimal = RETURN_SHIPPING_COST,
    ) -> None:
        self._store = store
        self._return_window = return_window
        self._return_shipping_cost = return_shipping_cost
        self._payment_listeners: list[PaymentListener] = []

    def add_payment_listener(self, listener: PaymentListener) -> None:
        """Register a coroutine called with the order once payment is confirmed."""
        self._payment_listeners.append(listener)

    # ------------------------------------------------------------------
    # Creation and promotion
    # ------------------------------------------------------------------

    @returns_result
    async def create_provisional(self, bid: Bid, listing: Listing, now: datetime) -> Order:
        """Open the provisional record for a freshly placed bid."""
        order = Order(
            listing_id=listing.id,
            bid_id=bid.id,
            buyer_id=bid.bidder_id,
            seller_id=listing.seller_id,
            final_price=bid.amount,
            created_at=now,
            updated_at=now,
        )
        await self._store.save(EntityKind.ORDER, order)
        logger.info("order.provisional_created", order_id=order.id, bid_id=bid.id)
        return order

    @returns_result
    async def promote(
        self,
        order_id: str,
        authentication_request_id: str,
        payment_intent_id: str,
        pricing: PricingBreakdown,
        now: datetime,
    ) -> Order:
        """Turn the provisional record into the order for an accepted sale."""
        order = await self._get_or_raise(order_id)
        self._transition(order, OrderStatus.PENDING_PAYMENT, now)
        order.authentication_request_id = authentication_request_id
        order.payment_intent_id = payment_intent_id
        order.pricing = pricing
        order.final_price = pricing.item_price
        await self._store.update(EntityKind.ORDER, order)

        logger.info(
            "order.promoted",
            order_id=order.id,
            authentication_request_id=authentication_request_id,
            total=str(pricing.total_amount),
        )
        return order

    @returns_result
    async def confirm_payment(self, order_id: str, now: datetime) -> Order:
        """Mark payment received and signal the authentication start."""
        order = await self._get_or_raise(order_id)
        if order.status != OrderStatus.PENDING_PAYMENT:
            raise WrongStateError(order.status, OrderStatus.PAYMENT_CONFIRMED)

        self._transition(order, OrderStatus.PAYMENT_CONFIRMED, now)
        await self._store.update(EntityKind.ORDER, order)
        logger.info("order.payment_confirmed", order_id=order.id)

        for listener in self._payment_listeners:
            await listener(order)
        return order

    # ------------------------------------------------------------------
    # Generic transitions
    # ------------------------------------------------------------------

    @returns_result
    async def advance(
        self,
        order_id: str,
        status: OrderStatus,
        now: datetime,
        notes: str | None = None,
        reason: str | None = None,
    ) -> Order:
        """Move an order to `status` if the transition table allows it."""
        order = await self._get_or_raise(order_id)
        self._transition(order, status, now)
        if notes:
            order.notes = notes
        if status == OrderStatus.CANCELLED:
            order.cancellation_reason = reason or notes or "Cancelled"
        await self._store.update(EntityKind.ORDER, order)

        logger.info("order.advanced", order_id=order.id, status=status.value)
        return order

    @returns_result
    async def attach_shipping(
        self,
        order_id: str,
        tracking_number: str,
        carrier: str,
        now: datetime,
        estimated_delivery: datetime | None = None,
    ) -> Order:
        """Record shipment. Replaying the same tracking number is a no-op."""
        order = await self._get_or_raise(order_id)
        if order.tracking_number is not None:
            if order.tracking_number == tracking_number:
                return order
            raise AlreadyShippedError(order.id, order.tracking_number)

        self._transition(order, OrderStatus.SHIPPED, now)
        order.tracking_number = tracking_number
        order.carrier = carrier
        order.estimated_delivery = estimated_delivery
        await self._store.update(EntityKind.ORDER, order)

        logger.info(
            "order.shipped",
            order_id=order.id,
            tracking_number=tracking_number,
            carrier=carrier,
        )
        return order

    @returns_result
    async def apply_authentication_result(
        self,
        order_id: str,
        request: AuthenticationRequest,
        now: datetime,
    ) -> Order:
        """Fork the order on a terminal authentication verdict."""
        order = await self._get_or_raise(order_id)

        if request.status == AuthenticationStatus.SUCCESS:
            self._transition(order, OrderStatus.AUTHENTICATED, now)
        elif request.status == AuthenticationStatus.FAILED:
            self._transition(order, OrderStatus.CANCELLED, now)
            order.cancellation_reason = (
                "Authentication failed; seller liable for "
                f"{request.total_seller_costs} in authentication costs"
            )
        else:
            raise WrongStateError(request.status, "apply_authentication_result")

        await self._store.update(EntityKind.ORDER, order)
        logger.info(
            "order.authentication_applied",
            order_id=order.id,
            request_id=request.id,
            status=order.status.value,
        )
        return order

    # ------------------------------------------------------------------
    # Receipt and returns
    # ------------------------------------------------------------------

    @returns_result
    async def confirm_receipt(self, order_id: str, now: datetime) -> Order:
        """Buyer confirms the item arrived as described; completes the order."""
        order = await self._get_or_raise(order_id)
        self._transition(order, OrderStatus.COMPLETED, now)
        order.buyer_confirmed_at = now
        await self._store.update(EntityKind.ORDER, order)

        logger.info("order.receipt_confirmed", order_id=order.id)
        return order

    @returns_result
    async def request_return(
        self,
        order_id: str,
        reason: str,
        return_type: ReturnType,
        now: datetime,
    ) -> Order:
        """Open a return inside the window that starts at delivery."""
        order = await self._get_or_raise(order_id)
        if order.status != OrderStatus.DELIVERED:
            raise WrongStateError(order.status, OrderStatus.RETURN_REQUESTED)
        if self.return_window_remaining(order, now) <= timedelta(0):
            raise StateConflictError(
                f"Return window for order {order.id} has expired", "RETURN_WINDOW_EXPIRED"
            )

        self._transition(order, OrderStatus.RETURN_REQUESTED, now)
        order.return_reason = reason
        order.return_type = return_type
        order.return_shipping_cost = self._return_shipping_cost
        order.return_shipping_paid_by = "seller" if return_type in _SELLER_PAYS_RETURN else "buyer"
        await self._store.update(EntityKind.ORDER, order)

        logger.info(
            "order.return_requested",
            order_id=order.id,
            return_type=return_type.value,
            paid_by=order.return_shipping_paid_by,
        )
        return order

    @returns_result
    async def process_return(self, order_id: str, now: datetime) -> Order:
        order = await self._get_or_raise(order_id)
        self._transition(order, OrderStatus.RETURNED, now)
        await self._store.update(EntityKind.ORDER, order)
        logger.info("order.returned", order_id=order.id)
        return order

    def refund_amount(self, order: Order) -> Decimal:
        """Full refund when the seller pays return shipping, else minus that cost."""
        if order.return_shipping_paid_by == "seller":
            return order.final_price
        shipping = order.return_shipping_cost or self._return_shipping_cost
        return max(order.final_price - shipping, Decimal("0"))

    def return_window_remaining(self, order: Order, now: datetime) -> timedelta:
        if order.delivered_at is None:
            return timedelta(0)
        return max(order.delivered_at + self._return_window - now, timedelta(0))

    @returns_result
    async def mark_refunded(self, order_id: str, now: datetime) -> Order:
        order = await self._get_or_raise(order_id)
        if order.refunded_at is None:
            order.refunded_at = now
            order.updated_at = now
            await self._store.update(EntityKind.ORDER, order)
        return order

    # ------------------------------------------------------------------
    # Payout gate
    # ------------------------------------------------------------------

    def payout_eligible(self, order: Order, now: datetime) -> bool:
        if order.payout_released_at is not None:
            return False
        if order.status not in (OrderStatus.DELIVERED, OrderStatus.COMPLETED):
            return False
        if order.buyer_confirmed_at is not None:
            return True
        return order.delivered_at is not None and now - order.delivered_at >= self._return_window

    @returns_result
    async def check_payout(self, order_id: str, now: datetime) -> Order:
        """Return the order if its proceeds may be released now."""
        order = await self._get_or_raise(order_id)
        self._ensure_payout_allowed(order, now)
        return order

    @returns_result
    async def mark_payout_released(self, order_id: str, now: datetime) -> Order:
        """Record the payout. Succeeds at most once per order."""
        order = await self._get_or_raise(order_id)
        self._ensure_payout_allowed(order, now)
        order.payout_released_at = now
        order.updated_at = now
        await self._store.update(EntityKind.ORDER, order)

        logger.info("order.payout_released", order_id=order.id, amount=str(order.final_price))
        return order

    # ------------------------------------------------------------------
    # Housekeeping and read helpers
    # ------------------------------------------------------------------

    async def sweep_return_windows(self, now: datetime) -> list[str]:
        """Auto-complete delivered orders whose return window has elapsed."""
        completed: list[str] = []
        delivered = await self._store.query_by(EntityKind.ORDER, status=OrderStatus.DELIVERED)
        for order in delivered:
            if self.return_window_remaining(order, now) > timedelta(0):
                continue
            self._transition(order, OrderStatus.COMPLETED, now)
            order.notes = "Return window expired"
            await self._store.update(EntityKind.ORDER, order)
            completed.append(order.id)

        if completed:
            logger.info("order.return_windows_swept", completed=len(completed))
        return completed

    async def get_order(self, order_id: str) -> Order:
        return await self._get_or_raise(order_id)

    async def find_by_bid(self, bid_id: str) -> Order | None:
        orders = await self._store.query_by(EntityKind.ORDER, bid_id=bid_id)
        return orders[0] if orders else None

    async def list_for_user(self, user_id: str, role: str = "buyer") -> list[Order]:
        """Orders where the user is the buyer (role="buyer") or the seller."""
        field = self._role_field(role)
        orders = await self._store.query_by(EntityKind.ORDER, **{field: user_id})
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def summary(self, user_id: str, role: str = "buyer") -> dict:
        orders = [
            o for o in await self.list_for_user(user_id, role)
            if o.status != OrderStatus.PENDING_BID
        ]
        counts = Counter(o.status.value for o in orders)
        return {
            "user_id": user_id,
            "role": role,
            "total_orders": len(orders),
            "by_status": dict(counts),
            "total_value": str(sum((o.final_price for o in orders), Decimal("0"))),
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_or_raise(self, order_id: str) -> Order:
        order = await self._store.get(EntityKind.ORDER, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    def _transition(self, order: Order, target: OrderStatus, now: datetime | None) -> None:
        """Validate and apply a transition, stamping its timestamp once."""
        event = ORDER_EVENT_FOR_STATUS.get(target)
        if event is None:
            raise WrongStateError(order.status, target)

        order.status = OrderStatus(fire_transition(OrderStateMachine, order.status, event))
        now = now or utc_now()
        field = _TIMESTAMP_FIELD[target]
        if getattr(order, field) is None:
            setattr(order, field, now)
        order.updated_at = now

    def _ensure_payout_allowed(self, order: Order, now: datetime) -> None:
        if order.payout_released_at is not None:
            raise PayoutNotAllowedError(order.id, "payout already released")
        if order.status not in (OrderStatus.DELIVERED, OrderStatus.COMPLETED):
            raise PayoutNotAllowedError(order.id, f"order is {order.status}")
        if not self.payout_eligible(order, now):
            raise PayoutNotAllowedError(
                order.id, "buyer has not confirmed receipt and the return window is open"
            )

    @staticmethod
    def _role_field(role: str) -> str:
        if role == "buyer":
            return "buyer_id"
        if role == "seller":
            return "seller_id"
        raise ValidationError(f"Unknown role: {role}", "INVALID_ROLE")
