"""Tests for the OrderLifecycleManager."""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from provenance_exchange.domain.enums import (
    AuthenticationStatus,
    OrderStatus,
    ReturnType,
)
from provenance_exchange.domain.listing_ledger import ListingLedger
from provenance_exchange.domain.models import AuthenticationRequest, Listing, Order
from provenance_exchange.domain.pricing import compute_breakdown
from provenance_exchange.infrastructure.memory_store import InMemoryRecordStore
from provenance_exchange.services.order_service import OrderLifecycleManager


@pytest.fixture
def orders(store: InMemoryRecordStore) -> OrderLifecycleManager:
    return OrderLifecycleManager(store)


async def _promoted_order(
    orders: OrderLifecycleManager,
    ledger: ListingLedger,
    listing: Listing,
    now: datetime,
) -> Order:
    bid = ledger.place_bid(listing, "buyer-1", Decimal("9000"), now).unwrap()
    order = (await orders.create_provisional(bid, listing, now)).unwrap()
    pricing = compute_breakdown(Decimal("9000"), Decimal("150"))
    return (await orders.promote(order.id, "auth-1", "pi_1", pricing, now)).unwrap()


async def _delivered_order(
    orders: OrderLifecycleManager,
    ledger: ListingLedger,
    listing: Listing,
    now: datetime,
) -> Order:
    order = await _promoted_order(orders, ledger, listing, now)
    await orders.confirm_payment(order.id, now)
    for status in (OrderStatus.AUTHENTICATION_IN_PROGRESS, OrderStatus.AUTHENTICATED):
        (await orders.advance(order.id, status, now)).unwrap()
    (await orders.attach_shipping(order.id, "1Z999", "UPS", now)).unwrap()
    return (await orders.advance(order.id, OrderStatus.DELIVERED, now)).unwrap()


def _auth_request(
    status: AuthenticationStatus, total: Decimal | None = None
) -> AuthenticationRequest:
    return AuthenticationRequest(
        id="auth-1",
        bid_id="b",
        buyer_id="buyer-1",
        seller_id="seller-1",
        listing_id="l",
        partner_id="watchbox",
        status=status,
        authentication_fee=Decimal("150"),
        shipping_costs=Decimal("25"),
        cancellation_fee=Decimal("45"),
        total_seller_costs=total,
    )


class TestProvisionalAndPromotion:
    @pytest.mark.asyncio
    async def test_promote_attaches_request_and_pricing(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        order = await _promoted_order(orders, ledger, active_listing, now)

        assert order.status == OrderStatus.PENDING_PAYMENT
        assert order.authentication_request_id == "auth-1"
        assert order.payment_intent_id == "pi_1"
        assert order.pricing.total_amount == Decimal("10255.00")
        assert order.promoted_at == now

    @pytest.mark.asyncio
    async def test_promote_twice_fails(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        order = await _promoted_order(orders, ledger, active_listing, now)
        pricing = compute_breakdown(Decimal("9000"), Decimal("150"))
        again = await orders.promote(order.id, "auth-2", "pi_2", pricing, now)
        assert again.code == "WRONG_STATE"


class TestPaymentConfirmation:
    @pytest.mark.asyncio
    async def test_listener_receives_confirmed_order(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        listener = AsyncMock()
        orders.add_payment_listener(listener)
        order = await _promoted_order(orders, ledger, active_listing, now)

        confirmed = (await orders.confirm_payment(order.id, now)).unwrap()

        assert confirmed.status == OrderStatus.PAYMENT_CONFIRMED
        listener.assert_awaited_once()
        assert listener.await_args.args[0].id == order.id

    @pytest.mark.asyncio
    async def test_cannot_pay_provisional_order(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        bid = ledger.place_bid(active_listing, "buyer-1", Decimal("9000"), now).unwrap()
        order = (await orders.create_provisional(bid, active_listing, now)).unwrap()
        assert (await orders.confirm_payment(order.id, now)).code == "WRONG_STATE"


class TestTransitions:
    @pytest.mark.asyncio
    async def test_cannot_skip_authentication(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        order = await _promoted_order(orders, ledger, active_listing, now)
        result = await orders.advance(order.id, OrderStatus.SHIPPED, now)
        assert result.code == "WRONG_STATE"
        assert (await orders.get_order(order.id)).status == OrderStatus.PENDING_PAYMENT

    @pytest.mark.asyncio
    async def test_timestamps_are_stamped_once(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        order = await _delivered_order(orders, ledger, active_listing, now)
        assert order.delivered_at == now
        assert order.shipped_at == now
        assert order.payment_confirmed_at == now

    @pytest.mark.asyncio
    async def test_cancel_records_reason(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        order = await _promoted_order(orders, ledger, active_listing, now)
        cancelled = (
            await orders.advance(order.id, OrderStatus.CANCELLED, now, reason="Buyer walked away")
        ).unwrap()
        assert cancelled.cancellation_reason == "Buyer walked away"
        assert cancelled.cancelled_at == now


class TestShipping:
    @pytest.mark.asyncio
    async def test_same_tracking_is_idempotent(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        order = await _promoted_order(orders, ledger, active_listing, now)
        await orders.confirm_payment(order.id, now)
        await orders.advance(order.id, OrderStatus.AUTHENTICATION_IN_PROGRESS, now)
        await orders.advance(order.id, OrderStatus.AUTHENTICATED, now)

        first = (await orders.attach_shipping(order.id, "1Z999", "UPS", now)).unwrap()
        replay = (
            await orders.attach_shipping(order.id, "1Z999", "UPS", now + timedelta(hours=1))
        ).unwrap()
        conflict = await orders.attach_shipping(order.id, "1Z000", "UPS", now)

        assert replay.shipped_at == first.shipped_at
        assert conflict.code == "ALREADY_SHIPPED"

    @pytest.mark.asyncio
    async def test_cannot_ship_unauthenticated(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        order = await _promoted_order(orders, ledger, active_listing, now)
        result = await orders.attach_shipping(order.id, "1Z999", "UPS", now)
        assert result.code == "WRONG_STATE"
        assert (await orders.get_order(order.id)).tracking_number is None


class TestAuthenticationFork:
    @pytest.mark.asyncio
    async def test_failure_cancels_order(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        order = await _promoted_order(orders, ledger, active_listing, now)
        await orders.confirm_payment(order.id, now)
        await orders.advance(order.id, OrderStatus.AUTHENTICATION_IN_PROGRESS, now)

        request = _auth_request(AuthenticationStatus.FAILED, Decimal("220"))
        cancelled = (await orders.apply_authentication_result(order.id, request, now)).unwrap()

        assert cancelled.status == OrderStatus.CANCELLED
        assert "220" in cancelled.cancellation_reason

    @pytest.mark.asyncio
    async def test_success_authenticates_order(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        order = await _promoted_order(orders, ledger, active_listing, now)
        await orders.confirm_payment(order.id, now)
        await orders.advance(order.id, OrderStatus.AUTHENTICATION_IN_PROGRESS, now)

        request = _auth_request(AuthenticationStatus.SUCCESS)
        result = (await orders.apply_authentication_result(order.id, request, now)).unwrap()
        assert result.status == OrderStatus.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_non_terminal_request_rejected(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        order = await _promoted_order(orders, ledger, active_listing, now)
        request = _auth_request(AuthenticationStatus.IN_PROGRESS)
        assert (await orders.apply_authentication_result(order.id, request, now)).code == (
            "WRONG_STATE"
        )


class TestReturns:
    @pytest.mark.asyncio
    async def test_buyer_remorse_refund_excludes_return_shipping(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        order = await _delivered_order(orders, ledger, active_listing, now)
        requested = (
            await orders.request_return(
                order.id, "Changed my mind", ReturnType.BUYER_REMORSE, now + timedelta(hours=1)
            )
        ).unwrap()

        assert requested.return_shipping_paid_by == "buyer"
        assert orders.refund_amount(requested) == Decimal("8975")

    @pytest.mark.asyncio
    async def test_not_as_described_refunds_in_full(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        order = await _delivered_order(orders, ledger, active_listing, now)
        requested = (
            await orders.request_return(order.id, "Wrong bezel", ReturnType.NOT_AS_DESCRIBED, now)
        ).unwrap()
        returned = (await orders.process_return(order.id, now)).unwrap()

        assert requested.return_shipping_paid_by == "seller"
        assert returned.status == OrderStatus.RETURNED
        assert orders.refund_amount(returned) == Decimal("9000")

    @pytest.mark.asyncio
    async def test_window_closes_72_hours_after_delivery(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        order = await _delivered_order(orders, ledger, active_listing, now)
        late = await orders.request_return(
            order.id, "Too late", ReturnType.BUYER_REMORSE, now + timedelta(hours=72)
        )
        assert late.code == "RETURN_WINDOW_EXPIRED"
        assert orders.return_window_remaining(order, now + timedelta(hours=70)) == timedelta(
            hours=2
        )


class TestPayoutGate:
    @pytest.mark.asyncio
    async def test_not_eligible_before_delivery(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        order = await _promoted_order(orders, ledger, active_listing, now)
        assert (await orders.check_payout(order.id, now)).code == "PAYOUT_NOT_ALLOWED"

    @pytest.mark.asyncio
    async def test_delivered_needs_window_or_confirmation(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        order = await _delivered_order(orders, ledger, active_listing, now)

        assert not orders.payout_eligible(order, now + timedelta(hours=1))
        assert orders.payout_eligible(order, now + timedelta(hours=72))

        confirmed = (await orders.confirm_receipt(order.id, now + timedelta(hours=1))).unwrap()
        assert confirmed.status == OrderStatus.COMPLETED
        assert orders.payout_eligible(confirmed, now + timedelta(hours=1))

    @pytest.mark.asyncio
    async def test_payout_released_once(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        order = await _delivered_order(orders, ledger, active_listing, now)
        await orders.confirm_receipt(order.id, now)

        released = (await orders.mark_payout_released(order.id, now)).unwrap()
        again = await orders.mark_payout_released(order.id, now)

        assert released.payout_released_at == now
        assert again.code == "PAYOUT_NOT_ALLOWED"


class TestSweepAndQueries:
    @pytest.mark.asyncio
    async def test_sweep_completes_expired_windows(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        order = await _delivered_order(orders, ledger, active_listing, now)

        assert await orders.sweep_return_windows(now + timedelta(hours=10)) == []
        assert await orders.sweep_return_windows(now + timedelta(hours=73)) == [order.id]
        assert (await orders.get_order(order.id)).status == OrderStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_summary_skips_provisional_orders(
        self,
        orders: OrderLifecycleManager,
        ledger: ListingLedger,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        await _promoted_order(orders, ledger, active_listing, now)
        other = ledger.place_bid(active_listing, "buyer-1", Decimal("9100"), now).unwrap()
        await orders.create_provisional(other, active_listing, now)

        summary = await orders.summary("buyer-1")
        assert summary["total_orders"] == 1
        assert summary["by_status"] == {"pending_payment": 1}
        assert len(await orders.list_for_user("seller-1", role="seller")) == 2
