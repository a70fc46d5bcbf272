"""End-to-end tests for the MarketplaceService.

Covers the sale scenarios from bid placement through payout, the
authentication failure fork, returns and access control.
"""

from __future__ import annotations

from decimal import Decimal

import pytest
import pytest_asyncio

from provenance_exchange.config import Settings
from provenance_exchange.domain.enums import (
    AuthenticationOutcome,
    AuthenticationStatus,
    BidStatus,
    CounterofferStatus,
    ListingStatus,
    NotificationType,
    OrderStatus,
    PartnerStatus,
    ReturnType,
)
from provenance_exchange.domain.exceptions import ForbiddenError
from provenance_exchange.domain.models import Listing, Order
from provenance_exchange.infrastructure.memory_store import InMemoryRecordStore
from provenance_exchange.infrastructure.notifications import LoggingNotificationSink
from provenance_exchange.infrastructure.partners import SimulatedPartner
from provenance_exchange.services.escrow_gateway import EscrowPaymentGateway
from provenance_exchange.services.marketplace_service import MarketplaceService
from provenance_exchange.services.payment_service import SimulatedPaymentProcessor
from provenance_exchange.services.saga import AcceptedSale
from tests.conftest import BUYER, OTHER_BUYER, SELLER, UNVERIFIED, FakeClock


async def _settle(marketplace: MarketplaceService, request_id: str) -> None:
    """Wait for the verification poller of a request to finish."""
    poller = marketplace.pollers.get(request_id)
    if poller is not None and poller.task is not None:
        await poller.task


async def _sold(marketplace: MarketplaceService, listing: Listing) -> AcceptedSale:
    bid = (await marketplace.place_bid(BUYER, listing.id, Decimal("9000"))).unwrap()
    return (await marketplace.accept_bid(SELLER, listing.id, bid.id)).unwrap()


async def _delivered(marketplace: MarketplaceService, listing: Listing) -> Order:
    sale = await _sold(marketplace, listing)
    (await marketplace.confirm_payment(BUYER, sale.order.id)).unwrap()
    await _settle(marketplace, sale.authentication_request.id)
    (await marketplace.ship(SELLER, sale.order.id, "1Z999", "UPS")).unwrap()
    return (await marketplace.mark_delivered(sale.order.id)).unwrap()


@pytest_asyncio.fixture
async def stalled_marketplace(
    store: InMemoryRecordStore,
    notifier: LoggingNotificationSink,
    gateway: EscrowPaymentGateway,
    settings: Settings,
    clock: FakeClock,
) -> MarketplaceService:
    """Marketplace whose partner never finishes, so verdicts arrive by hand."""
    partner = SimulatedPartner(script=(PartnerStatus.IN_PROGRESS,))
    service = MarketplaceService(
        store, notifier, partner, gateway,
        settings.model_copy(update={"poll_interval_seconds": 60}),
        clock=clock,
    )
    yield service
    await service.pollers.dispose_all()


@pytest_asyncio.fixture
async def listed_on_stalled(stalled_marketplace: MarketplaceService) -> Listing:
    result = await stalled_marketplace.create_listing(
        SELLER, Decimal("8500"), title="Rolex Datejust 126300", brand="Rolex"
    )
    return result.unwrap()


class TestBidding:
    @pytest.mark.asyncio
    async def test_bid_leaves_current_price(
        self, marketplace: MarketplaceService, listed: Listing
    ) -> None:
        bid = (await marketplace.place_bid(BUYER, listed.id, Decimal("9000"))).unwrap()

        listing = await marketplace.get_listing(listed.id)
        assert bid.status == BidStatus.PENDING
        assert listing.current_price == Decimal("8500")
        assert listing.highest_bid_id == bid.id

    @pytest.mark.asyncio
    async def test_bid_opens_provisional_order_and_notifies_seller(
        self,
        marketplace: MarketplaceService,
        listed: Listing,
        notifier: LoggingNotificationSink,
    ) -> None:
        bid = (await marketplace.place_bid(BUYER, listed.id, Decimal("9000"))).unwrap()

        order = await marketplace.orders.find_by_bid(bid.id)
        assert order.status == OrderStatus.PENDING_BID
        assert await marketplace.list_orders(BUYER) == []
        assert [n.type for n in notifier.for_user(SELLER.user_id)] == [
            NotificationType.BID_RECEIVED
        ]

    @pytest.mark.asyncio
    async def test_unverified_account_cannot_bid(
        self, marketplace: MarketplaceService, listed: Listing
    ) -> None:
        result = await marketplace.place_bid(UNVERIFIED, listed.id, Decimal("9000"))
        assert result.code == "INVALID_BID"
        assert result.error.reason == "UNVERIFIED_ACCOUNT"

    @pytest.mark.asyncio
    async def test_seller_cannot_bid_on_own_listing(
        self, marketplace: MarketplaceService, listed: Listing
    ) -> None:
        result = await marketplace.place_bid(SELLER, listed.id, Decimal("9000"))
        assert result.error.reason == "SELF_BID"

    @pytest.mark.asyncio
    async def test_only_seller_accepts(
        self, marketplace: MarketplaceService, listed: Listing
    ) -> None:
        bid = (await marketplace.place_bid(BUYER, listed.id, Decimal("9000"))).unwrap()
        result = await marketplace.accept_bid(OTHER_BUYER, listed.id, bid.id)
        assert result.code == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_reject_cancels_provisional_order(
        self,
        marketplace: MarketplaceService,
        listed: Listing,
        notifier: LoggingNotificationSink,
    ) -> None:
        bid = (await marketplace.place_bid(BUYER, listed.id, Decimal("9000"))).unwrap()

        rejected = (await marketplace.reject_bid(SELLER, listed.id, bid.id)).unwrap()

        assert rejected.status == BidStatus.REJECTED
        assert (await marketplace.orders.find_by_bid(bid.id)).status == OrderStatus.CANCELLED
        assert notifier.for_user(BUYER.user_id)[-1].type == NotificationType.BID_REJECTED

    @pytest.mark.asyncio
    async def test_sweep_expires_stale_bids(
        self, marketplace: MarketplaceService, listed: Listing, clock: FakeClock
    ) -> None:
        bid = (await marketplace.place_bid(BUYER, listed.id, Decimal("9000"))).unwrap()
        clock.advance(hours=25)

        expired = (await marketplace.sweep_listing(listed.id)).unwrap()

        assert expired == [bid.id]
        assert (await marketplace.orders.find_by_bid(bid.id)).status == OrderStatus.CANCELLED


class TestAcceptance:
    @pytest.mark.asyncio
    async def test_accept_closes_sale(
        self,
        marketplace: MarketplaceService,
        listed: Listing,
        notifier: LoggingNotificationSink,
    ) -> None:
        sale = await _sold(marketplace, listed)

        listing = await marketplace.get_listing(listed.id)
        assert listing.status == ListingStatus.SOLD
        assert listing.current_price == Decimal("9000")
        assert listing.find_bid(sale.bid.id).status == BidStatus.ACCEPTED
        assert sale.order.status == OrderStatus.PENDING_PAYMENT
        assert sale.order.authentication_request_id == sale.authentication_request.id
        assert notifier.for_user(BUYER.user_id)[-1].type == NotificationType.BID_ACCEPTED

    @pytest.mark.asyncio
    async def test_second_accept_fails(
        self, marketplace: MarketplaceService, listed: Listing
    ) -> None:
        other = (await marketplace.place_bid(OTHER_BUYER, listed.id, Decimal("8800"))).unwrap()
        await _sold(marketplace, listed)

        result = await marketplace.accept_bid(SELLER, listed.id, other.id)
        assert result.code == "LISTING_NOT_ACTIVE"


class TestCounteroffers:
    @pytest.mark.asyncio
    async def test_accepting_counteroffer_sells_at_counter_price(
        self, marketplace: MarketplaceService, listed: Listing
    ) -> None:
        bid = (await marketplace.place_bid(BUYER, listed.id, Decimal("9000"))).unwrap()
        counter = (
            await marketplace.make_counteroffer(
                SELLER, listed.id, bid.id, Decimal("9500"), "Box and papers included"
            )
        ).unwrap()

        sale = (
            await marketplace.respond_to_counteroffer(BUYER, listed.id, counter.id, True)
        ).unwrap()

        assert isinstance(sale, AcceptedSale)
        assert sale.listing.current_price == Decimal("9500")
        assert sale.order.final_price == Decimal("9500")
        assert sale.listing.find_counteroffer(counter.id).status == CounterofferStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_declining_counteroffer_rejects_bid(
        self, marketplace: MarketplaceService, listed: Listing
    ) -> None:
        bid = (await marketplace.place_bid(BUYER, listed.id, Decimal("9000"))).unwrap()
        counter = (
            await marketplace.make_counteroffer(SELLER, listed.id, bid.id, Decimal("9500"))
        ).unwrap()

        answered = (
            await marketplace.respond_to_counteroffer(BUYER, listed.id, counter.id, False)
        ).unwrap()

        listing = await marketplace.get_listing(listed.id)
        assert answered.status == CounterofferStatus.REJECTED
        assert listing.status == ListingStatus.ACTIVE
        assert listing.find_bid(bid.id).status == BidStatus.REJECTED

    @pytest.mark.asyncio
    async def test_only_the_bidder_may_answer(
        self, marketplace: MarketplaceService, listed: Listing
    ) -> None:
        bid = (await marketplace.place_bid(BUYER, listed.id, Decimal("9000"))).unwrap()
        counter = (
            await marketplace.make_counteroffer(SELLER, listed.id, bid.id, Decimal("9500"))
        ).unwrap()

        result = await marketplace.respond_to_counteroffer(OTHER_BUYER, listed.id, counter.id, True)
        assert result.code == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_fourth_counteroffer_exceeds_limit(
        self, marketplace: MarketplaceService, listed: Listing
    ) -> None:
        bids = [
            (await marketplace.place_bid(BUYER, listed.id, Decimal(amount))).unwrap()
            for amount in ("8600", "8700", "8800", "8900")
        ]
        for bid in bids[:3]:
            (
                await marketplace.make_counteroffer(SELLER, listed.id, bid.id, Decimal("9500"))
            ).unwrap()

        result = await marketplace.make_counteroffer(SELLER, listed.id, bids[3].id, Decimal("9500"))

        assert result.code == "LIMIT_EXCEEDED"
        assert (await marketplace.get_listing(listed.id)).counteroffer_count == 3


class TestAuthenticationFlow:
    @pytest.mark.asyncio
    async def test_payment_starts_authentication_and_poller_authenticates(
        self,
        marketplace: MarketplaceService,
        listed: Listing,
        partner: SimulatedPartner,
    ) -> None:
        sale = await _sold(marketplace, listed)

        (await marketplace.confirm_payment(BUYER, sale.order.id)).unwrap()
        await _settle(marketplace, sale.authentication_request.id)

        request = await marketplace.get_authentication_request(sale.authentication_request.id)
        order = await marketplace.get_order(BUYER, sale.order.id)
        assert request.status == AuthenticationStatus.SUCCESS
        assert request.partner_reference in partner.submitted
        assert order.status == OrderStatus.AUTHENTICATED
        assert len(marketplace.pollers) == 0

    @pytest.mark.asyncio
    async def test_only_the_buyer_pays(
        self, marketplace: MarketplaceService, listed: Listing
    ) -> None:
        sale = await _sold(marketplace, listed)
        result = await marketplace.confirm_payment(SELLER, sale.order.id)
        assert result.code == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_failure_cancels_order_and_refunds(
        self,
        stalled_marketplace: MarketplaceService,
        listed_on_stalled: Listing,
        processor: SimulatedPaymentProcessor,
        notifier: LoggingNotificationSink,
    ) -> None:
        marketplace = stalled_marketplace
        bid = (await marketplace.place_bid(BUYER, listed_on_stalled.id, Decimal("9000"))).unwrap()
        sale = (
            await marketplace.accept_bid(
                SELLER, listed_on_stalled.id, bid.id, partner_id="watchbox"
            )
        ).unwrap()
        (await marketplace.confirm_payment(BUYER, sale.order.id)).unwrap()
        request_id = sale.authentication_request.id
        (await marketplace.coordinator.record_shipping_costs(request_id, Decimal("25"))).unwrap()

        request = (
            await marketplace.record_authentication_result(
                request_id, AuthenticationOutcome.FAILURE, "Aftermarket dial"
            )
        ).unwrap()

        order = await marketplace.get_order(SELLER, sale.order.id)
        assert request.total_seller_costs == Decimal("220")
        assert order.status == OrderStatus.CANCELLED
        assert order.refunded_at is not None
        assert list(processor.refunds.values()) == [sale.pricing.total_amount]
        assert marketplace.pollers.get(request_id) is None
        assert NotificationType.REFUND_ISSUED in [n.type for n in notifier.for_user(BUYER.user_id)]

    @pytest.mark.asyncio
    async def test_second_verdict_rejected(
        self,
        stalled_marketplace: MarketplaceService,
        listed_on_stalled: Listing,
    ) -> None:
        marketplace = stalled_marketplace
        sale = await _sold(marketplace, listed_on_stalled)
        (await marketplace.confirm_payment(BUYER, sale.order.id)).unwrap()
        request_id = sale.authentication_request.id

        await marketplace.record_authentication_result(request_id, AuthenticationOutcome.SUCCESS)
        again = await marketplace.record_authentication_result(
            request_id, AuthenticationOutcome.FAILURE
        )

        assert again.code == "ALREADY_TERMINAL"
        order = await marketplace.get_order(BUYER, sale.order.id)
        assert order.status == OrderStatus.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_verdict_before_payment_is_refused(
        self,
        stalled_marketplace: MarketplaceService,
        listed_on_stalled: Listing,
    ) -> None:
        marketplace = stalled_marketplace
        sale = await _sold(marketplace, listed_on_stalled)
        request_id = sale.authentication_request.id

        early = await marketplace.record_authentication_result(
            request_id, AuthenticationOutcome.SUCCESS
        )
        assert early.code == "WRONG_STATE"
        request = await marketplace.get_authentication_request(request_id)
        assert request.status == AuthenticationStatus.PENDING

        order = (await marketplace.confirm_payment(BUYER, sale.order.id)).unwrap()

        assert order.status == OrderStatus.AUTHENTICATION_IN_PROGRESS
        request = await marketplace.get_authentication_request(request_id)
        assert request.status == AuthenticationStatus.IN_PROGRESS
        assert marketplace.pollers.get(request_id) is not None


class TestFulfilmentAndPayout:
    @pytest.mark.asyncio
    async def test_happy_path_through_payout(
        self,
        marketplace: MarketplaceService,
        listed: Listing,
        processor: SimulatedPaymentProcessor,
        notifier: LoggingNotificationSink,
    ) -> None:
        delivered = await _delivered(marketplace, listed)

        early = await marketplace.release_payout(delivered.id)
        (await marketplace.confirm_receipt(BUYER, delivered.id)).unwrap()
        paid = (await marketplace.release_payout(delivered.id)).unwrap()
        again = await marketplace.release_payout(delivered.id)

        assert early.code == "PAYOUT_NOT_ALLOWED"
        assert paid.status == OrderStatus.COMPLETED
        assert paid.payout_released_at is not None
        assert list(processor.payouts.values()) == [Decimal("9000")]
        assert again.code == "PAYOUT_NOT_ALLOWED"
        assert notifier.for_user(SELLER.user_id)[-1].type == NotificationType.PAYOUT_RELEASED

    @pytest.mark.asyncio
    async def test_shipping_requires_tracking_without_provider(
        self, marketplace: MarketplaceService, listed: Listing
    ) -> None:
        sale = await _sold(marketplace, listed)
        (await marketplace.confirm_payment(BUYER, sale.order.id)).unwrap()
        await _settle(marketplace, sale.authentication_request.id)

        result = await marketplace.ship(SELLER, sale.order.id)
        assert result.code == "TRACKING_REQUIRED"

    @pytest.mark.asyncio
    async def test_window_expiry_completes_and_unlocks_payout(
        self,
        marketplace: MarketplaceService,
        listed: Listing,
        clock: FakeClock,
    ) -> None:
        delivered = await _delivered(marketplace, listed)
        clock.advance(hours=73)

        assert await marketplace.run_maintenance() == [delivered.id]
        paid = (await marketplace.release_payout(delivered.id)).unwrap()
        assert paid.status == OrderStatus.COMPLETED


class TestReturns:
    @pytest.mark.asyncio
    async def test_not_as_described_return_refunds_item_price(
        self,
        marketplace: MarketplaceService,
        listed: Listing,
        processor: SimulatedPaymentProcessor,
    ) -> None:
        delivered = await _delivered(marketplace, listed)

        requested = (
            await marketplace.request_return(
                BUYER, delivered.id, "Bezel insert is aftermarket", ReturnType.NOT_AS_DESCRIBED
            )
        ).unwrap()
        returned = (await marketplace.process_return(SELLER, delivered.id)).unwrap()

        assert requested.status == OrderStatus.RETURN_REQUESTED
        assert returned.status == OrderStatus.RETURNED
        assert returned.refunded_at is not None
        assert list(processor.refunds.values()) == [Decimal("9000")]

    @pytest.mark.asyncio
    async def test_refund_not_repeated(
        self, marketplace: MarketplaceService, listed: Listing
    ) -> None:
        delivered = await _delivered(marketplace, listed)
        await marketplace.request_return(
            BUYER, delivered.id, "Changed my mind", ReturnType.BUYER_REMORSE
        )
        (await marketplace.process_return(SELLER, delivered.id)).unwrap()

        again = (await marketplace.issue_refund(delivered.id)).unwrap()
        assert again.status == OrderStatus.RETURNED

    @pytest.mark.asyncio
    async def test_strangers_cannot_view_order(
        self, marketplace: MarketplaceService, listed: Listing
    ) -> None:
        sale = await _sold(marketplace, listed)
        with pytest.raises(ForbiddenError):
            await marketplace.get_order(OTHER_BUYER, sale.order.id)


class TestQuote:
    @pytest.mark.asyncio
    async def test_quote_follows_listing_brand(
        self, marketplace: MarketplaceService, active_listing: Listing
    ) -> None:
        breakdown = marketplace.quote(Decimal("20000"), listing=active_listing)
        assert breakdown.verification_cost == Decimal("200.00")
        assert breakdown.commission_fee == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_quote_defaults_to_general_partner(
        self, marketplace: MarketplaceService
    ) -> None:
        assert marketplace.quote(Decimal("1000")).verification_cost == Decimal("150.00")


class TestRestart:
    @pytest.mark.asyncio
    async def test_in_progress_authentication_is_resumed(
        self,
        store: InMemoryRecordStore,
        notifier: LoggingNotificationSink,
        partner: SimulatedPartner,
        gateway: EscrowPaymentGateway,
        settings: Settings,
        clock: FakeClock,
    ) -> None:
        before = MarketplaceService(
            store, notifier, partner, gateway,
            settings.model_copy(update={"poll_interval_seconds": 60}),
            clock=clock,
        )
        listing = (
            await before.create_listing(
                SELLER, Decimal("8500"), title="Rolex Datejust 126300", brand="Rolex"
            )
        ).unwrap()
        sale = await _sold(before, listing)
        (await before.confirm_payment(BUYER, sale.order.id)).unwrap()
        await before.pollers.dispose_all()
        request_id = sale.authentication_request.id

        after = MarketplaceService(store, notifier, partner, gateway, settings, clock=clock)
        assert await after.resume_pollers() == [request_id]
        assert await after.resume_pollers() == []
        await _settle(after, request_id)

        request = await after.get_authentication_request(request_id)
        order = await after.get_order(BUYER, sale.order.id)
        assert request.status == AuthenticationStatus.SUCCESS
        assert order.status == OrderStatus.AUTHENTICATED
        await after.pollers.dispose_all()

    @pytest.mark.asyncio
    async def test_nothing_to_resume_on_a_fresh_store(
        self, marketplace: MarketplaceService, listed: Listing
    ) -> None:
        await _sold(marketplace, listed)
        assert await marketplace.resume_pollers() == []
        assert len(marketplace.pollers) == 0
