#!/usr/bin/env python3
"""Provenance Exchange — End-to-End Simulation.

Runs three marketplace scenarios against the real services with a simulated
payment processor and simulated authentication partners:

    Scenario 1: Happy Path
        - Seller lists a Rolex Submariner, two buyers bid
        - Seller accepts the higher bid -> escrow hold + authentication case
        - Buyer pays, the partner verifies the watch -> order authenticated
        - Seller ships, buyer confirms receipt -> payout released

    Scenario 2: Authentication Failure
        - Buyer pays for a watch the partner finds counterfeit
        - Order is cancelled, the buyer is refunded in full
        - The seller is charged the authentication costs

    Scenario 3: Negotiation
        - Seller counters three bids, the fourth counteroffer is refused
        - Buyer accepts a counteroffer -> sale closes at the counter price

Usage:
    # In-memory record store (default):
    uv run python simulation.py

    # SQLite record store in a throwaway file:
    uv run python simulation.py --sqlite

    # Run a specific scenario:
    uv run python simulation.py --scenario 2
"""

from __future__ import annotations

import argparse
import asyncio
import tempfile
from decimal import Decimal
from pathlib import Path

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from provenance_exchange.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from provenance_exchange.config import Settings  # noqa: E402
from provenance_exchange.domain.enums import PartnerStatus, ReturnType  # noqa: E402
from provenance_exchange.domain.protocols import ActorContext  # noqa: E402
from provenance_exchange.infrastructure.memory_store import InMemoryRecordStore  # noqa: E402
from provenance_exchange.infrastructure.notifications import LoggingNotificationSink  # noqa: E402
from provenance_exchange.infrastructure.partners import SimulatedPartner  # noqa: E402
from provenance_exchange.services.escrow_gateway import EscrowPaymentGateway  # noqa: E402
from provenance_exchange.services.marketplace_service import MarketplaceService  # noqa: E402
from provenance_exchange.services.payment_service import SimulatedPaymentProcessor  # noqa: E402

SELLER = ActorContext(user_id="seller-ava", is_verified=True)
BUYER = ActorContext(user_id="buyer-ben", is_verified=True)
OTHER_BUYER = ActorContext(user_id="buyer-cleo", is_verified=True)

# Module-level state
_sqlite_engine = None
_sqlite_dir: tempfile.TemporaryDirectory | None = None


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------
async def build_store(use_sqlite: bool = False):
    """Return the record store for a run: SQLite file or bounded memory."""
    global _sqlite_engine, _sqlite_dir

    if not use_sqlite:
        return InMemoryRecordStore(capacity=1000)

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    from provenance_exchange.infrastructure.database import Base, SqlRecordStore

    if _sqlite_engine is None:
        _sqlite_dir = tempfile.TemporaryDirectory()
        path = Path(_sqlite_dir.name) / "simulation.db"
        _sqlite_engine = create_async_engine(f"sqlite+aiosqlite:///{path}", echo=False)
        async with _sqlite_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.sqlite_initialized", path=str(path))

    factory = async_sessionmaker(
        bind=_sqlite_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return SqlRecordStore(factory)


async def shutdown_database() -> None:
    """Dispose the SQLite engine and its directory, if one was created."""
    global _sqlite_engine, _sqlite_dir
    if _sqlite_engine is not None:
        await _sqlite_engine.dispose()
        _sqlite_engine = None
    if _sqlite_dir is not None:
        _sqlite_dir.cleanup()
        _sqlite_dir = None


async def build_marketplace(
    partner: SimulatedPartner,
    use_sqlite: bool = False,
) -> tuple[MarketplaceService, SimulatedPaymentProcessor, LoggingNotificationSink]:
    settings = Settings(
        _env_file=None,
        poll_interval_seconds=0.2,
        partner_retry_backoff_seconds=0,
        database_url="",
    )
    processor = SimulatedPaymentProcessor()
    notifier = LoggingNotificationSink()
    marketplace = MarketplaceService(
        await build_store(use_sqlite),
        notifier,
        partner,
        EscrowPaymentGateway(processor, retry_backoff_seconds=0),
        settings,
    )
    return marketplace, processor, notifier


async def wait_for_authentication(marketplace: MarketplaceService, request_id: str) -> None:
    """Block until the verification poller for `request_id` has finished."""
    poller = marketplace.pollers.get(request_id)
    if poller is not None and poller.task is not None:
        await poller.task


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


def print_pricing(pricing) -> None:
    print(f"  Item price:     ${pricing.item_price}")
    print(f"  Shipping:       ${pricing.shipping_cost}")
    print(f"  Verification:   ${pricing.verification_cost}")
    print(f"  Commission:     ${pricing.commission_fee}")
    print(f"  Insurance:      ${pricing.insurance_cost}")
    print(f"  Buyer pays:     ${pricing.total_amount}")


def print_notifications(notifier: LoggingNotificationSink, user_id: str) -> None:
    """Print every notification a user received."""
    print(f"\n  📬 Notifications for {user_id}:")
    for i, note in enumerate(notifier.for_user(user_id), 1):
        print(f"    {i}. [{note.type}] {note.title}: {note.message}")
    print()


# ===========================================================================
# Scenario 1: Happy Path
# ===========================================================================
async def scenario_1_happy_path(use_sqlite: bool = False) -> None:
    """Two bids, acceptance, authentication, delivery and payout."""
    banner("SCENARIO 1: Happy Path — Rolex Submariner")

    marketplace, processor, notifier = await build_marketplace(SimulatedPartner(), use_sqlite)
    try:
        section("Step 1: Seller lists the watch")
        listing = (
            await marketplace.create_listing(
                SELLER,
                Decimal("8500"),
                title="Rolex Submariner 126610LN",
                brand="Rolex",
                model="Submariner",
                year=2021,
                condition="excellent",
            )
        ).unwrap()
        print(f"  Listing {listing.id} open until {listing.end_time:%Y-%m-%d %H:%M} UTC")

        section("Step 2: Buyers bid")
        await marketplace.place_bid(OTHER_BUYER, listing.id, Decimal("8800"))
        bid = (await marketplace.place_bid(BUYER, listing.id, Decimal("9000"))).unwrap()
        listing = await marketplace.get_listing(listing.id)
        print(f"  Highest bid: ${bid.amount} by {bid.bidder_id}")
        print(f"  Current price still ${listing.current_price}")

        section("Step 3: Seller accepts the highest bid")
        sale = (await marketplace.accept_bid(SELLER, listing.id, bid.id)).unwrap()
        print(f"  Authentication partner: {sale.authentication_request.partner_id}")
        print_pricing(sale.pricing)

        section("Step 4: Buyer pays, partner authenticates")
        await marketplace.confirm_payment(BUYER, sale.order.id)
        await wait_for_authentication(marketplace, sale.authentication_request.id)
        order = await marketplace.get_order(BUYER, sale.order.id)
        print(f"  Order status: {order.status}")

        section("Step 5: Ship, deliver, confirm receipt")
        await marketplace.ship(SELLER, order.id, "1Z999AA10123456784", "UPS")
        await marketplace.mark_delivered(order.id)
        await marketplace.confirm_receipt(BUYER, order.id)

        section("Step 6: Release payout")
        order = (await marketplace.release_payout(order.id)).unwrap()
        print(f"  ✅ Paid out ${sum(processor.payouts.values())} to {order.seller_id}")

        print_notifications(notifier, SELLER.user_id)
    finally:
        await marketplace.pollers.dispose_all()


# ===========================================================================
# Scenario 2: Authentication Failure
# ===========================================================================
async def scenario_2_authentication_failure(use_sqlite: bool = False) -> None:
    """The partner finds the watch counterfeit; the buyer is refunded."""
    banner("SCENARIO 2: Authentication Failure — Counterfeit Movement")

    partner = SimulatedPartner(
        script=(PartnerStatus.IN_PROGRESS, None, PartnerStatus.COMPLETED),
        authentic=False,
    )
    marketplace, processor, notifier = await build_marketplace(partner, use_sqlite)
    try:
        section("Step 1: Listing, bid and acceptance")
        listing = (
            await marketplace.create_listing(
                SELLER, Decimal("12000"), title="Omega Speedmaster", brand="Omega"
            )
        ).unwrap()
        bid = (await marketplace.place_bid(BUYER, listing.id, Decimal("12500"))).unwrap()
        sale = (await marketplace.accept_bid(SELLER, listing.id, bid.id)).unwrap()
        request_id = sale.authentication_request.id
        print(f"  Buyer owes ${sale.pricing.total_amount}")

        section("Step 2: Buyer pays, seller ships to the partner")
        await marketplace.confirm_payment(BUYER, sale.order.id)
        await marketplace.coordinator.record_shipping_costs(request_id, Decimal("25"))

        section("Step 3: Partner reports a counterfeit (one polling outage on the way)")
        await wait_for_authentication(marketplace, request_id)
        request = await marketplace.get_authentication_request(request_id)
        order = await marketplace.get_order(BUYER, sale.order.id)
        print(f"  ❌ Authentication: {request.status}")
        print(f"  Order status: {order.status} ({order.cancellation_reason})")
        print(f"  Refunded to buyer: ${sum(processor.refunds.values())}")

        section("Step 4: Seller costs")
        for item, amount in marketplace.coordinator.failure_cost_breakdown(request).items():
            print(f"  {item:<22} ${amount}")

        print_notifications(notifier, BUYER.user_id)
    finally:
        await marketplace.pollers.dispose_all()


# ===========================================================================
# Scenario 3: Negotiation
# ===========================================================================
async def scenario_3_negotiation(use_sqlite: bool = False) -> None:
    """Counteroffer limit, then a sale at the counter price and a return."""
    banner("SCENARIO 3: Negotiation — Counteroffer Limit")

    marketplace, processor, _ = await build_marketplace(SimulatedPartner(), use_sqlite)
    try:
        section("Step 1: Four bids arrive")
        listing = (
            await marketplace.create_listing(
                SELLER, Decimal("30000"), title="Patek Philippe Calatrava", brand="Patek Philippe"
            )
        ).unwrap()
        bids = []
        for amount in ("30500", "31000", "31500", "32000"):
            bids.append((await marketplace.place_bid(BUYER, listing.id, Decimal(amount))).unwrap())
        print(f"  {len(bids)} pending bids")

        section("Step 2: Seller counters every bid")
        counteroffers = []
        for bid in bids:
            result = await marketplace.make_counteroffer(
                SELLER, listing.id, bid.id, Decimal("33000"), "Includes box and papers"
            )
            if result.ok:
                counteroffers.append(result.value)
                print(f"  Countered ${bid.amount} with $33000")
            else:
                print(f"  🛡️  Refused: {result.code} ({result.error.message})")

        section("Step 3: Buyer accepts the last counteroffer")
        sale = (
            await marketplace.respond_to_counteroffer(
                BUYER, listing.id, counteroffers[-1].id, True
            )
        ).unwrap()
        print(f"  Sold at ${sale.listing.current_price}")
        print_pricing(sale.pricing)

        section("Step 4: Delivery and a not-as-described return")
        order_id = sale.order.id
        await marketplace.confirm_payment(BUYER, order_id)
        await wait_for_authentication(marketplace, sale.authentication_request.id)
        await marketplace.ship(SELLER, order_id, "794613958732", "FedEx")
        await marketplace.mark_delivered(order_id)
        await marketplace.request_return(
            BUYER, order_id, "Dial shows water damage", ReturnType.NOT_AS_DESCRIBED
        )
        order = (await marketplace.process_return(SELLER, order_id)).unwrap()
        print(f"  Order status: {order.status}")
        print(f"  Refunded to buyer: ${sum(processor.refunds.values())}")
    finally:
        await marketplace.pollers.dispose_all()


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_authentication_failure,
    3: scenario_3_negotiation,
}


async def run_all(use_sqlite: bool = False) -> None:
    """Run all scenarios sequentially."""
    try:
        print("\n" + "⌚" * 35)
        print("  THE PROVENANCE EXCHANGE — SIMULATION")
        print(f"  Record store: {'SQLite' if use_sqlite else 'in-memory'}")
        print("⌚" * 35 + "\n")

        for scenario in SCENARIOS.values():
            await scenario(use_sqlite)

        print("\n" + "=" * 70)
        print("  ✅ ALL SCENARIOS COMPLETED SUCCESSFULLY")
        print("=" * 70 + "\n")
    finally:
        await shutdown_database()


async def run_scenario(num: int, use_sqlite: bool = False) -> None:
    """Run a specific scenario."""
    try:
        if num not in SCENARIOS:
            print(f"Unknown scenario {num}. Available: 1, 2, 3")
            return
        await SCENARIOS[num](use_sqlite)
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Provenance Exchange Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1, 2, or 3). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Store records in a temporary SQLite database instead of memory.",
    )
    args = parser.parse_args()

    if args.scenario == 0:
        asyncio.run(run_all(use_sqlite=args.sqlite))
    else:
        asyncio.run(run_scenario(args.scenario, use_sqlite=args.sqlite))
