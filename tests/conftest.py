"""Shared test fixtures for the Provenance Exchange test suite.

Provides:
    - A controllable clock and fixed actors
    - In-memory record store, recording notification sink, simulated partner
      and payment processor
    - A fully wired MarketplaceService with zero poll interval and no backoff
    - Async test support via pytest-asyncio
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from provenance_exchange.config import Settings
from provenance_exchange.domain.listing_ledger import ListingLedger
from provenance_exchange.domain.models import Listing
from provenance_exchange.domain.protocols import ActorContext
from provenance_exchange.infrastructure.database import Base, SqlRecordStore
from provenance_exchange.infrastructure.memory_store import InMemoryRecordStore
from provenance_exchange.infrastructure.notifications import LoggingNotificationSink
from provenance_exchange.infrastructure.partners import SimulatedPartner
from provenance_exchange.services.escrow_gateway import EscrowPaymentGateway
from provenance_exchange.services.marketplace_service import MarketplaceService
from provenance_exchange.services.payment_service import SimulatedPaymentProcessor

FIXED_NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

SELLER = ActorContext(user_id="seller-1", is_verified=True)
BUYER = ActorContext(user_id="buyer-1", is_verified=True)
OTHER_BUYER = ActorContext(user_id="buyer-2", is_verified=True)
UNVERIFIED = ActorContext(user_id="buyer-3", is_verified=False)


class FakeClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Domain Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger() -> ListingLedger:
    return ListingLedger()


@pytest.fixture
def active_listing(ledger: ListingLedger, now: datetime) -> Listing:
    """An active Rolex listing with current price $8,500."""
    return ledger.open_listing(
        SELLER.user_id,
        Decimal("8500"),
        now,
        title="Rolex Submariner 126610LN",
        brand="Rolex",
        model="Submariner",
        year=2021,
    ).unwrap()


# ---------------------------------------------------------------------------
# Infrastructure Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        app_env="development",
        poll_interval_seconds=0,
        partner_retry_backoff_seconds=0,
        database_url="",
    )


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore(capacity=1000)


@pytest.fixture
def notifier() -> LoggingNotificationSink:
    return LoggingNotificationSink()


@pytest.fixture
def partner() -> SimulatedPartner:
    return SimulatedPartner()


@pytest.fixture
def processor() -> SimulatedPaymentProcessor:
    return SimulatedPaymentProcessor()


@pytest.fixture
def gateway(processor: SimulatedPaymentProcessor) -> EscrowPaymentGateway:
    return EscrowPaymentGateway(processor, retry_attempts=3, retry_backoff_seconds=0)


@pytest_asyncio.fixture
async def marketplace(
    store: InMemoryRecordStore,
    notifier: LoggingNotificationSink,
    partner: SimulatedPartner,
    gateway: EscrowPaymentGateway,
    settings: Settings,
    clock: FakeClock,
) -> MarketplaceService:
    service = MarketplaceService(store, notifier, partner, gateway, settings, clock=clock)
    yield service
    await service.pollers.dispose_all()


@pytest_asyncio.fixture
async def listed(marketplace: MarketplaceService) -> Listing:
    """A persisted active listing owned by SELLER at $8,500."""
    result = await marketplace.create_listing(
        SELLER,
        Decimal("8500"),
        title="Rolex Submariner 126610LN",
        brand="Rolex",
        model="Submariner",
        year=2021,
    )
    return result.unwrap()


@pytest_asyncio.fixture
async def sql_store(tmp_path: Path) -> SqlRecordStore:
    """SqlRecordStore on a throwaway aiosqlite database file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/exchange.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SqlRecordStore(async_sessionmaker(engine, expire_on_commit=False))
    await engine.dispose()
