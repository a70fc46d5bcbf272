"""Tests for the bounded in-memory record store."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import pytest

from provenance_exchange.domain.enums import EntityKind, OrderStatus
from provenance_exchange.domain.exceptions import (
    CapacityExceededError,
    StaleRecordError,
    StorageError,
)
from provenance_exchange.domain.models import Order
from provenance_exchange.infrastructure.memory_store import InMemoryRecordStore


def _order(now: datetime, status: OrderStatus = OrderStatus.PENDING_BID, **overrides) -> Order:
    fields = {
        "listing_id": "listing-1",
        "bid_id": "bid-1",
        "buyer_id": "buyer-1",
        "seller_id": "seller-1",
        "final_price": Decimal("9000"),
        "status": status,
        "created_at": now,
        "updated_at": now,
    }
    fields.update(overrides)
    return Order(**fields)


class TestSnapshots:
    @pytest.mark.asyncio
    async def test_reads_are_isolated_copies(self, now: datetime) -> None:
        store = InMemoryRecordStore()
        order = _order(now)
        await store.save(EntityKind.ORDER, order)

        order.status = OrderStatus.CANCELLED
        first = await store.get(EntityKind.ORDER, order.id)
        first.notes = "edited locally"
        second = await store.get(EntityKind.ORDER, order.id)

        assert first.status == OrderStatus.PENDING_BID
        assert second.notes is None

    @pytest.mark.asyncio
    async def test_update_requires_existing_record(self, now: datetime) -> None:
        store = InMemoryRecordStore()
        with pytest.raises(StorageError):
            await store.update(EntityKind.ORDER, _order(now))

    @pytest.mark.asyncio
    async def test_query_and_delete(self, now: datetime) -> None:
        store = InMemoryRecordStore()
        mine = _order(now, buyer_id="buyer-1")
        theirs = _order(now, buyer_id="buyer-2")
        await store.save(EntityKind.ORDER, mine)
        await store.save(EntityKind.ORDER, theirs)

        found = await store.query_by(EntityKind.ORDER, buyer_id="buyer-2")
        assert [o.id for o in found] == [theirs.id]

        assert await store.delete(EntityKind.ORDER, theirs.id) is True
        assert await store.delete(EntityKind.ORDER, theirs.id) is False
        assert await store.get(EntityKind.ORDER, theirs.id) is None


class TestCapacity:
    @pytest.mark.asyncio
    async def test_evicts_oldest_terminal_record(self, now: datetime) -> None:
        store = InMemoryRecordStore(capacity=2)
        done = _order(now, status=OrderStatus.COMPLETED)
        live = _order(now)
        await store.save(EntityKind.ORDER, done)
        await store.save(EntityKind.ORDER, live)

        newcomer = _order(now)
        await store.save(EntityKind.ORDER, newcomer)

        assert await store.get(EntityKind.ORDER, done.id) is None
        assert await store.get(EntityKind.ORDER, live.id) is not None
        assert store.count(EntityKind.ORDER) == 2

    @pytest.mark.asyncio
    async def test_live_records_are_never_dropped(self, now: datetime) -> None:
        store = InMemoryRecordStore(capacity=1)
        live = _order(now, status=OrderStatus.PENDING_PAYMENT)
        await store.save(EntityKind.ORDER, live)

        with pytest.raises(CapacityExceededError):
            await store.save(EntityKind.ORDER, _order(now))
        assert await store.get(EntityKind.ORDER, live.id) is not None

    @pytest.mark.asyncio
    async def test_resaving_existing_record_needs_no_room(self, now: datetime) -> None:
        store = InMemoryRecordStore(capacity=1)
        order = _order(now)
        await store.save(EntityKind.ORDER, order)

        order.notes = "updated"
        await store.save(EntityKind.ORDER, order)

        assert (await store.get(EntityKind.ORDER, order.id)).notes == "updated"

    def test_capacity_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            InMemoryRecordStore(capacity=0)


class TestConditionalUpdate:
    @pytest.mark.asyncio
    async def test_matching_status_writes(self, now: datetime) -> None:
        store = InMemoryRecordStore()
        order = _order(now)
        await store.save(EntityKind.ORDER, order)

        order.status = OrderStatus.CANCELLED
        await store.update(EntityKind.ORDER, order, expected_status=OrderStatus.PENDING_BID)

        assert (await store.get(EntityKind.ORDER, order.id)).status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_stale_status_is_refused_and_record_kept(self, now: datetime) -> None:
        store = InMemoryRecordStore()
        order = _order(now, status=OrderStatus.PENDING_PAYMENT)
        await store.save(EntityKind.ORDER, order)

        stale = order.model_copy(update={"notes": "from an old read"})
        with pytest.raises(StaleRecordError) as exc_info:
            await store.update(EntityKind.ORDER, stale, expected_status=OrderStatus.PENDING_BID)

        assert exc_info.value.actual == OrderStatus.PENDING_PAYMENT
        assert (await store.get(EntityKind.ORDER, order.id)).notes is None
