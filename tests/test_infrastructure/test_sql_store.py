"""Tests for the SQLAlchemy record store against a throwaway SQLite database."""

from __future__ import annotations

from decimal import Decimal

import pytest

from provenance_exchange.domain.enums import EntityKind, ListingStatus, OrderStatus
from provenance_exchange.domain.exceptions import StaleRecordError, StorageError
from provenance_exchange.domain.listing_ledger import ListingLedger
from provenance_exchange.domain.models import Listing, Order
from provenance_exchange.infrastructure.database import SqlRecordStore


def _order(listing: Listing, buyer_id: str = "buyer-1") -> Order:
    return Order(
        listing_id=listing.id,
        bid_id="bid-1",
        buyer_id=buyer_id,
        seller_id=listing.seller_id,
        final_price=Decimal("9000"),
    )


class TestSqlRecordStore:
    @pytest.mark.asyncio
    async def test_listing_round_trips_with_embedded_bids(
        self,
        sql_store: SqlRecordStore,
        ledger: ListingLedger,
        active_listing: Listing,
        now,
    ) -> None:
        bid = ledger.place_bid(active_listing, "buyer-1", Decimal("9000"), now).unwrap()
        await sql_store.save(EntityKind.LISTING, active_listing)

        loaded = await sql_store.get(EntityKind.LISTING, active_listing.id)

        assert loaded.status == ListingStatus.ACTIVE
        assert loaded.find_bid(bid.id).amount == Decimal("9000")
        assert loaded.highest_bid_id == bid.id

    @pytest.mark.asyncio
    async def test_update_replaces_snapshot(
        self, sql_store: SqlRecordStore, active_listing: Listing
    ) -> None:
        order = _order(active_listing)
        await sql_store.save(EntityKind.ORDER, order)

        order.status = OrderStatus.CANCELLED
        order.cancellation_reason = "Bid expired"
        await sql_store.update(EntityKind.ORDER, order)

        loaded = await sql_store.get(EntityKind.ORDER, order.id)
        assert loaded.status == OrderStatus.CANCELLED
        assert loaded.cancellation_reason == "Bid expired"

    @pytest.mark.asyncio
    async def test_update_of_missing_record_raises(
        self, sql_store: SqlRecordStore, active_listing: Listing
    ) -> None:
        with pytest.raises(StorageError):
            await sql_store.update(EntityKind.ORDER, _order(active_listing))

    @pytest.mark.asyncio
    async def test_query_by_indexed_and_payload_fields(
        self, sql_store: SqlRecordStore, active_listing: Listing
    ) -> None:
        mine = _order(active_listing, buyer_id="buyer-1")
        theirs = _order(active_listing, buyer_id="buyer-2")
        theirs.status = OrderStatus.CANCELLED
        await sql_store.save(EntityKind.ORDER, mine)
        await sql_store.save(EntityKind.ORDER, theirs)

        by_buyer = await sql_store.query_by(EntityKind.ORDER, buyer_id="buyer-1")
        by_status = await sql_store.query_by(
            EntityKind.ORDER, listing_id=active_listing.id, status=OrderStatus.CANCELLED
        )

        assert [o.id for o in by_buyer] == [mine.id]
        assert [o.id for o in by_status] == [theirs.id]

    @pytest.mark.asyncio
    async def test_delete(self, sql_store: SqlRecordStore, active_listing: Listing) -> None:
        order = _order(active_listing)
        await sql_store.save(EntityKind.ORDER, order)

        assert await sql_store.delete(EntityKind.ORDER, order.id) is True
        assert await sql_store.delete(EntityKind.ORDER, order.id) is False
        assert await sql_store.get(EntityKind.ORDER, order.id) is None

    @pytest.mark.asyncio
    async def test_conditional_update_refuses_stale_status(
        self, sql_store: SqlRecordStore, active_listing: Listing
    ) -> None:
        await sql_store.save(EntityKind.LISTING, active_listing)
        sold = active_listing.model_copy(update={"status": ListingStatus.SOLD})
        await sql_store.update(EntityKind.LISTING, sold, expected_status=ListingStatus.ACTIVE)

        stale = active_listing.model_copy(update={"title": "Overwritten"})
        with pytest.raises(StaleRecordError) as exc_info:
            await sql_store.update(
                EntityKind.LISTING, stale, expected_status=ListingStatus.ACTIVE
            )

        assert exc_info.value.actual == ListingStatus.SOLD
        loaded = await sql_store.get(EntityKind.LISTING, active_listing.id)
        assert loaded.status == ListingStatus.SOLD
        assert loaded.title == active_listing.title

    @pytest.mark.asyncio
    async def test_conditional_update_of_missing_record_raises_storage_error(
        self, sql_store: SqlRecordStore, active_listing: Listing
    ) -> None:
        with pytest.raises(StorageError):
            await sql_store.update(
                EntityKind.LISTING, active_listing, expected_status=ListingStatus.ACTIVE
            )
