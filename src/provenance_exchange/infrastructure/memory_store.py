"""Bounded in-process record store.

Records are held as JSON snapshots (model_dump(mode="json")) and rebuilt on
every read, so callers always get a fresh copy and never share mutable state.

Each entity kind holds at most `capacity` records. When a kind is full, the
least recently written record in a terminal state is evicted to make room; if
no terminal record exists, save() raises CapacityExceededError. Live records
are never dropped.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import TYPE_CHECKING, Any

from provenance_exchange.domain.enums import (
    AuthenticationStatus,
    BidStatus,
    CounterofferStatus,
    EntityKind,
    ListingStatus,
    OrderStatus,
)
from provenance_exchange.domain.exceptions import (
    CapacityExceededError,
    StaleRecordError,
    StorageError,
)
from provenance_exchange.domain.models import RECORD_TYPES
from provenance_exchange.logging_config import get_logger

if TYPE_CHECKING:
    from pydantic import BaseModel

logger = get_logger(__name__)

# Statuses after which a record can be evicted. Sold listings stay: their
# orders still reference them.
EVICTABLE_STATUSES: dict[EntityKind, frozenset[str]] = {
    EntityKind.LISTING: frozenset({ListingStatus.EXPIRED}),
    EntityKind.BID: frozenset({BidStatus.REJECTED, BidStatus.EXPIRED}),
    EntityKind.COUNTEROFFER: frozenset({CounterofferStatus.REJECTED}),
    EntityKind.ORDER: frozenset(
        {OrderStatus.COMPLETED, OrderStatus.RETURNED, OrderStatus.CANCELLED}
    ),
    EntityKind.AUTHENTICATION_REQUEST: frozenset(
        {AuthenticationStatus.SUCCESS, AuthenticationStatus.FAILED}
    ),
}


class InMemoryRecordStore:
    """RecordStore backed by per-kind ordered dicts."""

    def __init__(self, capacity: int = 10_000) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._records: dict[EntityKind, OrderedDict[str, dict]] = {
            kind: OrderedDict() for kind in EntityKind
        }

    async def save(self, kind: EntityKind, record: BaseModel) -> None:
        bucket = self._records[kind]
        record_id = record.id
        if record_id not in bucket and len(bucket) >= self._capacity:
            self._evict_one(kind)
        bucket[record_id] = record.model_dump(mode="json")
        bucket.move_to_end(record_id)

    async def get(self, kind: EntityKind, record_id: str) -> Any | None:
        snapshot = self._records[kind].get(record_id)
        if snapshot is None:
            return None
        return RECORD_TYPES[kind].model_validate(snapshot)

    async def update(
        self, kind: EntityKind, record: BaseModel, expected_status: str | None = None
    ) -> None:
        bucket = self._records[kind]
        if record.id not in bucket:
            raise StorageError(f"Cannot update missing {kind} record {record.id}", "RECORD_MISSING")
        stored_status = bucket[record.id].get("status")
        if expected_status is not None and stored_status != expected_status:
            raise StaleRecordError(kind.value, record.id, expected_status, stored_status)
        bucket[record.id] = record.model_dump(mode="json")
        bucket.move_to_end(record.id)

    async def delete(self, kind: EntityKind, record_id: str) -> bool:
        return self._records[kind].pop(record_id, None) is not None

    async def query_by(self, kind: EntityKind, **filters: Any) -> list[Any]:
        model = RECORD_TYPES[kind]
        matches = []
        for snapshot in self._records[kind].values():
            record = model.model_validate(snapshot)
            if all(getattr(record, field) == value for field, value in filters.items()):
                matches.append(record)
        return matches

    def count(self, kind: EntityKind) -> int:
        return len(self._records[kind])

    def _evict_one(self, kind: EntityKind) -> None:
        evictable = EVICTABLE_STATUSES[kind]
        bucket = self._records[kind]
        for record_id, snapshot in bucket.items():
            if snapshot.get("status") in evictable:
                del bucket[record_id]
                logger.info("store.evicted", kind=kind.value, record_id=record_id)
                return
        logger.error("store.capacity_exceeded", kind=kind.value, capacity=self._capacity)
        raise CapacityExceededError(kind.value, self._capacity)
