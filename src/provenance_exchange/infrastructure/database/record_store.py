"""SQLAlchemy-backed RecordStore.

Each call runs in its own short transaction, so every write is atomic per
entity and the latest write wins, unless the caller passes the status it
expects the stored row to still have. SQLAlchemy errors are re-raised as
StorageError; they never turn into OperationResult failures.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError

from provenance_exchange.domain.exceptions import StaleRecordError, StorageError
from provenance_exchange.domain.models import RECORD_TYPES
from provenance_exchange.infrastructure.database.orm_models import RecordRow
from provenance_exchange.logging_config import get_logger

if TYPE_CHECKING:
    from pydantic import BaseModel
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from provenance_exchange.domain.enums import EntityKind

logger = get_logger(__name__)

# Filters that map onto indexed columns instead of the JSON payload.
_COLUMN_FILTERS = ("status", "buyer_id", "seller_id")


class SqlRecordStore:
    """RecordStore storing one JSON snapshot row per entity."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def save(self, kind: EntityKind, record: BaseModel) -> None:
        payload = record.model_dump(mode="json")
        try:
            async with self._session_factory() as session, session.begin():
                await session.merge(self._row(kind, record.id, payload))
        except SQLAlchemyError as exc:
            self._raise(exc, "save", kind, record.id)

    async def get(self, kind: EntityKind, record_id: str) -> Any | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(RecordRow, (kind.value, record_id))
        except SQLAlchemyError as exc:
            self._raise(exc, "get", kind, record_id)
        if row is None:
            return None
        return RECORD_TYPES[kind].model_validate(row.payload)

    async def update(
        self, kind: EntityKind, record: BaseModel, expected_status: str | None = None
    ) -> None:
        payload = record.model_dump(mode="json")
        # A single UPDATE ... WHERE keeps the status check and the write atomic.
        stmt = (
            update(RecordRow)
            .where(RecordRow.kind == kind.value, RecordRow.id == record.id)
            .values(
                payload=payload,
                status=payload.get("status"),
                buyer_id=payload.get("buyer_id"),
                seller_id=payload.get("seller_id"),
                updated_at=datetime.now(UTC),
            )
        )
        if expected_status is not None:
            stmt = stmt.where(RecordRow.status == str(expected_status))

        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(stmt)
                if result.rowcount == 0:
                    row = await session.get(RecordRow, (kind.value, record.id))
                    if row is None:
                        raise StorageError(
                            f"Cannot update missing {kind} record {record.id}",
                            "RECORD_MISSING",
                        )
                    raise StaleRecordError(
                        kind.value, record.id, str(expected_status), row.status
                    )
        except SQLAlchemyError as exc:
            self._raise(exc, "update", kind, record.id)

    async def delete(self, kind: EntityKind, record_id: str) -> bool:
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    delete(RecordRow).where(
                        RecordRow.kind == kind.value, RecordRow.id == record_id
                    )
                )
        except SQLAlchemyError as exc:
            self._raise(exc, "delete", kind, record_id)
        return result.rowcount > 0

    async def query_by(self, kind: EntityKind, **filters: Any) -> list[Any]:
        stmt = select(RecordRow).where(RecordRow.kind == kind.value)
        for column in _COLUMN_FILTERS:
            if column in filters:
                stmt = stmt.where(getattr(RecordRow, column) == str(filters[column]))
        stmt = stmt.order_by(RecordRow.updated_at)

        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            self._raise(exc, "query_by", kind, None)

        model = RECORD_TYPES[kind]
        records = [model.model_validate(row.payload) for row in rows]
        return [
            r for r in records
            if all(getattr(r, field) == value for field, value in filters.items())
        ]

    @staticmethod
    def _row(kind: EntityKind, record_id: str, payload: dict) -> RecordRow:
        return RecordRow(
            kind=kind.value,
            id=record_id,
            payload=payload,
            status=payload.get("status"),
            buyer_id=payload.get("buyer_id"),
            seller_id=payload.get("seller_id"),
            updated_at=datetime.now(UTC),
        )

    @staticmethod
    def _raise(
        exc: SQLAlchemyError, operation: str, kind: EntityKind, record_id: str | None
    ) -> None:
        logger.error(
            "store.sql_error",
            operation=operation,
            kind=kind.value,
            record_id=record_id,
            error=str(exc),
        )
        raise StorageError(f"Record store {operation} failed: {exc}") from exc
