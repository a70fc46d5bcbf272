"""SQLAlchemy 2.0 ORM models for the Provenance Exchange.

One table:
    records — the latest JSON snapshot of every entity, keyed by (kind, id).

Design decisions:
    - A single snapshot row per entity; writes are last-write-wins.
    - Bids and counteroffers live inside their listing's snapshot.
    - status and the party ids are copied out of the payload into indexed
      columns so hot-path queries do not scan every snapshot.
    - JSONB on PostgreSQL, generic JSON elsewhere (SQLite in tests).
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import JSON, DateTime, Index, String, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    target.updated_at = datetime.now(UTC)


class RecordRow(Base):
    """Snapshot of one marketplace entity."""

    __tablename__ = "records"

    kind: Mapped[str] = mapped_column(String(32), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    payload: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"),
        nullable=False,
        comment="model_dump(mode='json') of the entity",
    )

    # --- Denormalized lookup columns ---
    status: Mapped[str | None] = mapped_column(String(40), nullable=True)
    buyer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    seller_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("idx_records_kind_status", "kind", "status"),
        Index("idx_records_buyer", "buyer_id"),
        Index("idx_records_seller", "seller_id"),
    )

    def __repr__(self) -> str:
        return f"<RecordRow {self.kind}:{self.id} status={self.status}>"


event.listen(RecordRow, "before_update", _set_updated_at)
