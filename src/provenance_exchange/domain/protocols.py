"""Contracts for the collaborators the marketplace core depends on.

These are Protocols (structural subtyping): concrete implementations in
infrastructure/ and services/ only need to match the shape.

The domain layer has ZERO imports from httpx, SQLAlchemy, or any external service.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime
    from decimal import Decimal

    from pydantic import BaseModel

    from provenance_exchange.domain.enums import EntityKind, PartnerStatus
    from provenance_exchange.domain.models import (
        AuthenticationRequest,
        AuthenticationResult,
        Listing,
        Notification,
        Order,
    )


@dataclass(frozen=True)
class ActorContext:
    """The caller of an operation, passed explicitly on every call.

    Attributes:
        user_id: Identity of the acting user.
        is_verified: Whether the account passed verification (required to bid).
    """

    user_id: str
    is_verified: bool = False


@dataclass(frozen=True)
class ShippingLabel:
    tracking_number: str
    carrier: str
    estimated_delivery: datetime | None = None


@runtime_checkable
class RecordStore(Protocol):
    """Per-entity persistence, atomic per record, last write wins.

    Concrete implementations:
        - infrastructure/memory_store.py  (bounded, in-process)
        - infrastructure/database/record_store.py  (SQLAlchemy async)

    Raises StorageError (never an OperationResult) when the backend fails.
    """

    async def save(self, kind: EntityKind, record: BaseModel) -> None:
        """Insert or overwrite the snapshot of a record."""
        ...

    async def get(self, kind: EntityKind, record_id: str) -> Any | None:
        """Return a fresh copy of the record, or None."""
        ...

    async def update(
        self, kind: EntityKind, record: BaseModel, expected_status: str | None = None
    ) -> None:
        """Overwrite an existing record; StorageError if it is missing.

        With expected_status the write only lands if the stored record still has
        that status, otherwise StaleRecordError is raised and nothing changes.
        """
        ...

    async def delete(self, kind: EntityKind, record_id: str) -> bool:
        ...

    async def query_by(self, kind: EntityKind, **filters: Any) -> list[Any]:
        """Return records whose fields equal every filter value."""
        ...


@runtime_checkable
class NotificationSink(Protocol):
    async def emit(self, notification: Notification) -> None:
        """Deliver a one-way notification. Delivery failures never reach the core."""
        ...


@runtime_checkable
class AuthenticationPartnerAPI(Protocol):
    """An external authentication partner, reached over the network.

    Concrete implementations:
        - infrastructure/partners.py HttpPartnerClient  (httpx)
        - infrastructure/partners.py SimulatedPartner   (scripted)

    Transport failures raise ExternalUnavailableError.
    """

    async def submit(self, request: AuthenticationRequest, listing: Listing) -> str:
        """Open a case with the partner and return the partner's reference."""
        ...

    async def get_status(self, partner_reference: str) -> PartnerStatus:
        ...

    async def get_result(self, partner_reference: str) -> AuthenticationResult:
        ...

    async def cancel(self, partner_reference: str) -> None:
        ...


@runtime_checkable
class ShippingRateProvider(Protocol):
    async def quote(self, order: Order) -> Decimal:
        ...

    async def create_label(self, order: Order) -> ShippingLabel:
        ...

    async def track(self, tracking_number: str) -> str:
        ...


@runtime_checkable
class PaymentProcessor(Protocol):
    """Moves money. Every call either succeeds or raises."""

    async def authorize(self, amount: Decimal, metadata: dict[str, str]) -> str:
        """Place a hold and return the payment intent id."""
        ...

    async def capture(self, intent_id: str) -> None:
        ...

    async def payout(self, seller_id: str, amount: Decimal, metadata: dict[str, str]) -> str:
        """Transfer funds to a seller and return the transfer id."""
        ...

    async def refund(self, intent_id: str, amount: Decimal) -> str:
        ...
