"""Domain layer — pure business logic with zero framework dependencies."""

from provenance_exchange.domain.enums import (
    AuthenticationStatus,
    BidStatus,
    ListingStatus,
    OrderStatus,
)
from provenance_exchange.domain.exceptions import (
    ExchangeError,
    NotFoundError,
    StorageError,
    WrongStateError,
)
from provenance_exchange.domain.listing_ledger import ListingLedger
from provenance_exchange.domain.protocols import ActorContext
from provenance_exchange.domain.results import OperationResult, returns_result
from provenance_exchange.domain.state_machine import (
    AuthenticationStateMachine,
    OrderStateMachine,
    fire_transition,
)

__all__ = [
    "AuthenticationStatus",
    "BidStatus",
    "ListingStatus",
    "OrderStatus",
    "ExchangeError",
    "NotFoundError",
    "StorageError",
    "WrongStateError",
    "ListingLedger",
    "ActorContext",
    "OperationResult",
    "returns_result",
    "AuthenticationStateMachine",
    "OrderStateMachine",
    "fire_transition",
]
