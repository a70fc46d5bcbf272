"""Domain enumerations for the Provenance Exchange.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class ListingStatus(enum.StrEnum):
    """Lifecycle states of a listing. SOLD is reached exactly once."""

    SCHEDULED = "scheduled"
    ACTIVE = "active"
    SOLD = "sold"
    EXPIRED = "expired"


class BidStatus(enum.StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COUNTERED = "countered"
    EXPIRED = "expired"


class CounterofferStatus(enum.StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class AuthenticationStatus(enum.StrEnum):
    """Lifecycle states of an authentication request.

    Guarded by AuthenticationStateMachine; see domain/state_machine.py.
    """

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AuthenticationStatus.SUCCESS, AuthenticationStatus.FAILED)


class AuthenticationOutcome(enum.StrEnum):
    """Verdict reported by an authentication partner."""

    SUCCESS = "success"
    FAILURE = "failure"


class OrderStatus(enum.StrEnum):
    """Buyer/seller-visible order states.

    PENDING_BID is the provisional pre-state that exists between bid placement
    and acceptance. See domain/state_machine.py for the transition table.
    """

    PENDING_BID = "pending_bid"
    PENDING_PAYMENT = "pending_payment"
    PAYMENT_CONFIRMED = "payment_confirmed"
    AUTHENTICATION_IN_PROGRESS = "authentication_in_progress"
    AUTHENTICATED = "authenticated"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    RETURN_REQUESTED = "return_requested"
    RETURNED = "returned"
    CANCELLED = "cancelled"


class ReturnType(enum.StrEnum):
    BUYER_REMORSE = "buyer_remorse"
    ITEM_MISMATCH = "item_mismatch"
    NOT_AS_DESCRIBED = "not_as_described"
    DAMAGED_IN_TRANSIT = "damaged_in_transit"


class EscrowPurpose(enum.StrEnum):
    """Why funds move through the payment processor."""

    BID_AUTHORIZATION = "bid_authorization"
    WINNING_BID_PAYMENT = "winning_bid_payment"
    LISTING_FEE = "listing_fee"
    PAYOUT = "payout"
    REFUND = "refund"


class EscrowStatus(enum.StrEnum):
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    PAID_OUT = "paid_out"
    REFUNDED = "refunded"
    FAILED = "failed"


class EntityKind(enum.StrEnum):
    """Record types held by the persistent store."""

    LISTING = "listing"
    BID = "bid"
    COUNTEROFFER = "counteroffer"
    ORDER = "order"
    AUTHENTICATION_REQUEST = "authentication_request"


class NotificationType(enum.StrEnum):
    BID_RECEIVED = "bid_received"
    BID_ACCEPTED = "bid_accepted"
    BID_REJECTED = "bid_rejected"
    COUNTEROFFER_RECEIVED = "counteroffer_received"
    COUNTEROFFER_ANSWERED = "counteroffer_answered"
    AUTHENTICATION_PASSED = "authentication_passed"
    AUTHENTICATION_FAILED = "authentication_failed"
    ORDER_SHIPPED = "order_shipped"
    PAYOUT_RELEASED = "payout_released"
    REFUND_ISSUED = "refund_issued"


class PartnerStatus(enum.StrEnum):
    """Case status as reported by an external authentication partner."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PartnerStatus.COMPLETED, PartnerStatus.FAILED, PartnerStatus.CANCELLED)
