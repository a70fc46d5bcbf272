"""Domain exceptions for the Provenance Exchange.

These exceptions are framework-agnostic and represent business rule violations.
Business operations return them inside an OperationResult (see domain/results.py);
the API layer's middleware translates them to HTTP responses.
"""


class ExchangeError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "EXCHANGE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Validation Errors (bad input, never retried) ---


class ValidationError(ExchangeError):
    """Raised when a request is rejected on its inputs alone."""

    def __init__(self, message: str, code: str = "VALIDATION_ERROR") -> None:
        super().__init__(message=message, code=code)


class InvalidBidError(ValidationError):
    """Raised when a bid cannot be placed.

    The reason is one of LISTING_INACTIVE, LISTING_EXPIRED, AMOUNT_TOO_LOW,
    INVALID_AMOUNT, SELF_BID or UNVERIFIED_ACCOUNT.
    """

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message=message, code="INVALID_BID")
        self.reason = reason


class InvalidPartnerError(ValidationError):
    def __init__(self, partner_id: str) -> None:
        super().__init__(
            message=f"Unknown authentication partner: {partner_id}",
            code="INVALID_PARTNER",
        )
        self.partner_id = partner_id


# --- State Conflicts (surfaced, never silently resolved) ---


class StateConflictError(ExchangeError):
    """Raised when an operation conflicts with the current state of an entity."""

    def __init__(self, message: str, code: str = "STATE_CONFLICT") -> None:
        super().__init__(message=message, code=code)


class NotActiveError(StateConflictError):
    """Raised when a listing is no longer open (e.g. a concurrent accept sold it)."""

    def __init__(self, listing_id: str, status: str) -> None:
        super().__init__(
            message=f"Listing {listing_id} is not active (status: {status})",
            code="LISTING_NOT_ACTIVE",
        )
        self.listing_id = listing_id
        self.status = status


class NotPendingError(StateConflictError):
    def __init__(self, entity: str, entity_id: str, status: str) -> None:
        super().__init__(
            message=f"{entity} {entity_id} is no longer pending (status: {status})",
            code="NOT_PENDING",
        )
        self.entity_id = entity_id
        self.status = status


class BidExpiredError(StateConflictError):
    def __init__(self, bid_id: str) -> None:
        super().__init__(message=f"Bid {bid_id} has expired", code="BID_EXPIRED")
        self.bid_id = bid_id


class AlreadyTerminalError(StateConflictError):
    """Raised when a result is recorded against a request that already has one."""

    def __init__(self, request_id: str, status: str) -> None:
        super().__init__(
            message=f"Authentication request {request_id} is already {status}",
            code="ALREADY_TERMINAL",
        )
        self.request_id = request_id
        self.status = status


class AlreadyShippedError(StateConflictError):
    def __init__(self, order_id: str, tracking_number: str) -> None:
        super().__init__(
            message=f"Order {order_id} already shipped with tracking {tracking_number}",
            code="ALREADY_SHIPPED",
        )
        self.order_id = order_id
        self.tracking_number = tracking_number


class WrongStateError(StateConflictError):
    """Raised when an attempted state transition is not allowed.

    Example: pending_payment -> shipped (must go through authentication first).
    """

    def __init__(self, current_state: str, attempted: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {current_state} -> {attempted}",
            code="WRONG_STATE",
        )
        self.current_state = current_state
        self.attempted = attempted


class PayoutNotAllowedError(StateConflictError):
    def __init__(self, order_id: str, reason: str) -> None:
        super().__init__(
            message=f"Payout not allowed for order {order_id}: {reason}",
            code="PAYOUT_NOT_ALLOWED",
        )
        self.order_id = order_id


class DuplicateOperationError(StateConflictError):
    """Raised when a duplicate idempotency key is detected."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            message=f"Duplicate operation detected for key: {idempotency_key}",
            code="DUPLICATE_OPERATION",
        )


class StaleRecordError(StateConflictError):
    """Raised by a conditional store update when the stored status has moved on."""

    def __init__(self, kind: str, record_id: str, expected: str, actual: str | None) -> None:
        super().__init__(
            message=f"{kind} {record_id} is {actual}, expected {expected}",
            code="STALE_RECORD",
        )
        self.kind = kind
        self.record_id = record_id
        self.expected = expected
        self.actual = actual


# --- Lookup and limits ---


class NotFoundError(ExchangeError):
    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(message=f"{entity} not found: {entity_id}", code="NOT_FOUND")
        self.entity = entity
        self.entity_id = entity_id


class ForbiddenError(ExchangeError):
    """Raised when the acting user is not a party allowed to perform the operation."""

    def __init__(self, user_id: str, action: str) -> None:
        super().__init__(message=f"User {user_id} may not {action}", code="FORBIDDEN")
        self.user_id = user_id
        self.action = action


class LimitExceededError(ExchangeError):
    """Raised when the seller has used up the counteroffer rounds on a listing."""

    def __init__(self, listing_id: str, limit: int) -> None:
        super().__init__(
            message=f"Listing {listing_id} already has the maximum of {limit} counteroffers",
            code="LIMIT_EXCEEDED",
        )
        self.listing_id = listing_id
        self.limit = limit


# --- External collaborators ---


class ExternalUnavailableError(ExchangeError):
    """Raised when a partner, shipping or payment service cannot be reached."""

    def __init__(self, service: str, detail: str = "") -> None:
        super().__init__(
            message=f"{service} is unavailable" + (f": {detail}" if detail else ""),
            code="EXTERNAL_UNAVAILABLE",
        )
        self.service = service
        self.detail = detail


# --- Storage (propagates unchecked) ---


class StorageError(ExchangeError):
    """Raised by record stores. Never converted into an OperationResult."""

    def __init__(self, message: str, code: str = "STORAGE_ERROR") -> None:
        super().__init__(message=message, code=code)


class CapacityExceededError(StorageError):
    """Raised when the store is full and nothing can be evicted safely."""

    def __init__(self, kind: str, capacity: int) -> None:
        super().__init__(
            message=f"Record store is full for {kind} ({capacity} live records)",
            code="CAPACITY_EXCEEDED",
        )
        self.kind = kind
        self.capacity = capacity
