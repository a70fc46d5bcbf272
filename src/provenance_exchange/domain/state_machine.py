"""Order and Authentication State Machine Guards.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter what the API or the poller does, an illegal transition
(e.g., pending_payment -> shipped) raises WrongStateError.

The machines are instantiated per-entity at the entity's current status and
validate transitions before the model's status field is updated.

Order transition table:
    pending_bid                -> pending_payment             (promote)
    pending_payment            -> payment_confirmed           (confirm_payment)
    payment_confirmed          -> authentication_in_progress  (begin_authentication)
    authentication_in_progress -> authenticated               (authentication_passed)
    authenticated              -> shipped                     (ship)
    shipped                    -> delivered                   (deliver)
    delivered                  -> completed                   (complete)
    delivered                  -> return_requested            (request_return)
    return_requested           -> returned                    (process_return)
    any non-terminal           -> cancelled                   (cancel)

Authentication transition table:
    pending                -> in-progress   (begin_inspection)
    in-progress            -> success       (pass_inspection)
    in-progress            -> failed        (fail_inspection)
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from provenance_exchange.domain.enums import AuthenticationStatus, OrderStatus
from provenance_exchange.domain.exceptions import WrongStateError


class _StatusGuard:
    """Shared helpers for machines started at a persisted status string."""

    def __init__(self, current_status: str) -> None:
        # Validate that the status string is a known state value
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the status enum)."""
        return str(self.current_state.value)


class OrderStateMachine(_StatusGuard, StateMachine):
    """State machine that guards the order lifecycle.

    Usage:
        sm = OrderStateMachine(current_status="pending_payment")
        sm.confirm_payment()
        sm.status  # "payment_confirmed"
    """

    # --- States ---
    pending_bid = State("Pending bid", value=OrderStatus.PENDING_BID.value, initial=True)
    pending_payment = State("Pending payment", value=OrderStatus.PENDING_PAYMENT.value)
    payment_confirmed = State("Payment confirmed", value=OrderStatus.PAYMENT_CONFIRMED.value)
    authentication_in_progress = State(
        "Authentication in progress",
        value=OrderStatus.AUTHENTICATION_IN_PROGRESS.value,
    )
    authenticated = State("Authenticated", value=OrderStatus.AUTHENTICATED.value)
    shipped = State("Shipped", value=OrderStatus.SHIPPED.value)
    delivered = State("Delivered", value=OrderStatus.DELIVERED.value)
    completed = State("Completed", value=OrderStatus.COMPLETED.value, final=True)
    return_requested = State("Return requested", value=OrderStatus.RETURN_REQUESTED.value)
    returned = State("Returned", value=OrderStatus.RETURNED.value, final=True)
    cancelled = State("Cancelled", value=OrderStatus.CANCELLED.value, final=True)

    # --- Events / Transitions ---

    # Acceptance and payment
    promote = pending_bid.to(pending_payment)
    confirm_payment = pending_payment.to(payment_confirmed)

    # Authentication
    begin_authentication = payment_confirmed.to(authentication_in_progress)
    authentication_passed = authentication_in_progress.to(authenticated)

    # Fulfilment
    ship = authenticated.to(shipped)
    deliver = shipped.to(delivered)
    complete = delivered.to(completed)

    # Returns
    request_return = delivered.to(return_requested)
    process_return = return_requested.to(returned)

    # Cancellation
    cancel = (
        pending_bid.to(cancelled)
        | pending_payment.to(cancelled)
        | payment_confirmed.to(cancelled)
        | authentication_in_progress.to(cancelled)
        | authenticated.to(cancelled)
        | shipped.to(cancelled)
        | delivered.to(cancelled)
        | return_requested.to(cancelled)
    )


class AuthenticationStateMachine(_StatusGuard, StateMachine):
    """State machine that keeps authentication status monotonic."""

    pending = State("Pending", value=AuthenticationStatus.PENDING.value, initial=True)
    in_progress = State("In progress", value=AuthenticationStatus.IN_PROGRESS.value)
    success = State("Success", value=AuthenticationStatus.SUCCESS.value, final=True)
    failed = State("Failed", value=AuthenticationStatus.FAILED.value, final=True)

    begin_inspection = pending.to(in_progress)
    # Verdicts only exist for cases a partner is actually inspecting.
    pass_inspection = in_progress.to(success)
    fail_inspection = in_progress.to(failed)


# Event that reaches each order status through the generic advance() path.
ORDER_EVENT_FOR_STATUS: dict[OrderStatus, str] = {
    OrderStatus.PENDING_PAYMENT: "promote",
    OrderStatus.PAYMENT_CONFIRMED: "confirm_payment",
    OrderStatus.AUTHENTICATION_IN_PROGRESS: "begin_authentication",
    OrderStatus.AUTHENTICATED: "authentication_passed",
    OrderStatus.SHIPPED: "ship",
    OrderStatus.DELIVERED: "deliver",
    OrderStatus.COMPLETED: "complete",
    OrderStatus.RETURN_REQUESTED: "request_return",
    OrderStatus.RETURNED: "process_return",
    OrderStatus.CANCELLED: "cancel",
}


def fire_transition(
    machine_cls: type[_StatusGuard],
    current_status: str,
    event_name: str,
) -> str:
    """Validate a transition and return the new status.

    Creates a temporary state machine at current_status, fires the named event,
    and returns the resulting status string.

    Raises:
        WrongStateError: If the event is unknown or not allowed from current_status.
    """
    sm = machine_cls(current_status=current_status)
    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise WrongStateError(current_status, event_name)
    try:
        event_method()
    except TransitionNotAllowed as err:
        raise WrongStateError(current_status, event_name) from err
    return sm.status
