"""Tests for the structured logging helpers."""

from __future__ import annotations

from decimal import Decimal

import structlog

from provenance_exchange.logging_config import bind_actor, render_amounts


class TestRenderAmounts:
    def test_decimals_become_strings(self) -> None:
        event = render_amounts(
            None, "info", {"event": "order.paid", "amount": Decimal("9000.00"), "attempt": 2}
        )
        assert event["amount"] == "9000.00"
        assert event["attempt"] == 2

    def test_event_without_amounts_is_untouched(self) -> None:
        event = {"event": "listing.expired", "listing_id": "l-1"}
        assert render_amounts(None, "info", dict(event)) == event


class TestBindActor:
    def test_user_id_joins_the_log_context(self) -> None:
        structlog.contextvars.clear_contextvars()
        try:
            bind_actor("buyer-1")
            assert structlog.contextvars.get_contextvars()["user_id"] == "buyer-1"
        finally:
            structlog.contextvars.clear_contextvars()
