"""Simulated payment processor.

Generates fake payment-intent, transfer and refund ids so the full escrow
flow can run in development and in tests without a real payment provider.
A real processor only needs to match the PaymentProcessor protocol.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from provenance_exchange.logging_config import get_logger

if TYPE_CHECKING:
    from decimal import Decimal

logger = get_logger(__name__)


class SimulatedPaymentProcessor:
    """Accepts every call and records what it was asked to do."""

    def __init__(self) -> None:
        self.captured: set[str] = set()
        self.refunds: dict[str, Decimal] = {}
        self.payouts: dict[str, Decimal] = {}

    async def authorize(self, amount: Decimal, metadata: dict[str, str]) -> str:
        intent_id = "pi_" + uuid.uuid4().hex[:24]
        logger.info(
            "payment.authorize_simulated",
            intent_id=intent_id,
            amount=str(amount),
            purpose=metadata.get("purpose"),
        )
        return intent_id

    async def capture(self, intent_id: str) -> None:
        self.captured.add(intent_id)
        logger.info("payment.capture_simulated", intent_id=intent_id)

    async def payout(self, seller_id: str, amount: Decimal, metadata: dict[str, str]) -> str:
        transfer_id = "tr_" + uuid.uuid4().hex[:24]
        self.payouts[transfer_id] = amount
        logger.info(
            "payment.payout_simulated",
            transfer_id=transfer_id,
            seller_id=seller_id,
            amount=str(amount),
        )
        return transfer_id

    async def refund(self, intent_id: str, amount: Decimal) -> str:
        refund_id = "re_" + uuid.uuid4().hex[:24]
        self.refunds[refund_id] = amount
        logger.info(
            "payment.refund_simulated",
            intent_id=intent_id,
            refund_id=refund_id,
            amount=str(amount),
        )
        return refund_id
