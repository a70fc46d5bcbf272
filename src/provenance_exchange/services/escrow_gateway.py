"""Escrow Payment Gateway — the fund-flow contract of the marketplace.

Four primitives over an injected PaymentProcessor:
    authorize  -> hold funds for a purpose (e.g. the winning bid)
    capture    -> take an authorized hold
    payout     -> release sale proceeds to the seller
    refund     -> return captured (or release authorized) funds

Every primitive returns an OperationResult. Transient processor failures are
retried with tenacity; once retries are exhausted the result carries an
ExternalUnavailableError. When money may be released to the seller is decided
by the OrderLifecycleManager, not here.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from provenance_exchange.domain.enums import EscrowPurpose, EscrowStatus
from provenance_exchange.domain.exceptions import (
    DuplicateOperationError,
    ExternalUnavailableError,
    NotFoundError,
    ValidationError,
    WrongStateError,
)
from provenance_exchange.domain.models import EscrowRecord
from provenance_exchange.domain.results import returns_result
from provenance_exchange.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from decimal import Decimal

    from provenance_exchange.domain.protocols import PaymentProcessor

logger = get_logger(__name__)

_TRANSIENT_ERRORS = (ExternalUnavailableError, ConnectionError, TimeoutError)


class EscrowPaymentGateway:
    """Moves funds through the processor and keeps an EscrowRecord per movement."""

    def __init__(
        self,
        processor: PaymentProcessor,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 1.0,
    ) -> None:
        self._processor = processor
        self._retry_attempts = retry_attempts
        self._retry_backoff = retry_backoff_seconds
        self._records: dict[str, EscrowRecord] = {}

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    @returns_result
    async def authorize(
        self,
        purpose: EscrowPurpose,
        amount: Decimal,
        metadata: dict[str, str] | None = None,
        related_order_id: str | None = None,
    ) -> EscrowRecord:
        if amount <= 0:
            raise ValidationError(
                "Authorization amount must be greater than zero", "INVALID_AMOUNT"
            )

        metadata = dict(metadata or {})
        metadata["purpose"] = purpose.value
        intent_id = await self._call("authorize", self._processor.authorize, amount, metadata)

        record = EscrowRecord(
            intent_id=intent_id,
            purpose=purpose,
            amount=amount,
            status=EscrowStatus.AUTHORIZED,
            related_order_id=related_order_id,
            metadata=metadata,
        )
        self._records[intent_id] = record
        logger.info(
            "escrow.authorized",
            intent_id=intent_id,
            purpose=purpose.value,
            amount=str(amount),
        )
        return record

    @returns_result
    async def capture(self, intent_id: str) -> EscrowRecord:
        record = self._get_or_raise(intent_id)
        if record.status != EscrowStatus.AUTHORIZED:
            raise WrongStateError(record.status, "capture")

        await self._call("capture", self._processor.capture, intent_id)
        self._set_status(record, EscrowStatus.CAPTURED)
        logger.info("escrow.captured", intent_id=intent_id, amount=str(record.amount))
        return record

    @returns_result
    async def payout(self, order_id: str, seller_id: str, amount: Decimal) -> EscrowRecord:
        """Release sale proceeds to the seller. At most one payout per order."""
        for existing in self._records.values():
            if existing.purpose == EscrowPurpose.PAYOUT and existing.related_order_id == order_id:
                raise DuplicateOperationError(f"payout:{order_id}")

        metadata = {"order_id": order_id, "seller_id": seller_id}
        transfer_id = await self._call(
            "payout", self._processor.payout, seller_id, amount, metadata
        )

        record = EscrowRecord(
            intent_id=transfer_id,
            purpose=EscrowPurpose.PAYOUT,
            amount=amount,
            status=EscrowStatus.PAID_OUT,
            related_order_id=order_id,
            metadata=metadata,
        )
        self._records[transfer_id] = record
        logger.info(
            "escrow.paid_out",
            order_id=order_id,
            seller_id=seller_id,
            transfer_id=transfer_id,
            amount=str(amount),
        )
        return record

    @returns_result
    async def refund(self, intent_id: str, amount: Decimal | None = None) -> EscrowRecord:
        """Refund a captured payment or release an authorized hold.

        Defaults to the full original amount.
        """
        original = self._get_or_raise(intent_id)
        if original.status not in (EscrowStatus.AUTHORIZED, EscrowStatus.CAPTURED):
            raise WrongStateError(original.status, "refund")

        amount = original.amount if amount is None else amount
        if amount <= 0 or amount > original.amount:
            raise ValidationError(
                f"Refund amount must be within (0, {original.amount}]", "INVALID_AMOUNT"
            )

        refund_id = await self._call("refund", self._processor.refund, intent_id, amount)
        self._set_status(original, EscrowStatus.REFUNDED)

        record = EscrowRecord(
            intent_id=refund_id,
            purpose=EscrowPurpose.REFUND,
            amount=amount,
            status=EscrowStatus.REFUNDED,
            related_order_id=original.related_order_id,
            metadata={"original_intent_id": intent_id},
        )
        self._records[refund_id] = record
        logger.info("escrow.refunded", intent_id=intent_id, refund_id=refund_id, amount=str(amount))
        return record

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    def get_record(self, intent_id: str) -> EscrowRecord | None:
        return self._records.get(intent_id)

    def records_for_order(self, order_id: str) -> list[EscrowRecord]:
        return [r for r in self._records.values() if r.related_order_id == order_id]

    def link_order(self, intent_id: str, order_id: str) -> None:
        record = self._records.get(intent_id)
        if record is not None:
            record.related_order_id = order_id

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _call(
        self,
        operation: str,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> Any:
        """Invoke the processor with bounded retries on transient failures."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._retry_attempts),
                wait=wait_exponential(multiplier=self._retry_backoff, max=10),
                retry=retry_if_exception_type(_TRANSIENT_ERRORS),
                reraise=True,
            ):
                with attempt:
                    return await func(*args)
        except _TRANSIENT_ERRORS as exc:
            logger.warning(
                "escrow.processor_unavailable",
                operation=operation,
                attempts=self._retry_attempts,
                error=str(exc),
            )
            if isinstance(exc, ExternalUnavailableError):
                raise
            raise ExternalUnavailableError("payment processor", str(exc)) from exc
        return None

    def _get_or_raise(self, intent_id: str) -> EscrowRecord:
        record = self._records.get(intent_id)
        if record is None:
            raise NotFoundError("EscrowRecord", intent_id)
        return record

    @staticmethod
    def _set_status(record: EscrowRecord, status: EscrowStatus) -> None:
        record.status = status
        record.updated_at = datetime.now(UTC)
