"""Verification Status Poller — bridges partner cases to local state.

One asyncio task per in-progress AuthenticationRequest:
    1. Every `interval` seconds, ask the partner for the case status.
    2. A transport failure (ExternalUnavailableError) is logged and the tick
       is skipped; the poller keeps going.
    3. On a terminal partner status (completed / failed / cancelled) fetch the
       final result, record it through the AuthenticationCoordinator, run the
       terminal callback, and stop.

Pollers are keyed by request id in a PollerRegistry so the application can
dispose of all of them on shutdown. dispose() is idempotent.

Usage:
    registry = PollerRegistry()
    registry.start(VerificationStatusPoller(request.id, reference, partner, coordinator))
    ...
    await registry.dispose_all()
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

from provenance_exchange.domain.enums import AuthenticationOutcome, PartnerStatus
from provenance_exchange.domain.exceptions import (
    DuplicateOperationError,
    ExternalUnavailableError,
)
from provenance_exchange.domain.models import utc_now
from provenance_exchange.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from provenance_exchange.domain.models import AuthenticationRequest
    from provenance_exchange.domain.protocols import AuthenticationPartnerAPI
    from provenance_exchange.services.authentication_service import (
        AuthenticationCoordinator,
    )

    TerminalCallback = Callable[[AuthenticationRequest], Awaitable[None]]

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 30.0


class VerificationStatusPoller:
    """Polls one partner case until it reaches a terminal status."""

    def __init__(
        self,
        request_id: str,
        partner_reference: str,
        partner: AuthenticationPartnerAPI,
        coordinator: AuthenticationCoordinator,
        on_terminal: TerminalCallback | None = None,
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.request_id = request_id
        self.partner_reference = partner_reference
        self._partner = partner
        self._coordinator = coordinator
        self._on_terminal = on_terminal
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._disposed = False
        self.ticks = 0
        self.failed_ticks = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task:
        if self._task is not None:
            raise DuplicateOperationError(f"poller:{self.request_id}")
        self._task = asyncio.create_task(self._run(), name=f"poller:{self.request_id}")
        self._task.add_done_callback(self._log_crash)
        logger.info(
            "poller.started",
            request_id=self.request_id,
            partner_reference=self.partner_reference,
            interval=self._interval,
        )
        return self._task

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def dispose(self) -> None:
        """Cancel the task if it is still running. Safe to call repeatedly."""
        if self._disposed:
            return
        self._disposed = True
        if self._task is None or self._task.done():
            return
        # Called from the terminal callback: the loop is already exiting.
        if asyncio.current_task() is self._task:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        logger.info("poller.disposed", request_id=self.request_id, ticks=self.ticks)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll_once(self) -> bool:
        """Run a single tick. Returns True once the case reached a terminal status."""
        self.ticks += 1
        try:
            status = await self._partner.get_status(self.partner_reference)
        except ExternalUnavailableError as exc:
            self.failed_ticks += 1
            logger.warning(
                "poller.tick_failed",
                request_id=self.request_id,
                tick=self.ticks,
                error=exc.message,
            )
            return False

        status = PartnerStatus(status)
        if not status.is_terminal:
            logger.debug("poller.tick", request_id=self.request_id, status=status.value)
            return False

        try:
            result = await self._partner.get_result(self.partner_reference)
        except ExternalUnavailableError as exc:
            self.failed_ticks += 1
            logger.warning(
                "poller.result_fetch_failed",
                request_id=self.request_id,
                error=exc.message,
            )
            return False

        passed = status == PartnerStatus.COMPLETED and result.is_authentic
        outcome = AuthenticationOutcome.SUCCESS if passed else AuthenticationOutcome.FAILURE
        recorded = await self._coordinator.record_result(
            self.request_id,
            outcome,
            details=result.details,
            now=utc_now(),
            result=result,
        )
        if not recorded.ok:
            logger.warning(
                "poller.result_rejected",
                request_id=self.request_id,
                code=recorded.code,
            )
            return True

        logger.info(
            "poller.terminal",
            request_id=self.request_id,
            partner_status=status.value,
            outcome=outcome.value,
        )
        if self._on_terminal is not None:
            await self._on_terminal(recorded.value)
        return True

    async def _run(self) -> None:
        while True:
            if await self.poll_once():
                logger.info("poller.finished", request_id=self.request_id, ticks=self.ticks)
                return
            await asyncio.sleep(self._interval)

    def _log_crash(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "poller.crashed",
                request_id=self.request_id,
                error=str(exc),
                exc_info=exc,
            )


class PollerRegistry:
    """Active pollers keyed by authentication request id."""

    def __init__(self) -> None:
        self._pollers: dict[str, VerificationStatusPoller] = {}

    def start(self, poller: VerificationStatusPoller) -> VerificationStatusPoller:
        existing = self._pollers.get(poller.request_id)
        if existing is not None and not existing.done:
            raise DuplicateOperationError(f"poller:{poller.request_id}")

        self._pollers[poller.request_id] = poller
        task = poller.start()
        task.add_done_callback(lambda _task: self._forget(poller))
        return poller

    def get(self, request_id: str) -> VerificationStatusPoller | None:
        return self._pollers.get(request_id)

    @property
    def active_ids(self) -> list[str]:
        return [rid for rid, poller in self._pollers.items() if not poller.done]

    def __len__(self) -> int:
        return len(self._pollers)

    async def dispose(self, request_id: str) -> None:
        poller = self._pollers.pop(request_id, None)
        if poller is not None:
            await poller.dispose()

    async def dispose_all(self) -> None:
        pollers = list(self._pollers.values())
        self._pollers.clear()
        for poller in pollers:
            await poller.dispose()
        if pollers:
            logger.info("poller.registry_disposed", count=len(pollers))

    def _forget(self, poller: VerificationStatusPoller) -> None:
        if self._pollers.get(poller.request_id) is poller:
            del self._pollers[poller.request_id]
