"""Tests for the VerificationStatusPoller and PollerRegistry."""

from __future__ import annotations

import asyncio
from datetime import datetime
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from provenance_exchange.domain.enums import AuthenticationStatus, PartnerStatus
from provenance_exchange.domain.exceptions import DuplicateOperationError
from provenance_exchange.domain.listing_ledger import ListingLedger
from provenance_exchange.domain.models import AuthenticationRequest, Listing
from provenance_exchange.infrastructure.memory_store import InMemoryRecordStore
from provenance_exchange.infrastructure.partners import HttpPartnerClient, SimulatedPartner
from provenance_exchange.services.authentication_service import AuthenticationCoordinator
from provenance_exchange.services.verification_poller import (
    PollerRegistry,
    VerificationStatusPoller,
)


@pytest.fixture
def coordinator(store: InMemoryRecordStore) -> AuthenticationCoordinator:
    return AuthenticationCoordinator(store)


@pytest_asyncio.fixture
async def started(
    coordinator: AuthenticationCoordinator,
    ledger: ListingLedger,
    active_listing: Listing,
    now: datetime,
) -> AuthenticationRequest:
    """An in-progress request; the partner reference is filled in per test."""
    bid = ledger.place_bid(active_listing, "buyer-1", Decimal("9000"), now).unwrap()
    request = (await coordinator.open_request(bid, active_listing, "watchbox", now)).unwrap()
    return request


async def _submit(
    partner: SimulatedPartner,
    coordinator: AuthenticationCoordinator,
    request: AuthenticationRequest,
    listing: Listing,
    now: datetime,
) -> str:
    reference = await partner.submit(request, listing)
    (await coordinator.start(request.id, reference, now)).unwrap()
    return reference


class TestPollOnce:
    @pytest.mark.asyncio
    async def test_outage_tick_is_counted_and_skipped(
        self,
        coordinator: AuthenticationCoordinator,
        started: AuthenticationRequest,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        partner = SimulatedPartner(script=(None, PartnerStatus.IN_PROGRESS))
        reference = await _submit(partner, coordinator, started, active_listing, now)
        poller = VerificationStatusPoller(started.id, reference, partner, coordinator, interval=0)

        assert await poller.poll_once() is False
        assert await poller.poll_once() is False
        assert poller.ticks == 2
        assert poller.failed_ticks == 1
        request = await coordinator.get_request(started.id)
        assert request.status == AuthenticationStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_garbled_partner_answer_is_a_failed_tick(
        self,
        coordinator: AuthenticationCoordinator,
        started: AuthenticationRequest,
        now: datetime,
    ) -> None:
        answers = iter(
            [
                httpx.Response(200, text="<html>502 Bad Gateway</html>"),
                httpx.Response(200, json={"status": "completed"}),
                httpx.Response(200, json={"result": {"isAuthentic": True, "confidence": 0.99}}),
            ]
        )
        partner = HttpPartnerClient(
            "https://{partner_id}.partners.test/api",
            retry_attempts=1,
            retry_backoff_seconds=0,
            transport=httpx.MockTransport(lambda request: next(answers)),
        )
        (await coordinator.start(started.id, "watchbox:case-9", now)).unwrap()
        poller = VerificationStatusPoller(
            started.id, "watchbox:case-9", partner, coordinator, interval=0
        )

        assert await poller.poll_once() is False
        assert poller.failed_ticks == 1
        assert (await coordinator.get_request(started.id)).status == (
            AuthenticationStatus.IN_PROGRESS
        )

        assert await poller.poll_once() is True
        await partner.aclose()
        request = await coordinator.get_request(started.id)
        assert request.status == AuthenticationStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_completed_authentic_records_success(
        self,
        coordinator: AuthenticationCoordinator,
        started: AuthenticationRequest,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        partner = SimulatedPartner(script=(PartnerStatus.COMPLETED,))
        reference = await _submit(partner, coordinator, started, active_listing, now)
        seen: list[AuthenticationRequest] = []

        async def on_terminal(request: AuthenticationRequest) -> None:
            seen.append(request)

        poller = VerificationStatusPoller(
            started.id, reference, partner, coordinator, on_terminal=on_terminal, interval=0
        )

        assert await poller.poll_once() is True
        assert [r.status for r in seen] == [AuthenticationStatus.SUCCESS]
        assert seen[0].result.is_authentic is True

    @pytest.mark.asyncio
    async def test_completed_counterfeit_records_failure(
        self,
        coordinator: AuthenticationCoordinator,
        started: AuthenticationRequest,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        partner = SimulatedPartner(script=(PartnerStatus.COMPLETED,), authentic=False)
        reference = await _submit(partner, coordinator, started, active_listing, now)
        poller = VerificationStatusPoller(started.id, reference, partner, coordinator, interval=0)

        await poller.poll_once()

        request = await coordinator.get_request(started.id)
        assert request.status == AuthenticationStatus.FAILED
        assert request.total_seller_costs == Decimal("195")

    @pytest.mark.asyncio
    async def test_partner_cancellation_counts_as_failure(
        self,
        coordinator: AuthenticationCoordinator,
        started: AuthenticationRequest,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        partner = SimulatedPartner(script=(PartnerStatus.IN_PROGRESS,))
        reference = await _submit(partner, coordinator, started, active_listing, now)
        await partner.cancel(reference)
        poller = VerificationStatusPoller(started.id, reference, partner, coordinator, interval=0)

        assert await poller.poll_once() is True
        request = await coordinator.get_request(started.id)
        assert request.status == AuthenticationStatus.FAILED


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_runs_until_terminal(
        self,
        coordinator: AuthenticationCoordinator,
        started: AuthenticationRequest,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        partner = SimulatedPartner(
            script=(PartnerStatus.PENDING, None, PartnerStatus.IN_PROGRESS, PartnerStatus.COMPLETED)
        )
        reference = await _submit(partner, coordinator, started, active_listing, now)
        poller = VerificationStatusPoller(started.id, reference, partner, coordinator, interval=0)

        await asyncio.wait_for(poller.start(), timeout=5)

        assert poller.ticks == 4
        assert poller.failed_ticks == 1
        assert (await coordinator.get_request(started.id)).status == AuthenticationStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_dispose_is_idempotent(
        self,
        coordinator: AuthenticationCoordinator,
        started: AuthenticationRequest,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        partner = SimulatedPartner(script=(PartnerStatus.IN_PROGRESS,))
        reference = await _submit(partner, coordinator, started, active_listing, now)
        poller = VerificationStatusPoller(started.id, reference, partner, coordinator, interval=60)
        poller.start()
        await asyncio.sleep(0)

        await poller.dispose()
        await poller.dispose()

        assert poller.done
        assert poller.task.cancelled()

    @pytest.mark.asyncio
    async def test_cannot_start_twice(
        self,
        coordinator: AuthenticationCoordinator,
        started: AuthenticationRequest,
    ) -> None:
        poller = VerificationStatusPoller(
            started.id, "watchbox:x", SimulatedPartner(), coordinator, interval=60
        )
        poller.start()
        try:
            with pytest.raises(DuplicateOperationError):
                poller.start()
        finally:
            await poller.dispose()


class TestRegistry:
    @pytest.mark.asyncio
    async def test_refuses_second_live_poller(
        self,
        coordinator: AuthenticationCoordinator,
        started: AuthenticationRequest,
    ) -> None:
        registry = PollerRegistry()
        partner = SimulatedPartner(script=(PartnerStatus.IN_PROGRESS,))
        registry.start(
            VerificationStatusPoller(started.id, "watchbox:x", partner, coordinator, interval=60)
        )

        with pytest.raises(DuplicateOperationError):
            registry.start(
                VerificationStatusPoller(
                    started.id, "watchbox:x", partner, coordinator, interval=60
                )
            )

        assert registry.active_ids == [started.id]
        await registry.dispose_all()
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_finished_poller_leaves_registry(
        self,
        coordinator: AuthenticationCoordinator,
        started: AuthenticationRequest,
        active_listing: Listing,
        now: datetime,
    ) -> None:
        registry = PollerRegistry()
        partner = SimulatedPartner(script=(PartnerStatus.COMPLETED,))
        reference = await _submit(partner, coordinator, started, active_listing, now)

        poller = registry.start(
            VerificationStatusPoller(started.id, reference, partner, coordinator, interval=0)
        )
        await poller.task
        await asyncio.sleep(0)

        assert registry.get(started.id) is None
        await registry.dispose(started.id)
