"""Authentication Coordinator — third-party authenticity cases.

Owns AuthenticationRequest records:
    - Partner catalog and partner selection for a listing
    - Opening a case for an accepted bid (fee and ETA from the partner)
    - Monotonic status changes, guarded by AuthenticationStateMachine
    - Seller liability when authentication fails

total_seller_costs stays None until the request fails; it is computed once,
at that moment, and never recomputed.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from provenance_exchange.domain.enums import (
    AuthenticationOutcome,
    AuthenticationStatus,
    EntityKind,
)
from provenance_exchange.domain.exceptions import (
    AlreadyTerminalError,
    InvalidPartnerError,
    NotFoundError,
)
from provenance_exchange.domain.models import (
    AuthenticationPartner,
    AuthenticationRequest,
    AuthenticationResult,
)
from provenance_exchange.domain.results import returns_result
from provenance_exchange.domain.state_machine import AuthenticationStateMachine, fire_transition
from provenance_exchange.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

    from provenance_exchange.domain.models import Bid, Listing
    from provenance_exchange.domain.protocols import RecordStore

logger = get_logger(__name__)

CANCELLATION_FEE = Decimal("45")
DEFAULT_PARTNER_ID = "watchbox"

PARTNERS: tuple[AuthenticationPartner, ...] = (
    AuthenticationPartner(
        id="watchbox",
        name="WatchBox Authentication",
        description="Independent pre-owned watch authentication",
        base_fee=Decimal("150"),
        estimated_time="3-5 business days",
        is_general=True,
    ),
    AuthenticationPartner(
        id="swiss-watch-group",
        name="Swiss Watch Group",
        description="Swiss-trained watchmakers for all major brands",
        base_fee=Decimal("120"),
        estimated_time="4-6 business days",
        is_general=True,
    ),
    AuthenticationPartner(
        id="rolex-service",
        name="Rolex Service Center",
        description="Official Rolex authentication and service",
        base_fee=Decimal("200"),
        estimated_time="5-7 business days",
        official_brands=("Rolex",),
    ),
    AuthenticationPartner(
        id="omega-service",
        name="Omega Service Center",
        description="Official Omega authentication and service",
        base_fee=Decimal("180"),
        estimated_time="5-7 business days",
        official_brands=("Omega",),
    ),
    AuthenticationPartner(
        id="patek-service",
        name="Patek Philippe Service",
        description="Official Patek Philippe authentication",
        base_fee=Decimal("250"),
        estimated_time="7-10 business days",
        official_brands=("Patek Philippe",),
    ),
    AuthenticationPartner(
        id="gia",
        name="GIA (Gemological Institute of America)",
        description="Diamond and gemstone grading for gem-set watches",
        base_fee=Decimal("300"),
        estimated_time="7-10 business days",
        handles_diamonds=True,
    ),
)


class AuthenticationCoordinator:
    """Creates and tracks authentication requests."""

    def __init__(
        self,
        store: RecordStore,
        partners: Iterable[AuthenticationPartner] = PARTNERS,
        cancellation_fee: Decimal = CANCELLATION_FEE,
    ) -> None:
        self._store = store
        self._partners = {partner.id: partner for partner in partners}
        self._cancellation_fee = cancellation_fee

    # ------------------------------------------------------------------
    # Partner catalog
    # ------------------------------------------------------------------

    @property
    def partners(self) -> list[AuthenticationPartner]:
        return list(self._partners.values())

    def get_partner(self, partner_id: str) -> AuthenticationPartner:
        partner = self._partners.get(partner_id)
        if partner is None:
            raise InvalidPartnerError(partner_id)
        return partner

    def select_partner(self, listing: Listing) -> AuthenticationPartner:
        """Pick a partner for a listing.

        Precedence: diamond specialist for gem-set items, then the brand's
        official service center, then the default general partner.
        """
        if listing.has_diamonds:
            for partner in self._partners.values():
                if partner.handles_diamonds:
                    return partner

        brand = listing.brand.strip().lower()
        if brand:
            for partner in self._partners.values():
                if brand in (b.lower() for b in partner.official_brands):
                    return partner

        return self.get_partner(DEFAULT_PARTNER_ID)

    # ------------------------------------------------------------------
    # Request lifecycle
    # ------------------------------------------------------------------

    @returns_result
    async def open_request(
        self,
        bid: Bid,
        listing: Listing,
        partner_id: str,
        now: datetime,
    ) -> AuthenticationRequest:
        """Open a pending case for an accepted (or about to be accepted) bid."""
        partner = self.get_partner(partner_id)

        request = AuthenticationRequest(
            bid_id=bid.id,
            buyer_id=bid.bidder_id,
            seller_id=listing.seller_id,
            listing_id=listing.id,
            partner_id=partner.id,
            authentication_fee=partner.base_fee,
            cancellation_fee=self._cancellation_fee,
            created_at=now,
            estimated_completion=now + timedelta(days=partner.max_days),
        )
        await self._store.save(EntityKind.AUTHENTICATION_REQUEST, request)

        logger.info(
            "authentication.opened",
            request_id=request.id,
            bid_id=bid.id,
            partner_id=partner.id,
            fee=str(partner.base_fee),
        )
        return request

    @returns_result
    async def start(
        self,
        request_id: str,
        partner_reference: str,
        now: datetime,
    ) -> AuthenticationRequest:
        """Record the partner's reference and move the case to in-progress."""
        request = await self._get_or_raise(request_id)
        request.status = AuthenticationStatus(
            fire_transition(AuthenticationStateMachine, request.status, "begin_inspection")
        )
        request.partner_reference = partner_reference
        request.started_at = now
        await self._store.update(EntityKind.AUTHENTICATION_REQUEST, request)

        logger.info(
            "authentication.started",
            request_id=request_id,
            partner_reference=partner_reference,
        )
        return request

    @returns_result
    async def record_shipping_costs(
        self, request_id: str, amount: Decimal
    ) -> AuthenticationRequest:
        """Record what the seller paid to ship the item to the partner."""
        request = await self._get_or_raise(request_id)
        if request.status.is_terminal:
            raise AlreadyTerminalError(request_id, request.status)

        request.shipping_costs = amount
        await self._store.update(EntityKind.AUTHENTICATION_REQUEST, request)
        return request

    @returns_result
    async def record_result(
        self,
        request_id: str,
        outcome: AuthenticationOutcome,
        details: str = "",
        now: datetime | None = None,
        result: AuthenticationResult | None = None,
    ) -> AuthenticationRequest:
        """Store the partner's verdict. A request accepts exactly one verdict."""
        request = await self._get_or_raise(request_id)
        if request.status.is_terminal:
            raise AlreadyTerminalError(request_id, request.status)

        passed = outcome == AuthenticationOutcome.SUCCESS
        event = "pass_inspection" if passed else "fail_inspection"
        request.status = AuthenticationStatus(
            fire_transition(AuthenticationStateMachine, request.status, event)
        )

        if result is None:
            result = AuthenticationResult(is_authentic=passed, details=details)
        if now is not None:
            result = result.model_copy(update={"completed_at": now})
        request.result = result
        request.completed_at = result.completed_at

        if not passed:
            request.total_seller_costs = (
                request.authentication_fee + request.shipping_costs + request.cancellation_fee
            )

        await self._store.update(EntityKind.AUTHENTICATION_REQUEST, request)

        logger.info(
            "authentication.result_recorded",
            request_id=request_id,
            outcome=outcome.value,
            total_seller_costs=(
                str(request.total_seller_costs) if request.total_seller_costs is not None else None
            ),
        )
        return request

    async def discard(self, request_id: str) -> bool:
        """Delete a request that never left pending (accept-bid compensation)."""
        request = await self._store.get(EntityKind.AUTHENTICATION_REQUEST, request_id)
        if request is None or request.status != AuthenticationStatus.PENDING:
            return False
        deleted = await self._store.delete(EntityKind.AUTHENTICATION_REQUEST, request_id)
        logger.info("authentication.discarded", request_id=request_id)
        return deleted

    async def get_request(self, request_id: str) -> AuthenticationRequest:
        return await self._get_or_raise(request_id)

    @staticmethod
    def failure_cost_breakdown(request: AuthenticationRequest) -> dict[str, str | None]:
        """Itemize what the seller owes after a failed authentication."""
        total = request.total_seller_costs
        return {
            "authentication_fee": str(request.authentication_fee),
            "shipping_costs": str(request.shipping_costs),
            "cancellation_fee": str(request.cancellation_fee),
            "total_seller_costs": str(total) if total is not None else None,
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_or_raise(self, request_id: str) -> AuthenticationRequest:
        request = await self._store.get(EntityKind.AUTHENTICATION_REQUEST, request_id)
        if request is None:
            raise NotFoundError("AuthenticationRequest", request_id)
        return request
