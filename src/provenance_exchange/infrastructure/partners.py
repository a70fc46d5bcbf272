"""Authentication partner clients.

HttpPartnerClient talks to the partners' verification APIs over httpx:
    POST {base}/verification/request
    GET  {base}/verification/status/{id}
    GET  {base}/verification/result/{id}
    POST {base}/verification/cancel/{id}

Each call has a bounded timeout and a few tenacity retries; when they are
exhausted the call raises ExternalUnavailableError. There is no fallback
data: a partner that cannot be reached is reported as unavailable.

SimulatedPartner follows a scripted status sequence for development and tests.

Partner references returned by submit() are "<partner_id>:<partner request id>"
so later calls can be routed back to the right partner.
"""

from __future__ import annotations

import uuid
from collections import deque
from typing import TYPE_CHECKING, Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from provenance_exchange.domain.enums import PartnerStatus
from provenance_exchange.domain.exceptions import ExternalUnavailableError
from provenance_exchange.domain.models import AuthenticationResult
from provenance_exchange.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable

    from provenance_exchange.domain.models import AuthenticationRequest, Listing

logger = get_logger(__name__)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code >= 500


def _malformed(partner_id: str, what: str, exc: Exception) -> ExternalUnavailableError:
    """A partner answered, but not with anything we can read."""
    logger.warning("partner.malformed_response", partner_id=partner_id, what=what, error=str(exc))
    return ExternalUnavailableError(
        f"Authentication partner {partner_id}", f"malformed {what} response: {exc}"
    )


def split_reference(partner_reference: str) -> tuple[str, str]:
    partner_id, _, remote_id = partner_reference.partition(":")
    if not remote_id:
        raise ValueError(f"Malformed partner reference: {partner_reference!r}")
    return partner_id, remote_id


class HttpPartnerClient:
    """Client for every partner exposing the shared verification API."""

    def __init__(
        self,
        base_url_template: str,
        api_key: str = "",
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url_template = base_url_template
        self._retry_attempts = retry_attempts
        self._retry_backoff = retry_backoff_seconds
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # AuthenticationPartnerAPI
    # ------------------------------------------------------------------

    async def submit(self, request: AuthenticationRequest, listing: Listing) -> str:
        payload = {
            "bidId": request.bid_id,
            "listingId": listing.id,
            "watchDetails": {
                "brand": listing.brand,
                "model": listing.model,
                "year": listing.year,
                "condition": listing.condition,
                "hasDiamonds": listing.has_diamonds,
            },
            "declaredValue": str(listing.current_price),
        }
        data = await self._request(
            request.partner_id, "POST", "/verification/request", json=payload
        )
        try:
            reference = f"{request.partner_id}:{data['requestId']}"
        except KeyError as exc:
            raise _malformed(request.partner_id, "submission", exc) from exc
        logger.info(
            "partner.submitted",
            request_id=request.id,
            partner_id=request.partner_id,
            partner_reference=reference,
        )
        return reference

    async def get_status(self, partner_reference: str) -> PartnerStatus:
        partner_id, remote_id = split_reference(partner_reference)
        data = await self._request(partner_id, "GET", f"/verification/status/{remote_id}")
        try:
            return PartnerStatus(data["status"])
        except (KeyError, ValueError) as exc:
            raise _malformed(partner_id, "status", exc) from exc

    async def get_result(self, partner_reference: str) -> AuthenticationResult:
        partner_id, remote_id = split_reference(partner_reference)
        data = await self._request(partner_id, "GET", f"/verification/result/{remote_id}")
        result = data.get("result") or {}
        try:
            return AuthenticationResult(
                is_authentic=bool(result.get("isAuthentic", False)),
                confidence=float(result.get("confidence", 0.0)),
                details=result.get("detailedReport") or result.get("inspectorNotes") or "",
                report=result,
            )
        except (AttributeError, TypeError, ValueError) as exc:
            raise _malformed(partner_id, "result", exc) from exc

    async def cancel(self, partner_reference: str) -> None:
        partner_id, remote_id = split_reference(partner_reference)
        await self._request(
            partner_id,
            "POST",
            f"/verification/cancel/{remote_id}",
            json={"reason": "Cancelled by marketplace"},
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _request(self, partner_id: str, method: str, path: str, **kwargs: Any) -> dict:
        url = self._base_url_template.format(partner_id=partner_id).rstrip("/") + path
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._retry_attempts),
                wait=wait_exponential(multiplier=self._retry_backoff, max=10),
                retry=retry_if_exception(_is_transient),
                reraise=True,
            ):
                with attempt:
                    response = await self._client.request(
                        method,
                        url,
                        headers={"X-Request-ID": uuid.uuid4().hex},
                        **kwargs,
                    )
                    response.raise_for_status()
                    payload = response.json() if response.content else {}
        except httpx.HTTPError as exc:
            logger.warning(
                "partner.unavailable",
                partner_id=partner_id,
                method=method,
                path=path,
                error=str(exc),
            )
            raise ExternalUnavailableError(
                f"Authentication partner {partner_id}", str(exc)
            ) from exc
        except ValueError as exc:
            raise _malformed(partner_id, path, exc) from exc

        if not isinstance(payload, dict):
            raise _malformed(partner_id, path, TypeError("expected a JSON object"))
        return payload


class SimulatedPartner:
    """Scripted partner: each get_status call consumes the next scripted status.

    The last status in the script repeats forever. A script entry of None makes
    that tick fail with ExternalUnavailableError.
    """

    def __init__(
        self,
        script: Iterable[PartnerStatus | None] = (
            PartnerStatus.IN_PROGRESS,
            PartnerStatus.COMPLETED,
        ),
        authentic: bool = True,
        details: str = "",
    ) -> None:
        self._script = list(script)
        self._authentic = authentic
        self._details = details
        self._cases: dict[str, deque[PartnerStatus | None]] = {}
        self.submitted: list[str] = []
        self.cancelled: list[str] = []

    async def submit(self, request: AuthenticationRequest, listing: Listing) -> str:
        reference = f"{request.partner_id}:sim-{uuid.uuid4().hex[:12]}"
        self._cases[reference] = deque(self._script)
        self.submitted.append(reference)
        logger.info("partner.submit_simulated", request_id=request.id, partner_reference=reference)
        return reference

    async def get_status(self, partner_reference: str) -> PartnerStatus:
        case = self._case(partner_reference)
        status = case.popleft() if len(case) > 1 else case[0]
        if status is None:
            raise ExternalUnavailableError("Simulated partner", "scripted outage")
        return status

    async def get_result(self, partner_reference: str) -> AuthenticationResult:
        self._case(partner_reference)
        if self._authentic:
            default_details = "All components verified genuine"
        else:
            default_details = "Counterfeit movement detected"
        details = self._details or default_details
        return AuthenticationResult(
            is_authentic=self._authentic,
            confidence=0.97 if self._authentic else 0.91,
            details=details,
        )

    async def cancel(self, partner_reference: str) -> None:
        case = self._case(partner_reference)
        case.clear()
        case.append(PartnerStatus.CANCELLED)
        self.cancelled.append(partner_reference)

    def _case(self, partner_reference: str) -> deque[PartnerStatus | None]:
        case = self._cases.get(partner_reference)
        if case is None:
            raise ExternalUnavailableError("Simulated partner", f"unknown case {partner_reference}")
        return case
