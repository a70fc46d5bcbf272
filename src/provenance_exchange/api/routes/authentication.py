"""Authentication case REST API routes.

Routes:
    GET    /api/v1/authentication/{id}         — Get an authentication case
    POST   /api/v1/authentication/{id}/result  — Partner pushes its verdict
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from provenance_exchange.api.deps import get_marketplace
from provenance_exchange.schemas.marketplace import (
    AuthenticationRequestResponse,
    AuthenticationResultRequest,
)
from provenance_exchange.services.marketplace_service import MarketplaceService

router = APIRouter(prefix="/api/v1/authentication", tags=["Authentication"])


@router.get(
    "/{request_id}",
    response_model=AuthenticationRequestResponse,
    summary="Get an authentication case",
)
async def get_authentication_request(
    request_id: str,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> AuthenticationRequestResponse:
    request = await marketplace.get_authentication_request(request_id)
    return AuthenticationRequestResponse.model_validate(request)


@router.post(
    "/{request_id}/result",
    response_model=AuthenticationRequestResponse,
    summary="Record a partner verdict",
)
async def record_authentication_result(
    request_id: str,
    body: AuthenticationResultRequest,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> AuthenticationRequestResponse:
    """Stop polling and apply the verdict. A second verdict is rejected with 409."""
    request = (
        await marketplace.record_authentication_result(request_id, body.outcome, body.details)
    ).unwrap()
    return AuthenticationRequestResponse.model_validate(request)
