"""Order fulfilment REST API routes.

Routes:
    GET    /api/v1/orders                          — Orders of the caller
    GET    /api/v1/orders/summary                  — Counts per status
    GET    /api/v1/orders/{id}                     — Get order details
    POST   /api/v1/orders/{id}/confirm-payment     — Buyer pays; authentication starts
    POST   /api/v1/orders/{id}/start-authentication — Retry submitting to the partner
    POST   /api/v1/orders/{id}/ship                — Seller ships
    POST   /api/v1/orders/{id}/deliver             — Carrier delivered
    POST   /api/v1/orders/{id}/advance             — Operator status change
    POST   /api/v1/orders/{id}/confirm-receipt     — Buyer confirms receipt
    POST   /api/v1/orders/{id}/return              — Buyer requests a return
    POST   /api/v1/orders/{id}/process-return      — Seller received the return
    POST   /api/v1/orders/{id}/refund              — Retry an outstanding refund
    POST   /api/v1/orders/{id}/payout              — Release the seller payout
"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query

from provenance_exchange.api.deps import get_actor, get_marketplace
from provenance_exchange.domain.protocols import ActorContext
from provenance_exchange.logging_config import get_logger
from provenance_exchange.schemas.marketplace import (
    AdvanceOrderRequest,
    AuthenticationRequestResponse,
    OrderResponse,
    OrderSummaryResponse,
    ReturnOrderRequest,
    ShipOrderRequest,
)
from provenance_exchange.services.marketplace_service import MarketplaceService

router = APIRouter(prefix="/api/v1/orders", tags=["Orders"])
logger = get_logger(__name__)

Role = Literal["buyer", "seller"]


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@router.get(
    "",
    response_model=list[OrderResponse],
    summary="List the caller's orders",
)
async def list_orders(
    role: Role = Query(default="buyer"),
    actor: ActorContext = Depends(get_actor),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> list[OrderResponse]:
    orders = await marketplace.list_orders(actor, role)
    return [OrderResponse.model_validate(o) for o in orders]


@router.get(
    "/summary",
    response_model=OrderSummaryResponse,
    summary="Order counts per status",
)
async def order_summary(
    role: Role = Query(default="buyer"),
    actor: ActorContext = Depends(get_actor),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> OrderSummaryResponse:
    return OrderSummaryResponse(**await marketplace.orders.summary(actor.user_id, role))


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order details",
)
async def get_order(
    order_id: str,
    actor: ActorContext = Depends(get_actor),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> OrderResponse:
    return OrderResponse.model_validate(await marketplace.get_order(actor, order_id))


# ---------------------------------------------------------------------------
# Payment and authentication
# ---------------------------------------------------------------------------


@router.post(
    "/{order_id}/confirm-payment",
    response_model=OrderResponse,
    summary="Confirm payment",
)
async def confirm_payment(
    order_id: str,
    actor: ActorContext = Depends(get_actor),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> OrderResponse:
    """Capture the held funds. Authentication is submitted to the partner right after."""
    order = (await marketplace.confirm_payment(actor, order_id)).unwrap()
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/start-authentication",
    response_model=AuthenticationRequestResponse,
    summary="Submit the authentication case",
)
async def start_authentication(
    order_id: str,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> AuthenticationRequestResponse:
    request = (await marketplace.start_authentication(order_id)).unwrap()
    return AuthenticationRequestResponse.model_validate(request)


# ---------------------------------------------------------------------------
# Fulfilment
# ---------------------------------------------------------------------------


@router.post(
    "/{order_id}/ship",
    response_model=OrderResponse,
    summary="Ship an authenticated order",
)
async def ship_order(
    order_id: str,
    request: ShipOrderRequest,
    actor: ActorContext = Depends(get_actor),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> OrderResponse:
    order = (
        await marketplace.ship(
            actor,
            order_id,
            tracking_number=request.tracking_number,
            carrier=request.carrier,
            estimated_delivery=request.estimated_delivery,
        )
    ).unwrap()
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/deliver",
    response_model=OrderResponse,
    summary="Mark an order delivered",
)
async def deliver_order(
    order_id: str,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> OrderResponse:
    return OrderResponse.model_validate((await marketplace.mark_delivered(order_id)).unwrap())


@router.post(
    "/{order_id}/advance",
    response_model=OrderResponse,
    summary="Move an order to another status",
)
async def advance_order(
    order_id: str,
    request: AdvanceOrderRequest,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> OrderResponse:
    """Operator transition. Anything outside the order state machine is rejected with 409."""
    order = (
        await marketplace.advance_order(
            order_id, request.status, notes=request.notes, reason=request.reason
        )
    ).unwrap()
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/confirm-receipt",
    response_model=OrderResponse,
    summary="Buyer confirms receipt",
)
async def confirm_receipt(
    order_id: str,
    actor: ActorContext = Depends(get_actor),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> OrderResponse:
    order = (await marketplace.confirm_receipt(actor, order_id)).unwrap()
    return OrderResponse.model_validate(order)


# ---------------------------------------------------------------------------
# Returns, refunds and payout
# ---------------------------------------------------------------------------


@router.post(
    "/{order_id}/return",
    response_model=OrderResponse,
    summary="Request a return",
)
async def request_return(
    order_id: str,
    request: ReturnOrderRequest,
    actor: ActorContext = Depends(get_actor),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> OrderResponse:
    """Open a return within the window that starts at delivery."""
    order = (
        await marketplace.request_return(actor, order_id, request.reason, request.return_type)
    ).unwrap()
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/process-return",
    response_model=OrderResponse,
    summary="Process a returned item",
)
async def process_return(
    order_id: str,
    actor: ActorContext = Depends(get_actor),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> OrderResponse:
    order = (await marketplace.process_return(actor, order_id)).unwrap()
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/refund",
    response_model=OrderResponse,
    summary="Issue an outstanding refund",
)
async def issue_refund(
    order_id: str,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> OrderResponse:
    return OrderResponse.model_validate((await marketplace.issue_refund(order_id)).unwrap())


@router.post(
    "/{order_id}/payout",
    response_model=OrderResponse,
    summary="Release the seller payout",
)
async def release_payout(
    order_id: str,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> OrderResponse:
    """Pay the seller once the order is completed, or delivered with the return window closed."""
    order = (await marketplace.release_payout(order_id)).unwrap()
    logger.info("order.payout_requested", order_id=order_id)
    return OrderResponse.model_validate(order)
