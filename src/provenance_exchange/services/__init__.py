"""Application services — use case orchestration."""

from provenance_exchange.services.authentication_service import AuthenticationCoordinator
from provenance_exchange.services.escrow_gateway import EscrowPaymentGateway
from provenance_exchange.services.marketplace_service import MarketplaceService
from provenance_exchange.services.order_service import OrderLifecycleManager
from provenance_exchange.services.payment_service import SimulatedPaymentProcessor
from provenance_exchange.services.saga import AcceptBidSaga, AcceptedSale
from provenance_exchange.services.verification_poller import (
    PollerRegistry,
    VerificationStatusPoller,
)

__all__ = [
    "AuthenticationCoordinator",
    "EscrowPaymentGateway",
    "MarketplaceService",
    "OrderLifecycleManager",
    "SimulatedPaymentProcessor",
    "AcceptBidSaga",
    "AcceptedSale",
    "PollerRegistry",
    "VerificationStatusPoller",
]
