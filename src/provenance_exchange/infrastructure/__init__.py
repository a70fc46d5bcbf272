"""Infrastructure adapters — record stores, partner clients, notifications, Redis."""

from provenance_exchange.infrastructure.memory_store import InMemoryRecordStore
from provenance_exchange.infrastructure.notifications import LoggingNotificationSink
from provenance_exchange.infrastructure.partners import HttpPartnerClient, SimulatedPartner

__all__ = [
    "InMemoryRecordStore",
    "LoggingNotificationSink",
    "HttpPartnerClient",
    "SimulatedPartner",
]
