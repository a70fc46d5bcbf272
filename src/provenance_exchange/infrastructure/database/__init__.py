"""Database infrastructure — engine, ORM model, and the SQL record store."""

from provenance_exchange.infrastructure.database.engine import (
    close_db,
    get_session_factory,
    init_db,
)
from provenance_exchange.infrastructure.database.orm_models import Base, RecordRow
from provenance_exchange.infrastructure.database.record_store import SqlRecordStore

__all__ = [
    "Base",
    "RecordRow",
    "SqlRecordStore",
    "get_session_factory",
    "init_db",
    "close_db",
]
