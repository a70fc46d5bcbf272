"""Notification sink that writes each notification to the structured log.

Delivery (push, email, in-app) is handled outside the core; this sink is the
default hand-off point and keeps the most recent notifications in memory.
"""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

from provenance_exchange.logging_config import get_logger

if TYPE_CHECKING:
    from provenance_exchange.domain.models import Notification

logger = get_logger(__name__)


class LoggingNotificationSink:
    def __init__(self, history_size: int = 1000) -> None:
        self.history: deque[Notification] = deque(maxlen=history_size)

    async def emit(self, notification: Notification) -> None:
        self.history.append(notification)
        logger.info(
            "notification.emitted",
            user_id=notification.user_id,
            type=notification.type.value,
            title=notification.title,
            **notification.related_ids,
        )

    def for_user(self, user_id: str) -> list[Notification]:
        return [n for n in self.history if n.user_id == user_id]
