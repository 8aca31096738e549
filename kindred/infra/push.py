"""
Push notification intents

Delivery belongs to the notification service; this side only records intents.
"""

import logging
from typing import Any, Optional, Protocol

from kindred.core.logging import get_logger, log_event

logger = get_logger(__name__)


class PushNotifier(Protocol):
    async def notify(self, user_id: str, title: str, body: str, data: Optional[dict[str, Any]] = None) -> None: ...


class LoggingPushNotifier:
    """Default notifier: logs the intent"""

    async def notify(self, user_id: str, title: str, body: str, data: Optional[dict[str, Any]] = None) -> None:
        log_event(
            logger,
            "push.intent",
            level=logging.INFO,
            user=user_id,
            title=title,
            kind=(data or {}).get("type"),
        )
