"""Log Channel — Writes notifications to the structured log (development)."""
from __future__ import annotations

import uuid
import structlog

from channels.base import DeliveryChannel

logger = structlog.get_logger()


class LogChannel(DeliveryChannel):

    name = "log"

    def __init__(self):
        super().__init__()
        self.sent: list[tuple[str, str]] = []

    async def _do_send(self, destination: str, message: str) -> str:
        message_id = uuid.uuid4().hex[:12]
        self.sent.append((destination, message))
        del self.sent[:-100]
        logger.info("notification_logged", destination=destination,
                    message_id=message_id, message=message)
        return message_id
