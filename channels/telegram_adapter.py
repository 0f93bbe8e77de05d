"""
Telegram Channel — Notification delivery through the Telegram Bot API.

sendMessage errors are classified for the dispatch queue:
  400 / 401 / 403 / 404   → PermanentDeliveryError (bad chat, bot blocked, bad token)
  429 / 5xx               → TransientDeliveryError
  transport errors        → retried here, then TransientDeliveryError

API Docs: https://core.telegram.org/bots/api#sendmessage
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import DeliveryChannel, PermanentDeliveryError, TransientDeliveryError

logger = structlog.get_logger()


class TelegramChannel(DeliveryChannel):
    """Sends plain-text notifications to Telegram chats."""

    name = "telegram"
    DEFAULT_API_URL = "https://api.telegram.org"

    def __init__(
        self,
        bot_token: str,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__()
        if not bot_token:
            raise ValueError("Telegram bot_token is required")
        self.bot_token = bot_token
        self.base_url = f"{(api_url or self.DEFAULT_API_URL).rstrip('/')}/bot{bot_token}"
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_config(cls, credentials: dict[str, Any]) -> TelegramChannel:
        return cls(
            bot_token=credentials.get("bot_token", ""),
            api_url=credentials.get("api_url") or cls.DEFAULT_API_URL,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=5.0),
                transport=self._transport,
            )
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, method: str, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(f"{self.base_url}/{method}", json=payload)

    async def _do_send(self, destination: str, message: str) -> str:
        resp = await self._post("sendMessage", {
            "chat_id": destination,
            "text": message,
            "disable_web_page_preview": True,
        })

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code >= 400 or not body.get("ok", False):
            description = body.get("description") or resp.text[:200]
            logger.warning("telegram_send_failed", status=resp.status_code,
                           chat_id=destination, description=description)
            error = f"telegram {resp.status_code}: {description}"
            if resp.status_code == 429 or resp.status_code >= 500:
                raise TransientDeliveryError(error, self.name)
            if 400 <= resp.status_code < 500:
                raise PermanentDeliveryError(error, self.name)
            raise TransientDeliveryError(error, self.name)

        message_id = body.get("result", {}).get("message_id", "")
        logger.debug("telegram_sent", chat_id=destination, message_id=message_id)
        return str(message_id)

    async def health_check(self) -> dict[str, Any]:
        health = await super().health_check()
        health["api"] = self.base_url.split("/bot")[0]
        return health

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
