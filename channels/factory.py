"""
Delivery Channel Factory — instantiates the configured channel.

settings.yaml:
    delivery_channel: "telegram"     # telegram | log
    channels:
      telegram:
        enabled: true
        credentials:
          bot_token: "${TELEGRAM_BOT_TOKEN}"

A disabled or unconfigured Telegram channel falls back to the log channel
so development setups still run end to end.
"""
from __future__ import annotations

import structlog

from channels.base import DeliveryChannel
from channels.log_adapter import LogChannel
from config.settings import Settings

logger = structlog.get_logger()


def create_delivery_channel(settings: Settings) -> DeliveryChannel:
    name = (settings.delivery_channel or "log").lower()

    if name == "telegram":
        cfg = settings.channels.get("telegram")
        credentials = cfg.credentials if cfg else {}
        token = str(credentials.get("bot_token") or "")
        # unresolved ${VAR} placeholders count as missing
        if cfg and cfg.enabled and token and not token.startswith("${"):
            from channels.telegram_adapter import TelegramChannel
            channel = TelegramChannel.from_config(credentials)
            logger.info("delivery_channel_created", channel="telegram")
            return channel
        logger.warning("telegram_not_configured", fallback="log")

    elif name != "log":
        logger.warning("unknown_delivery_channel", channel=name, fallback="log")

    logger.info("delivery_channel_created", channel="log")
    return LogChannel()
