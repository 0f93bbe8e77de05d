"""Delivery channels for outbound call notifications."""
from channels.base import (
    DeliveryChannel,
    DeliveryReceipt,
    DeliveryError,
    PermanentDeliveryError,
    TransientDeliveryError,
    CircuitOpenError,
    BreakerState,
    CircuitBreaker,
    ChannelMetrics,
)
from channels.log_adapter import LogChannel
from channels.telegram_adapter import TelegramChannel
from channels.factory import create_delivery_channel

__all__ = [
    "DeliveryChannel", "DeliveryReceipt",
    "DeliveryError", "PermanentDeliveryError", "TransientDeliveryError", "CircuitOpenError",
    "BreakerState", "CircuitBreaker", "ChannelMetrics",
    "LogChannel", "TelegramChannel", "create_delivery_channel",
]
