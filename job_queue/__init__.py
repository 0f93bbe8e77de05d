"""
Notification queue — Decouples notification creation from delivery.

Producers (reconciler, hint detector, input service) persist records;
NotificationDispatcher drains and retries them through a DeliveryChannel.
"""
from job_queue.dispatcher import NotificationDispatcher

__all__ = ["NotificationDispatcher"]
