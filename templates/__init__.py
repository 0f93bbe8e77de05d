"""Notification text rendering."""
from templates.renderer import NotificationRenderer, DEFAULT_TEMPLATES

__all__ = ["NotificationRenderer", "DEFAULT_TEMPLATES"]
