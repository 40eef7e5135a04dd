"""Outbound webhook notifications."""
from . import events
from .dispatcher import NotificationDispatcher, WebhookRejected, USER_AGENT
from .events import WebhookEvent

__all__ = ["events", "NotificationDispatcher", "WebhookRejected", "WebhookEvent", "USER_AGENT"]
