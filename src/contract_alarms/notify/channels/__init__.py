"""Notification channel implementations."""

from contract_alarms.notify.channels.email import EmailChannel
from contract_alarms.notify.channels.webhook import WebhookChannel

__all__ = [
    "EmailChannel",
    "WebhookChannel",
]
