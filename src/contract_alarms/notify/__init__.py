"""Notification layer - delivery of matched events by email or webhook."""

from contract_alarms.notify.channels.email import EmailChannel
from contract_alarms.notify.channels.webhook import WebhookChannel
from contract_alarms.notify.dispatcher import NotificationChannel, NotificationDispatcher
from contract_alarms.notify.formatter import NotificationFormatter
from contract_alarms.notify.models import CircuitBreakerState, DispatchResult, Notification

__all__ = [
    "CircuitBreakerState",
    "DispatchResult",
    "EmailChannel",
    "Notification",
    "NotificationChannel",
    "NotificationDispatcher",
    "NotificationFormatter",
    "WebhookChannel",
]
