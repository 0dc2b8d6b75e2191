"""Data models for the notify module."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


@dataclass(frozen=True)
class Notification:
    """A formatted notification ready for delivery on one channel.

    Attributes:
        destination: Email address or webhook URL.
        subject: Short headline.
        plain_text: Human-readable body.
        payload: JSON-serialisable body for machine consumers.
        dedup_key: ``<alarm_id>:<tx_hash>``, sent so receivers can drop duplicates.
    """

    destination: str
    subject: str
    plain_text: str
    payload: dict[str, Any]
    dedup_key: str


@dataclass
class DispatchResult:
    """Result of delivering one notification."""

    alarm_id: int
    tx_hash: str
    channel: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class CircuitBreakerState:
    """Failure tracking and open/closed state for one channel destination."""

    failure_count: int = 0
    last_failure_time: datetime | None = None
    is_open: bool = False
    half_open_attempts: int = 0
