"""Notification dispatcher routing each alarm to its channel."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

from contract_alarms.errors import DispatchError
from contract_alarms.notify.formatter import NotificationFormatter
from contract_alarms.notify.models import CircuitBreakerState, DispatchResult

if TYPE_CHECKING:
    from contract_alarms.alarms.models import Alarm, EventGroup, NotificationKind
    from contract_alarms.notify.models import Notification

logger = logging.getLogger(__name__)


class NotificationChannel(Protocol):
    """Protocol for notification delivery channels."""

    name: str
    kind: NotificationKind

    async def send(self, notification: Notification) -> bool:
        """Deliver the notification. Returns True on success."""
        ...


class NotificationDispatcher:
    """Delivers one notification per (alarm, transaction) unit.

    Picks the channel matching the alarm's target kind, bounds delivery
    with a timeout and protects failing destinations with a circuit
    breaker. Any outcome other than confirmed success raises DispatchError.

    Circuits are tracked per (channel, destination), so one broken webhook
    URL or mailbox never blocks other alarms on the same channel. An open
    circuit is retried after every recovery window for as long as it keeps
    failing; it never stays shut for the life of the process.
    """

    def __init__(
        self,
        channels: list[NotificationChannel],
        *,
        formatter: NotificationFormatter | None = None,
        timeout: float = 30.0,
        failure_threshold: int = 5,
        recovery_timeout_seconds: int = 60,
        half_open_max_attempts: int = 3,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            channels: Available channels, at most one per notification kind.
            formatter: Builds notifications from event groups.
            timeout: Upper bound in seconds for one delivery.
            failure_threshold: Consecutive failures before opening a circuit.
            recovery_timeout_seconds: Time to wait before half-opening a circuit.
            half_open_max_attempts: Test attempts allowed per recovery window.
        """
        self.channels = {ch.kind: ch for ch in channels}
        self.formatter = formatter or NotificationFormatter()
        self.timeout = timeout
        self.failure_threshold = failure_threshold
        self.recovery_timeout_seconds = recovery_timeout_seconds
        self.half_open_max_attempts = half_open_max_attempts

        self._circuit_state: dict[tuple[str, str], CircuitBreakerState] = {}

    def _state(self, key: tuple[str, str]) -> CircuitBreakerState:
        return self._circuit_state.setdefault(key, CircuitBreakerState())

    def _should_attempt(self, key: tuple[str, str]) -> bool:
        """Check if we should attempt delivery to this destination."""
        state = self._circuit_state.get(key)

        if state is None or not state.is_open:
            return True

        if state.last_failure_time is None:
            return False
        elapsed = (datetime.now(UTC) - state.last_failure_time).total_seconds()
        if elapsed < self.recovery_timeout_seconds:
            return False

        if state.half_open_attempts >= self.half_open_max_attempts:
            # A full recovery window has passed since the last failed test.
            state.half_open_attempts = 0
            logger.info("Circuit for %s %s starting a new half-open cycle", *key)
        logger.info(
            "Circuit half-open for %s %s, attempt %d", *key, state.half_open_attempts + 1
        )
        return True

    def _record_success(self, key: tuple[str, str]) -> None:
        """Record a successful delivery."""
        if self._circuit_state.pop(key, None) is not None:
            logger.debug("Circuit closed for %s %s", *key)

    def _record_failure(self, key: tuple[str, str]) -> None:
        """Record a failed delivery."""
        state = self._state(key)
        state.failure_count += 1
        state.last_failure_time = datetime.now(UTC)

        if state.is_open:
            state.half_open_attempts += 1
        elif state.failure_count >= self.failure_threshold:
            state.is_open = True
            logger.warning(
                "Circuit opened for %s %s after %d failures", *key, state.failure_count
            )

    async def dispatch(self, alarm: Alarm, group: EventGroup) -> DispatchResult:
        """Deliver the notification for ``group`` on ``alarm``.

        Returns:
            DispatchResult describing the confirmed delivery.

        Raises:
            DispatchError: No channel for the target, circuit open, channel
                reported failure, raised, or did not finish within the timeout.
        """
        channel = self.channels.get(alarm.target.kind)
        if channel is None:
            raise DispatchError(f"No channel configured for {alarm.target.kind.value}")

        key = (channel.name, alarm.target.destination)
        if not self._should_attempt(key):
            raise DispatchError(f"Circuit open for {channel.name} {alarm.target.destination}")

        notification = self.formatter.format(alarm, group)
        try:
            delivered = await asyncio.wait_for(channel.send(notification), timeout=self.timeout)
        except TimeoutError as e:
            self._record_failure(key)
            raise DispatchError(
                f"{channel.name} delivery of {notification.dedup_key} timed out"
            ) from e
        except Exception as e:
            self._record_failure(key)
            raise DispatchError(
                f"{channel.name} delivery of {notification.dedup_key} failed: {e}"
            ) from e

        if not delivered:
            self._record_failure(key)
            raise DispatchError(f"{channel.name} rejected {notification.dedup_key}")

        self._record_success(key)
        return DispatchResult(alarm_id=alarm.id, tx_hash=group.tx_hash, channel=channel.name)

    def get_circuit_status(self) -> dict[str, dict[str, object]]:
        """Get circuit breaker status for every destination that has failed.

        Keys are ``"<channel> <destination>"``.
        """
        return {
            f"{name} {destination}": {
                "is_open": state.is_open,
                "failure_count": state.failure_count,
                "half_open_attempts": state.half_open_attempts,
                "last_failure": (
                    state.last_failure_time.isoformat() if state.last_failure_time else None
                ),
            }
            for (name, destination), state in self._circuit_state.items()
        }

    def reset_circuit(self, channel_name: str, destination: str | None = None) -> bool:
        """Manually reset circuit breakers of a channel.

        Args:
            channel_name: Channel whose circuits to reset.
            destination: Only reset this destination; all of the channel's
                destinations when omitted.

        Returns:
            True if any circuit was reset.
        """
        keys = [
            key
            for key in self._circuit_state
            if key[0] == channel_name and destination in (None, key[1])
        ]
        for key in keys:
            del self._circuit_state[key]
            logger.info("Circuit reset for %s %s", *key)
        return bool(keys)
