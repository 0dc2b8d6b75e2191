"""Tests for the notification dispatcher."""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from factories import ADDRESS_A, ERC20_ABI, make_event

from contract_alarms.alarms.models import Alarm, EventGroup, NotificationKind, NotificationTarget
from contract_alarms.errors import DispatchError
from contract_alarms.notify.dispatcher import NotificationDispatcher

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def webhook_alarm() -> Alarm:
    """Alarm delivered by webhook."""
    return Alarm(
        id=1,
        address=ADDRESS_A,
        abi=ERC20_ABI,
        event_names=("Transfer",),
        target=NotificationTarget(NotificationKind.WEBHOOK, "https://hooks.example.com/a"),
    )


@pytest.fixture
def email_alarm(webhook_alarm: Alarm) -> Alarm:
    """Alarm delivered by email."""
    return Alarm(
        id=2,
        address=webhook_alarm.address,
        abi=webhook_alarm.abi,
        event_names=webhook_alarm.event_names,
        target=NotificationTarget(NotificationKind.EMAIL, "ops@example.com"),
    )


@pytest.fixture
def group() -> EventGroup:
    """One Transfer in one transaction."""
    event = make_event("0xabc", 10)
    return EventGroup(tx_hash="0xabc", address=ADDRESS_A, block_height=10, events=(event,))


@pytest.fixture
def mock_webhook_channel() -> MagicMock:
    """Create a mock webhook channel."""
    channel = MagicMock()
    channel.name = "webhook"
    channel.kind = NotificationKind.WEBHOOK
    channel.send = AsyncMock(return_value=True)
    return channel


# ============================================================================
# NotificationDispatcher Tests
# ============================================================================


WEBHOOK_KEY = ("webhook", "https://hooks.example.com/a")


def _webhook_alarm(alarm_id: int, url: str) -> Alarm:
    return Alarm(
        id=alarm_id,
        address=ADDRESS_A,
        abi=ERC20_ABI,
        event_names=("Transfer",),
        target=NotificationTarget(NotificationKind.WEBHOOK, url),
    )


class TestNotificationDispatcher:
    """Tests for NotificationDispatcher."""

    def test_init(self, mock_webhook_channel: MagicMock) -> None:
        """Channels are keyed by kind and no circuit exists yet."""
        dispatcher = NotificationDispatcher([mock_webhook_channel])
        assert list(dispatcher.channels) == [NotificationKind.WEBHOOK]
        assert dispatcher.get_circuit_status() == {}

    @pytest.mark.asyncio
    async def test_dispatch_success(
        self, webhook_alarm: Alarm, group: EventGroup, mock_webhook_channel: MagicMock
    ) -> None:
        """A confirmed delivery returns a DispatchResult."""
        dispatcher = NotificationDispatcher([mock_webhook_channel])

        result = await dispatcher.dispatch(webhook_alarm, group)

        assert result.alarm_id == 1
        assert result.tx_hash == "0xabc"
        assert result.channel == "webhook"
        notification = mock_webhook_channel.send.await_args.args[0]
        assert notification.destination == "https://hooks.example.com/a"
        assert notification.dedup_key == "1:0xabc"

    @pytest.mark.asyncio
    async def test_missing_channel(
        self, email_alarm: Alarm, group: EventGroup, mock_webhook_channel: MagicMock
    ) -> None:
        """An alarm whose channel is not configured cannot be dispatched."""
        dispatcher = NotificationDispatcher([mock_webhook_channel])

        with pytest.raises(DispatchError, match="No channel configured for email"):
            await dispatcher.dispatch(email_alarm, group)

    @pytest.mark.asyncio
    async def test_rejected_delivery(
        self, webhook_alarm: Alarm, group: EventGroup, mock_webhook_channel: MagicMock
    ) -> None:
        """A channel reporting failure raises DispatchError."""
        mock_webhook_channel.send.return_value = False
        dispatcher = NotificationDispatcher([mock_webhook_channel])

        with pytest.raises(DispatchError, match="rejected 1:0xabc"):
            await dispatcher.dispatch(webhook_alarm, group)

    @pytest.mark.asyncio
    async def test_channel_exception(
        self, webhook_alarm: Alarm, group: EventGroup, mock_webhook_channel: MagicMock
    ) -> None:
        """Unexpected channel errors are wrapped."""
        mock_webhook_channel.send.side_effect = RuntimeError("boom")
        dispatcher = NotificationDispatcher([mock_webhook_channel])

        with pytest.raises(DispatchError, match="boom"):
            await dispatcher.dispatch(webhook_alarm, group)

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(
        self, webhook_alarm: Alarm, group: EventGroup, mock_webhook_channel: MagicMock
    ) -> None:
        """A delivery that outlives the timeout is a failure."""

        async def hang(notification: object) -> bool:
            await asyncio.sleep(1)
            return True

        mock_webhook_channel.send = hang
        dispatcher = NotificationDispatcher([mock_webhook_channel], timeout=0.01)

        with pytest.raises(DispatchError, match="timed out"):
            await dispatcher.dispatch(webhook_alarm, group)

        assert dispatcher._circuit_state[WEBHOOK_KEY].failure_count == 1

    @pytest.mark.asyncio
    async def test_circuit_opens_after_failures(
        self, webhook_alarm: Alarm, group: EventGroup, mock_webhook_channel: MagicMock
    ) -> None:
        """Test circuit breaker opens after threshold failures."""
        mock_webhook_channel.send.return_value = False
        dispatcher = NotificationDispatcher(
            [mock_webhook_channel], failure_threshold=3, recovery_timeout_seconds=3600
        )

        for _ in range(3):
            with pytest.raises(DispatchError):
                await dispatcher.dispatch(webhook_alarm, group)

        assert dispatcher._circuit_state[WEBHOOK_KEY].is_open is True
        mock_webhook_channel.send.reset_mock()

        with pytest.raises(DispatchError, match="Circuit open"):
            await dispatcher.dispatch(webhook_alarm, group)
        mock_webhook_channel.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_circuit_closes_on_success(
        self, webhook_alarm: Alarm, group: EventGroup, mock_webhook_channel: MagicMock
    ) -> None:
        """Test circuit closes on successful half-open delivery."""
        mock_webhook_channel.send.return_value = False
        dispatcher = NotificationDispatcher([mock_webhook_channel], failure_threshold=2)

        for _ in range(2):
            with pytest.raises(DispatchError):
                await dispatcher.dispatch(webhook_alarm, group)
        assert dispatcher._circuit_state[WEBHOOK_KEY].is_open is True

        mock_webhook_channel.send.return_value = True
        # Force half-open by moving the last failure into the past
        dispatcher._circuit_state[WEBHOOK_KEY].last_failure_time = datetime(2020, 1, 1, tzinfo=UTC)

        await dispatcher.dispatch(webhook_alarm, group)

        assert WEBHOOK_KEY not in dispatcher._circuit_state

    @pytest.mark.asyncio
    async def test_exhausted_half_open_retries_after_next_window(
        self, webhook_alarm: Alarm, group: EventGroup, mock_webhook_channel: MagicMock
    ) -> None:
        """Failed half-open attempts do not keep the circuit shut forever."""
        mock_webhook_channel.send.return_value = False
        dispatcher = NotificationDispatcher(
            [mock_webhook_channel],
            failure_threshold=5,
            recovery_timeout_seconds=0,
            half_open_max_attempts=3,
        )

        for _ in range(8):
            with pytest.raises(DispatchError, match="rejected"):
                await dispatcher.dispatch(webhook_alarm, group)
        state = dispatcher._circuit_state[WEBHOOK_KEY]
        assert state.is_open is True
        assert state.half_open_attempts == 3

        mock_webhook_channel.send.return_value = True
        result = await dispatcher.dispatch(webhook_alarm, group)

        assert result.channel == "webhook"
        assert WEBHOOK_KEY not in dispatcher._circuit_state

    @pytest.mark.asyncio
    async def test_exhausted_half_open_waits_for_recovery_window(
        self, webhook_alarm: Alarm, group: EventGroup, mock_webhook_channel: MagicMock
    ) -> None:
        """Within the recovery window an exhausted circuit stays open."""
        mock_webhook_channel.send.return_value = False
        dispatcher = NotificationDispatcher(
            [mock_webhook_channel], failure_threshold=1, half_open_max_attempts=1
        )
        with pytest.raises(DispatchError, match="rejected"):
            await dispatcher.dispatch(webhook_alarm, group)
        state = dispatcher._circuit_state[WEBHOOK_KEY]
        state.half_open_attempts = 1
        mock_webhook_channel.send.reset_mock()

        with pytest.raises(DispatchError, match="Circuit open"):
            await dispatcher.dispatch(webhook_alarm, group)
        mock_webhook_channel.send.assert_not_called()

        state.last_failure_time = datetime(2020, 1, 1, tzinfo=UTC)
        mock_webhook_channel.send.return_value = True
        await dispatcher.dispatch(webhook_alarm, group)
        mock_webhook_channel.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_open_circuit_is_per_destination(
        self, group: EventGroup, mock_webhook_channel: MagicMock
    ) -> None:
        """A failing webhook URL does not block other alarms on the same channel."""
        bad = _webhook_alarm(1, "http://bad.example.com/hook")
        good = _webhook_alarm(2, "http://good.example.com/hook")

        async def send(notification: object) -> bool:
            return notification.destination == good.target.destination

        mock_webhook_channel.send = AsyncMock(side_effect=send)
        dispatcher = NotificationDispatcher(
            [mock_webhook_channel], failure_threshold=5, recovery_timeout_seconds=3600
        )

        for _ in range(5):
            with pytest.raises(DispatchError, match="rejected"):
                await dispatcher.dispatch(bad, group)
        with pytest.raises(DispatchError, match="Circuit open for webhook http://bad"):
            await dispatcher.dispatch(bad, group)

        for _ in range(20):
            result = await dispatcher.dispatch(good, group)
            assert result.alarm_id == 2

        assert mock_webhook_channel.send.await_count == 25
        status = dispatcher.get_circuit_status()
        assert list(status) == ["webhook http://bad.example.com/hook"]
        assert status["webhook http://bad.example.com/hook"]["is_open"] is True

    def test_get_circuit_status_and_reset(self, mock_webhook_channel: MagicMock) -> None:
        """Circuit state can be inspected and reset by channel and destination."""
        dispatcher = NotificationDispatcher([mock_webhook_channel])
        dispatcher._state(WEBHOOK_KEY).failure_count = 4
        dispatcher._state(("webhook", "https://hooks.example.com/b")).failure_count = 1

        status = dispatcher.get_circuit_status()
        assert status["webhook https://hooks.example.com/a"]["failure_count"] == 4
        assert status["webhook https://hooks.example.com/b"]["failure_count"] == 1

        assert dispatcher.reset_circuit("webhook", "https://hooks.example.com/a") is True
        assert list(dispatcher.get_circuit_status()) == ["webhook https://hooks.example.com/b"]
        assert dispatcher.reset_circuit("webhook") is True
        assert dispatcher.get_circuit_status() == {}
        assert dispatcher.reset_circuit("pager") is False
