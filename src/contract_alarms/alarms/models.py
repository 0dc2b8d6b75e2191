"""Domain models for alarms, sync cursors, receipts and chain events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class NotificationKind(str, Enum):
    """Where a matched event is delivered."""

    EMAIL = "email"
    WEBHOOK = "webhook"


@dataclass(frozen=True)
class NotificationTarget:
    """Delivery channel kind plus its destination (address or URL)."""

    kind: NotificationKind
    destination: str


@dataclass(frozen=True)
class Alarm:
    """A watch rule on named events of one contract.

    Attributes:
        id: Store-assigned identifier.
        address: Lower-case contract address.
        abi: Decoded contract ABI.
        event_names: Ordered names of watched events.
        target: Where notifications go.
        block_confirmations: Minimum confirmations this alarm requires.
    """

    id: int
    address: str
    abi: list[dict[str, Any]]
    event_names: tuple[str, ...]
    target: NotificationTarget
    block_confirmations: int = 0
    created_at: datetime | None = None

    def watches(self, event_name: str) -> bool:
        """Return True if this alarm is interested in the named event."""
        return event_name in self.event_names


@dataclass(frozen=True)
class SyncState:
    """Per-alarm cursor: highest block already processed."""

    alarm_id: int
    last_sync_block: int
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Receipt:
    """Proof that an (alarm, transaction) pair was already notified."""

    alarm_id: int
    tx_hash: str
    block_height: int
    created_at: datetime | None = None


@dataclass(frozen=True)
class ContractDescriptor:
    """Address and ABI needed to fetch and decode a contract's logs."""

    address: str
    abi: list[dict[str, Any]]


@dataclass(frozen=True)
class ChainEvent:
    """A decoded on-chain log entry."""

    tx_hash: str
    address: str
    event_name: str
    block_height: int
    log_index: int = 0
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EventGroup:
    """Events emitted by one transaction that one alarm cares about."""

    tx_hash: str
    address: str
    block_height: int
    events: tuple[ChainEvent, ...]

    @property
    def event_names(self) -> list[str]:
        """Distinct event names in log order."""
        return list(dict.fromkeys(e.event_name for e in self.events))


@dataclass
class SyncOutcome:
    """Result of one sync cursor update.

    ``error`` is set (and ``sync_state`` is None) when the update failed.
    """

    alarm_id: int
    sync_state: SyncState | None
    was_created: bool = False
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        """Return True if the cursor was read or written successfully."""
        return self.error is None


class UnitState(str, Enum):
    """Lifecycle of one (alarm, transaction) dispatch unit."""

    DEFERRED = "deferred"
    ELIGIBLE = "eligible"
    ALREADY_NOTIFIED = "already_notified"
    DISPATCHED = "dispatched"
    DISPATCH_FAILED = "dispatch_failed"


@dataclass
class UnitOutcome:
    """What reconciliation did with one (alarm, transaction) unit."""

    alarm_id: int
    tx_hash: str
    block_height: int
    state: UnitState
    detail: str | None = None


@dataclass
class ReconcileReport:
    """Summary of a reconciliation pass."""

    chain_head: int
    outcomes: list[UnitOutcome] = field(default_factory=list)
    sync_updates: list[SyncOutcome] = field(default_factory=list)
    finished_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def by_state(self, state: UnitState) -> list[UnitOutcome]:
        """Outcomes currently in the given state."""
        return [o for o in self.outcomes if o.state == state]

    @property
    def dispatched(self) -> list[UnitOutcome]:
        return self.by_state(UnitState.DISPATCHED)

    @property
    def deferred(self) -> list[UnitOutcome]:
        return self.by_state(UnitState.DEFERRED)

    @property
    def failed(self) -> list[UnitOutcome]:
        return self.by_state(UnitState.DISPATCH_FAILED)
