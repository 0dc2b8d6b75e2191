"""Alarm reconciliation engine.

Matches decoded chain events against alarms and decides, per
(alarm, transaction) unit, whether to defer it, skip it as already
notified, or dispatch it. Dispatch is at-least-once: a unit only gets a
receipt after confirmed delivery, and the receipt check makes retries safe.

Unit lifecycle::

    PENDING -> DEFERRED (reorg risk, re-evaluated next pass)
    PENDING -> ELIGIBLE -> DISPATCHED (receipt recorded)
                        -> DISPATCH_FAILED (retried next pass)
    PENDING -> ALREADY_NOTIFIED (receipt exists)
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Protocol

from contract_alarms.alarms.models import (
    Alarm,
    ChainEvent,
    EventGroup,
    ReconcileReport,
    SyncOutcome,
    UnitOutcome,
    UnitState,
)
from contract_alarms.errors import DispatchError, ReorgDeferral, StoreError

if TYPE_CHECKING:
    from contract_alarms.alarms.reorg import ReorgPolicy
    from contract_alarms.alarms.service import AlarmService
    from contract_alarms.notify.models import DispatchResult

logger = logging.getLogger(__name__)

# Units in these states still need work, so no cursor may pass them.
BLOCKING_STATES = frozenset({UnitState.DEFERRED, UnitState.DISPATCH_FAILED})
COMPLETED_STATES = frozenset({UnitState.DISPATCHED, UnitState.ALREADY_NOTIFIED})


class Dispatcher(Protocol):
    """Anything that can deliver the notification for one unit."""

    async def dispatch(self, alarm: Alarm, group: EventGroup) -> DispatchResult: ...


def group_by_transaction(events: Iterable[ChainEvent]) -> dict[str, list[ChainEvent]]:
    """Group events by transaction hash, keeping first-seen order."""
    groups: dict[str, list[ChainEvent]] = {}
    for event in events:
        groups.setdefault(event.tx_hash.lower(), []).append(event)
    return groups


def build_units(
    groups: Mapping[str, Sequence[ChainEvent]],
    address_to_alarms: Mapping[str, Sequence[Alarm]],
) -> list[tuple[Alarm, EventGroup]]:
    """Expand transaction groups into (alarm, event group) dispatch units.

    Each alarm gets the events of the transaction that were emitted by
    its contract and carry one of its watched names. Events on addresses
    without alarms are dropped.
    """
    units = []
    for tx_hash, events in groups.items():
        by_address: dict[str, list[ChainEvent]] = defaultdict(list)
        for event in events:
            by_address[event.address.lower()].append(event)

        for address, address_events in by_address.items():
            for alarm in address_to_alarms.get(address, ()):
                matched = sorted(
                    (e for e in address_events if alarm.watches(e.event_name)),
                    key=lambda e: e.log_index,
                )
                if not matched:
                    continue
                units.append(
                    (
                        alarm,
                        EventGroup(
                            tx_hash=tx_hash,
                            address=address,
                            block_height=max(e.block_height for e in matched),
                            events=tuple(matched),
                        ),
                    )
                )
    return units


class ReconciliationEngine:
    """Turns batches of chain events into deduplicated notifications."""

    def __init__(
        self,
        service: AlarmService,
        dispatcher: Dispatcher,
        policy: ReorgPolicy,
        *,
        max_concurrency: int = 8,
        dry_run: bool = False,
    ) -> None:
        """Initialize the engine.

        Args:
            service: Alarm, sync state and receipt access.
            dispatcher: Delivers notifications.
            policy: Decides when a block is final.
            max_concurrency: Units processed in parallel.
            dry_run: Report eligible units without dispatching or recording.
        """
        self.service = service
        self.dispatcher = dispatcher
        self.policy = policy
        self.max_concurrency = max_concurrency
        self.dry_run = dry_run

    async def reconcile(self, events: Sequence[ChainEvent], chain_head: int) -> ReconcileReport:
        """Process a batch of decoded events against the current chain head.

        Args:
            events: Decoded events for one or more addresses.
            chain_head: Current chain head height.

        Returns:
            Per-unit outcomes and the sync cursor updates made.

        Raises:
            StoreError: If the alarms for the batch could not be loaded.
        """
        report = ReconcileReport(chain_head=chain_head)
        if not events:
            return report

        groups = group_by_transaction(events)
        addresses = sorted({e.address.lower() for e in events})
        address_to_alarms = await self.service.map_addresses_to_alarms(addresses)
        units = build_units(groups, address_to_alarms)
        if not units:
            logger.debug("No alarms matched %d events", len(events))
            return report

        semaphore = asyncio.Semaphore(self.max_concurrency)
        report.outcomes = list(
            await asyncio.gather(
                *(self._process_unit(alarm, group, chain_head, semaphore) for alarm, group in units)
            )
        )

        if not self.dry_run:
            report.sync_updates = await self._advance_cursors(report.outcomes)

        logger.info(
            "Reconciled %d units at head %d: %d dispatched, %d deferred, %d failed",
            len(report.outcomes),
            chain_head,
            len(report.dispatched),
            len(report.deferred),
            len(report.failed),
        )
        return report

    async def _process_unit(
        self,
        alarm: Alarm,
        group: EventGroup,
        chain_head: int,
        semaphore: asyncio.Semaphore,
    ) -> UnitOutcome:
        """Run one (alarm, transaction) unit through its lifecycle."""

        def outcome(state: UnitState, detail: str | None = None) -> UnitOutcome:
            return UnitOutcome(alarm.id, group.tx_hash, group.block_height, state, detail)

        async with semaphore:
            try:
                self.policy.ensure_final(group.block_height, chain_head, alarm)
            except ReorgDeferral as e:
                logger.debug("Deferring alarm %d tx %s: %s", alarm.id, group.tx_hash, e)
                return outcome(UnitState.DEFERRED, str(e))

            try:
                if await self.service.has_receipt(alarm.id, group.tx_hash):
                    return outcome(UnitState.ALREADY_NOTIFIED)
            except StoreError as e:
                logger.error("Receipt lookup failed for alarm %d: %s", alarm.id, e)
                return outcome(UnitState.DISPATCH_FAILED, str(e))

            if self.dry_run:
                logger.info("Dry run: would notify alarm %d for tx %s", alarm.id, group.tx_hash)
                return outcome(UnitState.ELIGIBLE)

            try:
                await self.dispatcher.dispatch(alarm, group)
            except DispatchError as e:
                logger.warning("Dispatch for alarm %d tx %s failed: %s", alarm.id, group.tx_hash, e)
                return outcome(UnitState.DISPATCH_FAILED, str(e))

            try:
                await self.service.record_receipt(alarm.id, group.tx_hash, group.block_height)
            except StoreError as e:
                # Delivered but unrecorded: the unit is retried and may notify twice.
                logger.error("Receipt for alarm %d tx %s not stored: %s", alarm.id, group.tx_hash, e)
                return outcome(UnitState.DISPATCH_FAILED, str(e))

            return outcome(UnitState.DISPATCHED)

    async def _advance_cursors(self, outcomes: Sequence[UnitOutcome]) -> list[SyncOutcome]:
        """Move each alarm's cursor up to its highest completed unit.

        The cursor stops below the lowest unit of the same alarm that was
        deferred or failed, so those units are picked up again next pass.
        """
        per_alarm: dict[int, list[UnitOutcome]] = defaultdict(list)
        for o in outcomes:
            per_alarm[o.alarm_id].append(o)

        updates = []
        for alarm_id, alarm_outcomes in per_alarm.items():
            blocked = [o.block_height for o in alarm_outcomes if o.state in BLOCKING_STATES]
            limit = min(blocked) if blocked else None
            completed = [
                o.block_height
                for o in alarm_outcomes
                if o.state in COMPLETED_STATES and (limit is None or o.block_height < limit)
            ]
            if not completed:
                continue
            try:
                updates.append(await self.service.record_sync_height(alarm_id, max(completed)))
            except StoreError as e:
                logger.warning("Sync cursor of alarm %d not advanced: %s", alarm_id, e)
                updates.append(SyncOutcome(alarm_id=alarm_id, sync_state=None, error=e))
        return updates
