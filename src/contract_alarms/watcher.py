"""Polling watcher driving reconciliation passes.

One pass reads the chain head, fetches every watched contract's logs
since its most conservative sync cursor, reconciles them, and then moves
cursors of quiet contracts up to the reorg-safe height so the next scan
window starts later.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from contract_alarms.alarms.models import ChainEvent, ReconcileReport, UnitState
from contract_alarms.chain.events import ChainError
from contract_alarms.errors import StoreError

if TYPE_CHECKING:
    from contract_alarms.alarms.engine import ReconciliationEngine
    from contract_alarms.alarms.reorg import ReorgPolicy
    from contract_alarms.alarms.service import AlarmService
    from contract_alarms.chain.events import ChainEventSource

logger = logging.getLogger(__name__)


class AlarmWatcher:
    """Runs reconciliation against live chain data."""

    def __init__(
        self,
        service: AlarmService,
        engine: ReconciliationEngine,
        source: ChainEventSource,
        policy: ReorgPolicy,
        *,
        start_block: int = 0,
    ) -> None:
        """Initialize the watcher.

        Args:
            service: Alarm, sync state and receipt access.
            engine: Reconciliation engine.
            source: Chain head and log access.
            policy: Reorg safety policy.
            start_block: First block scanned for alarms without a cursor.
        """
        self.service = service
        self.engine = engine
        self.source = source
        self.policy = policy
        self.start_block = start_block

    async def run_once(self) -> ReconcileReport:
        """Run one reconciliation pass.

        Raises:
            ChainError: If the RPC endpoint failed.
            StoreError: If the database failed.
        """
        head = await self.source.get_head()
        alarms = await self.service.list_alarms()
        addresses = sorted({a.address for a in alarms})
        address_to_alarms = await self.service.map_addresses_to_alarms(addresses)
        if not address_to_alarms:
            logger.debug("No alarms registered")
            return ReconcileReport(chain_head=head)

        default_cursor = self.start_block - 1
        # The lowest cursor per address, so no alarm misses events.
        cursors = await self.service.latest_synced_height_per_address(
            addresses, default_cursor, reducer=min
        )

        events: list[ChainEvent] = []
        for descriptor in self.service.contract_descriptors_for(address_to_alarms):
            from_block = cursors.get(descriptor.address, default_cursor) + 1
            if from_block > head:
                continue
            events.extend(await self.source.fetch_events(descriptor, from_block, head))

        report = await self.engine.reconcile(events, head)
        if self.engine.dry_run:
            return report

        alarm_addresses = {a.id: a.address for a in alarms}
        failed_addresses = {
            alarm_addresses[o.alarm_id]
            for o in report.outcomes
            if o.state == UnitState.DISPATCH_FAILED and o.alarm_id in alarm_addresses
        }

        for address, address_alarms in address_to_alarms.items():
            if address in failed_addresses:
                continue
            safe_height = min(self.policy.effective_safe_height(head, a) for a in address_alarms)
            if safe_height <= cursors.get(address, default_cursor):
                continue
            report.sync_updates.extend(
                await self.service.record_sync_heights_batch(address, safe_height)
            )

        return report

    async def run_forever(self, stop_event: asyncio.Event, poll_interval: float) -> None:
        """Run passes every ``poll_interval`` seconds until ``stop_event`` is set.

        A failed pass is logged and retried on the next tick.
        """
        logger.info("Watcher started, polling every %.1fs", poll_interval)
        while not stop_event.is_set():
            try:
                await self.run_once()
            except (ChainError, StoreError) as e:
                logger.error("Reconciliation pass failed: %s", e)

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
        logger.info("Watcher stopped")
