"""Alarm service: the query and mutation surface used by reconciliation.

Wraps the repositories with one short transaction per operation so that
every mutation is atomic at the level of a single record (one alarm, one
sync cursor, one receipt). Persistence failures surface as StoreError.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Iterable, Mapping, Sequence
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from contract_alarms.alarms.description import ADDRESS_PATTERN, AlarmDescription
from contract_alarms.alarms.models import Alarm, ContractDescriptor, Receipt, SyncOutcome, SyncState
from contract_alarms.errors import AlarmValidationError, StoreError
from contract_alarms.storage.repos import AlarmRepository, ReceiptRepository, SyncStateRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from contract_alarms.chain.abi import AbiResolver

logger = logging.getLogger(__name__)


class AlarmService:
    """Alarm store, sync state tracker and receipt store in one facade."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        abi_resolver: AbiResolver | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            session_factory: Factory for async sessions bound to the database.
            abi_resolver: Looks up the ABI of alarms submitted without one.
        """
        self._session_factory = session_factory
        self._abi_resolver = abi_resolver

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        """Run the block in its own transaction, mapping DB failures to StoreError."""
        try:
            async with self._session_factory.begin() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(f"Database operation failed: {e}") from e

    # ------------------------------------------------------------------
    # Alarm store
    # ------------------------------------------------------------------

    async def list_alarms(
        self,
        alarm_id: int | None = None,
        addresses: Sequence[str] | None = None,
    ) -> list[Alarm]:
        """Retrieve alarms, optionally restricted by id and/or addresses.

        An empty filter returns every alarm.
        """
        async with self._transaction() as session:
            return await AlarmRepository(session).find(alarm_id=alarm_id, addresses=addresses)

    async def get_alarm(self, alarm_id: int) -> Alarm | None:
        """Retrieve one alarm by id."""
        alarms = await self.list_alarms(alarm_id=alarm_id)
        return alarms[0] if alarms else None

    async def create_alarm(self, description: AlarmDescription | Mapping[str, Any]) -> Alarm:
        """Validate and store a new alarm.

        A description without an ABI gets the contract's verified ABI from
        the resolver, when one is configured.

        Raises:
            AlarmValidationError: If required fields are missing or malformed,
                or no ABI could be found for the contract.
            StoreError: If the alarm could not be persisted.
        """
        if isinstance(description, Mapping) and not description.get("abi"):
            description = await self._with_resolved_abi(description)
        parsed = AlarmDescription.parse(description)
        async with self._transaction() as session:
            alarm = await AlarmRepository(session).insert(
                address=parsed.address,
                abi=parsed.abi,
                event_names=parsed.event_names,
                target=parsed.target,
                block_confirmations=parsed.block_confirmations,
            )
        logger.info(
            "Created alarm %d on %s for %s via %s",
            alarm.id,
            alarm.address,
            ",".join(alarm.event_names),
            alarm.target.kind.value,
        )
        return alarm

    async def _with_resolved_abi(self, description: Mapping[str, Any]) -> Mapping[str, Any]:
        address = description.get("address")
        if self._abi_resolver is None or not isinstance(address, str):
            return description
        address = address.strip()
        if not ADDRESS_PATTERN.match(address):
            # Left for AlarmDescription to report.
            return description

        abi = await self._abi_resolver.fetch_abi(address)
        if abi is None:
            raise AlarmValidationError([f"abi: no verified ABI found for {address}"])
        return {**description, "abi": abi}

    async def map_addresses_to_alarms(self, addresses: Sequence[str]) -> dict[str, list[Alarm]]:
        """Group the alarms watching each address.

        Addresses without alarms are absent from the result.
        """
        if not addresses:
            return {}
        mapping: dict[str, list[Alarm]] = {}
        for alarm in await self.list_alarms(addresses=addresses):
            mapping.setdefault(alarm.address, []).append(alarm)
        return mapping

    @staticmethod
    def contract_descriptors_for(
        address_to_alarms: Mapping[str, Sequence[Alarm]],
    ) -> list[ContractDescriptor]:
        """Address and ABI per contract.

        Alarms sharing an address reference the same contract, so the
        first alarm's ABI is used.
        """
        return [
            ContractDescriptor(address=address, abi=alarms[0].abi)
            for address, alarms in address_to_alarms.items()
            if alarms
        ]

    # ------------------------------------------------------------------
    # Sync state tracker
    # ------------------------------------------------------------------

    async def get_sync_state(self, alarm_id: int) -> SyncState | None:
        """Current sync cursor of an alarm, if one exists."""
        async with self._transaction() as session:
            return await SyncStateRepository(session).get(alarm_id)

    async def record_sync_height(self, alarm_id: int, height: int) -> SyncOutcome:
        """Create the alarm's cursor or advance it to ``height``.

        Lower or equal heights leave the stored value untouched.

        Raises:
            StoreError: If the cursor could not be written.
        """
        async with self._transaction() as session:
            state, created = await SyncStateRepository(session).advance(alarm_id, height)
        return SyncOutcome(alarm_id=alarm_id, sync_state=state, was_created=created)

    async def record_sync_heights_batch(self, address: str, height: int) -> list[SyncOutcome]:
        """Advance the cursor of every alarm on ``address`` to ``height``.

        Each alarm is updated in its own transaction; a failure on one is
        recorded in its outcome and does not stop the others.

        Raises:
            StoreError: If the alarms on the address could not be listed.
        """
        outcomes = []
        for alarm in await self.list_alarms(addresses=[address]):
            try:
                outcomes.append(await self.record_sync_height(alarm.id, height))
            except StoreError as e:
                logger.warning("Failed to store sync height %d for alarm %d: %s", height, alarm.id, e)
                outcomes.append(SyncOutcome(alarm_id=alarm.id, sync_state=None, error=e))
        return outcomes

    async def latest_synced_height_per_address(
        self,
        addresses: Sequence[str],
        default_height: int,
        *,
        reducer: Callable[[Iterable[int]], int] = max,
    ) -> dict[str, int]:
        """Sync watermark per address.

        Combines the cursors of all alarms on an address with ``reducer``
        (the greatest by default); alarms without a cursor count as
        ``default_height``. Addresses without alarms are absent.
        """
        if not addresses:
            return {}
        async with self._transaction() as session:
            rows = await SyncStateRepository(session).heights_by_address(addresses)

        per_address: dict[str, list[int]] = {}
        for address, height in rows:
            per_address.setdefault(address, []).append(default_height if height is None else height)
        return {address: reducer(heights) for address, heights in per_address.items()}

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    async def has_receipt(self, alarm_id: int, tx_hash: str) -> bool:
        """Return True if the (alarm, transaction) pair was already notified."""
        async with self._transaction() as session:
            return await ReceiptRepository(session).exists(alarm_id, tx_hash)

    async def get_receipt(self, alarm_id: int, tx_hash: str) -> Receipt | None:
        """Retrieve the receipt of an (alarm, transaction) pair."""
        async with self._transaction() as session:
            return await ReceiptRepository(session).get(alarm_id, tx_hash)

    async def record_receipt(self, alarm_id: int, tx_hash: str, block_height: int) -> bool:
        """Persist a receipt; a second call for the same pair is a no-op.

        Returns:
            True if a new receipt was written.
        """
        async with self._transaction() as session:
            created = await ReceiptRepository(session).insert(alarm_id, tx_hash, block_height)
        if not created:
            logger.warning("Receipt for alarm %d tx %s already existed", alarm_id, tx_hash)
        return created
