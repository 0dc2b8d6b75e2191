"""Repository pattern implementations for data access.

This module provides data access abstractions for alarms, sync cursors
and notification receipts. Serialized columns (ABI JSON, comma-joined
event names) are decoded here and nowhere else.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from contract_alarms.alarms.models import (
    Alarm,
    NotificationKind,
    NotificationTarget,
    Receipt,
    SyncState,
)
from contract_alarms.storage.models import AlarmModel, AlarmReceiptModel, AlarmSyncStateModel

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

EVENT_NAME_SEPARATOR = ","


def alarm_from_model(model: AlarmModel) -> Alarm:
    """Create a domain Alarm from its SQLAlchemy row."""
    return Alarm(
        id=model.id,
        address=model.address,
        abi=json.loads(model.abi),
        event_names=tuple(n for n in model.event_names.split(EVENT_NAME_SEPARATOR) if n),
        target=NotificationTarget(
            kind=NotificationKind(model.target_kind),
            destination=model.target,
        ),
        block_confirmations=model.block_confirmations,
        created_at=model.created_at,
    )


def sync_state_from_model(model: AlarmSyncStateModel) -> SyncState:
    """Create a domain SyncState from its SQLAlchemy row."""
    return SyncState(
        alarm_id=model.alarm_id,
        last_sync_block=model.last_sync_block,
        updated_at=model.updated_at,
    )


def receipt_from_model(model: AlarmReceiptModel) -> Receipt:
    """Create a domain Receipt from its SQLAlchemy row."""
    return Receipt(
        alarm_id=model.alarm_id,
        tx_hash=model.tx_hash,
        block_height=model.block_height,
        created_at=model.created_at,
    )


def _insert(session: AsyncSession, model: type[Any]) -> Any:
    """Pick the dialect-specific INSERT that supports ON CONFLICT."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


class AlarmRepository:
    """Repository for alarm data access."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def find(
        self,
        alarm_id: int | None = None,
        addresses: Sequence[str] | None = None,
    ) -> list[Alarm]:
        """List alarms matching an optional id and/or address filter.

        Args:
            alarm_id: Only return this alarm.
            addresses: Only return alarms on these addresses.

        Returns:
            Alarms ordered by id.
        """
        stmt = select(AlarmModel).order_by(AlarmModel.id)
        if addresses:
            stmt = stmt.where(AlarmModel.address.in_([a.lower() for a in addresses]))
        if alarm_id is not None:
            stmt = stmt.where(AlarmModel.id == alarm_id)

        result = await self.session.execute(stmt)
        return [alarm_from_model(m) for m in result.scalars().all()]

    async def insert(
        self,
        *,
        address: str,
        abi: list[dict[str, Any]],
        event_names: Sequence[str],
        target: NotificationTarget,
        block_confirmations: int = 0,
    ) -> Alarm:
        """Insert a new alarm.

        Returns:
            The stored Alarm with its assigned id.
        """
        model = AlarmModel(
            address=address.lower(),
            abi=json.dumps(abi),
            event_names=EVENT_NAME_SEPARATOR.join(event_names),
            target_kind=target.kind.value,
            target=target.destination,
            block_confirmations=block_confirmations,
            created_at=datetime.now(UTC),
        )
        self.session.add(model)
        await self.session.flush()
        return alarm_from_model(model)


class SyncStateRepository:
    """Repository for per-alarm sync cursors."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def get(self, alarm_id: int) -> SyncState | None:
        """Get the sync cursor of an alarm, if any."""
        result = await self.session.execute(
            select(AlarmSyncStateModel)
            .where(AlarmSyncStateModel.alarm_id == alarm_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return sync_state_from_model(model) if model else None

    async def advance(self, alarm_id: int, height: int) -> tuple[SyncState, bool]:
        """Create the cursor at ``height`` or move it forward to ``height``.

        The insert and the update are each a single conditional statement,
        so concurrent callers can never move the cursor backwards.

        Args:
            alarm_id: Owning alarm.
            height: Candidate block height.

        Returns:
            Tuple of (current SyncState, whether it was created).
        """
        now = datetime.now(UTC)
        stmt = (
            _insert(self.session, AlarmSyncStateModel)
            .values(alarm_id=alarm_id, last_sync_block=height, created_at=now, updated_at=now)
            .on_conflict_do_nothing(index_elements=["alarm_id"])
        )
        result = await self.session.execute(stmt)
        created = result.rowcount == 1

        if not created:
            result = await self.session.execute(
                update(AlarmSyncStateModel)
                .where(
                    AlarmSyncStateModel.alarm_id == alarm_id,
                    AlarmSyncStateModel.last_sync_block < height,
                )
                .values(last_sync_block=height, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                logger.debug("Sync cursor of alarm %d advanced to %d", alarm_id, height)

        await self.session.flush()
        state = await self.get(alarm_id)
        if state is None:
            raise RuntimeError(f"Sync state for alarm {alarm_id} vanished after upsert")
        return state, created

    async def heights_by_address(self, addresses: Sequence[str]) -> list[tuple[str, int | None]]:
        """Get (address, last_sync_block) for every alarm on the addresses.

        Alarms without a cursor yield None for the height.
        """
        result = await self.session.execute(
            select(AlarmModel.address, AlarmSyncStateModel.last_sync_block)
            .outerjoin(AlarmSyncStateModel, AlarmSyncStateModel.alarm_id == AlarmModel.id)
            .where(AlarmModel.address.in_([a.lower() for a in addresses]))
        )
        return [(row[0], row[1]) for row in result.all()]


class ReceiptRepository:
    """Repository for notification receipts."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def get(self, alarm_id: int, tx_hash: str) -> Receipt | None:
        """Get the receipt for an (alarm, transaction) pair."""
        result = await self.session.execute(
            select(AlarmReceiptModel).where(
                AlarmReceiptModel.alarm_id == alarm_id,
                AlarmReceiptModel.tx_hash == tx_hash.lower(),
            )
        )
        model = result.scalar_one_or_none()
        return receipt_from_model(model) if model else None

    async def exists(self, alarm_id: int, tx_hash: str) -> bool:
        """Check whether the pair was already notified."""
        result = await self.session.execute(
            select(AlarmReceiptModel.id).where(
                AlarmReceiptModel.alarm_id == alarm_id,
                AlarmReceiptModel.tx_hash == tx_hash.lower(),
            )
        )
        return result.first() is not None

    async def insert(self, alarm_id: int, tx_hash: str, block_height: int) -> bool:
        """Insert a receipt unless one already exists.

        Returns:
            True if a new receipt was written, False if it was already there.
        """
        stmt = (
            _insert(self.session, AlarmReceiptModel)
            .values(
                alarm_id=alarm_id,
                tx_hash=tx_hash.lower(),
                block_height=block_height,
                created_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=["alarm_id", "tx_hash"])
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount == 1
