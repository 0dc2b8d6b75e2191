"""Application wiring: database, chain source, dispatcher and watcher."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from contract_alarms.alarms.engine import ReconciliationEngine
from contract_alarms.alarms.reorg import ReorgPolicy
from contract_alarms.alarms.service import AlarmService
from contract_alarms.chain.abi import AbiResolver
from contract_alarms.chain.events import ChainEventSource
from contract_alarms.notify.channels.email import EmailChannel
from contract_alarms.notify.channels.webhook import WebhookChannel
from contract_alarms.notify.dispatcher import NotificationChannel, NotificationDispatcher
from contract_alarms.storage.database import create_engine, create_session_factory, init_models
from contract_alarms.watcher import AlarmWatcher

if TYPE_CHECKING:
    from contract_alarms.alarms.models import ReconcileReport
    from contract_alarms.config import Settings

logger = logging.getLogger(__name__)


def build_dispatcher(settings: Settings) -> NotificationDispatcher:
    """Create the dispatcher with every channel the settings enable."""
    channels: list[NotificationChannel] = [
        WebhookChannel(
            max_retries=settings.webhook.max_retries,
            timeout=settings.webhook.timeout,
        )
    ]
    if settings.smtp.enabled:
        channels.append(EmailChannel.from_settings(settings.smtp))
    else:
        logger.warning("SMTP_HOST not set, email alarms will fail to dispatch")
    return NotificationDispatcher(channels, timeout=settings.dispatch_timeout)


class Pipeline:
    """Owns the long-lived resources and the background watcher task."""

    def __init__(self, settings: Settings, *, dry_run: bool = False) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings.
            dry_run: Reconcile without sending notifications.
        """
        self.settings = settings
        self.dry_run = dry_run

        self.db_engine = create_engine(settings.database.url, echo=settings.database.echo)
        self.service = AlarmService(
            create_session_factory(self.db_engine),
            abi_resolver=AbiResolver.from_settings(settings.etherscan),
        )
        self.policy = ReorgPolicy.from_settings(settings)
        self.engine = ReconciliationEngine(
            self.service,
            build_dispatcher(settings),
            self.policy,
            max_concurrency=settings.max_concurrency,
            dry_run=dry_run,
        )
        self.watcher = AlarmWatcher(
            self.service,
            self.engine,
            ChainEventSource.from_url(
                settings.chain.rpc_url, max_block_range=settings.chain.max_block_range
            ),
            self.policy,
            start_block=settings.chain.start_block,
        )

        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    async def init_db(self) -> None:
        """Create missing tables."""
        await init_models(self.db_engine)

    async def run_once(self) -> ReconcileReport:
        """Run a single reconciliation pass."""
        return await self.watcher.run_once()

    async def start(self) -> None:
        """Start polling in the background."""
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(
            self.watcher.run_forever(self._stop_event, self.settings.poll_interval)
        )
        logger.info("Pipeline started (dry_run=%s)", self.dry_run)

    async def stop(self) -> None:
        """Stop polling and release database connections. Safe to call twice."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        await self.db_engine.dispose()
        logger.info("Pipeline stopped")
