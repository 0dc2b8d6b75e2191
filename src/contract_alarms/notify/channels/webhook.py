"""Webhook channel implementation."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import httpx

from contract_alarms.alarms.models import NotificationKind

if TYPE_CHECKING:
    from contract_alarms.notify.models import Notification

logger = logging.getLogger(__name__)

DEDUP_HEADER = "X-Alarm-Dedup-Key"


class WebhookChannel:
    """Posts notifications as JSON to the alarm's webhook URL.

    Retries with exponential backoff and honours ``Retry-After`` on 429.
    """

    kind = NotificationKind.WEBHOOK

    def __init__(
        self,
        *,
        rate_limit_per_minute: int = 60,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 10.0,
    ) -> None:
        """Initialize webhook channel.

        Args:
            rate_limit_per_minute: Maximum requests per minute across all webhooks.
            max_retries: Maximum attempts per notification.
            retry_delay: Base delay between retries (exponential backoff).
            timeout: HTTP request timeout in seconds.
        """
        self.rate_limit_per_minute = rate_limit_per_minute
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.name = "webhook"

        self._request_times: list[float] = []
        self._lock = asyncio.Lock()

    async def _wait_for_rate_limit(self) -> None:
        """Wait if rate limit is exceeded."""
        async with self._lock:
            now = asyncio.get_running_loop().time()
            self._request_times = [t for t in self._request_times if now - t < 60]

            if len(self._request_times) >= self.rate_limit_per_minute:
                wait_time = 60 - (now - self._request_times[0])
                if wait_time > 0:
                    logger.debug("Webhook rate limit hit, waiting %.2fs", wait_time)
                    await asyncio.sleep(wait_time)

            self._request_times.append(now)

    @staticmethod
    def _retry_after(response: httpx.Response, default: float) -> float:
        try:
            return float(response.headers.get("Retry-After", default))
        except ValueError:
            return default

    async def send(self, notification: Notification) -> bool:
        """Post the notification payload.

        Args:
            notification: Formatted notification; ``destination`` is the URL.

        Returns:
            True if the receiver answered with a 2xx status, False otherwise.
        """
        await self._wait_for_rate_limit()

        headers = {DEDUP_HEADER: notification.dedup_key}

        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        notification.destination,
                        json=notification.payload,
                        headers=headers,
                    )

                    if 200 <= response.status_code < 300:
                        logger.info("Webhook delivered %s", notification.dedup_key)
                        return True

                    if response.status_code == 429:
                        retry_after = self._retry_after(response, self.retry_delay)
                        logger.warning("Webhook rate limited, retry after %ss", retry_after)
                        await asyncio.sleep(retry_after)
                        continue

                    logger.error(
                        "Webhook failed: %s %s", response.status_code, response.text[:200]
                    )

            except httpx.TimeoutException:
                logger.warning("Webhook timeout (attempt %d)", attempt + 1)
            except httpx.HTTPError as e:
                logger.error("Webhook error: %s", e)

            if attempt < self.max_retries - 1:
                delay = self.retry_delay * (2**attempt)
                await asyncio.sleep(delay)

        logger.error("Webhook delivery of %s failed after all retries", notification.dedup_key)
        return False
