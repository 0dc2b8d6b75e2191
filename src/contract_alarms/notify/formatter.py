"""Notification formatter for email and webhook delivery.

Turns an alarm and the events one transaction emitted into a subject,
a plain-text body and a JSON payload.
"""

from __future__ import annotations

from typing import Any

from contract_alarms.alarms.models import Alarm, ChainEvent, EventGroup
from contract_alarms.notify.models import Notification

ETHERSCAN_TX_URL = "https://etherscan.io/tx/{tx_hash}"
ETHERSCAN_ADDRESS_URL = "https://etherscan.io/address/{address}"


def truncate_address(address: str, chars: int = 4) -> str:
    """Truncate an Ethereum address to 0x1234...5678 format."""
    if len(address) < chars * 2 + 4:
        return address
    return f"{address[: chars + 2]}...{address[-chars:]}"


def format_value(value: Any) -> str:
    """Render one decoded event argument for plain text."""
    if isinstance(value, list | tuple):
        return "[" + ", ".join(format_value(v) for v in value) + "]"
    return str(value)


def dedup_key(alarm_id: int, tx_hash: str) -> str:
    """Key identifying one (alarm, transaction) notification."""
    return f"{alarm_id}:{tx_hash.lower()}"


class NotificationFormatter:
    """Formats matched event groups into notifications."""

    def __init__(
        self,
        *,
        tx_url_template: str = ETHERSCAN_TX_URL,
        address_url_template: str = ETHERSCAN_ADDRESS_URL,
    ) -> None:
        """Initialize the formatter.

        Args:
            tx_url_template: Explorer link for a transaction, with ``{tx_hash}``.
            address_url_template: Explorer link for a contract, with ``{address}``.
        """
        self.tx_url_template = tx_url_template
        self.address_url_template = address_url_template

    def format(self, alarm: Alarm, group: EventGroup) -> Notification:
        """Build the notification for ``group`` on ``alarm``."""
        tx_url = self.tx_url_template.format(tx_hash=group.tx_hash)
        address_url = self.address_url_template.format(address=group.address)

        subject = (
            f"[Alarm #{alarm.id}] {', '.join(group.event_names)} on "
            f"{truncate_address(group.address)}"
        )

        lines = [
            f"Alarm #{alarm.id} matched {len(group.events)} event(s).",
            "",
            f"Contract: {group.address}",
            f"Transaction: {group.tx_hash}",
            f"Block: {group.block_height}",
            "",
        ]
        for event in group.events:
            lines.append(f"{event.event_name} (log {event.log_index})")
            for name, value in event.payload.items():
                lines.append(f"  {name}: {format_value(value)}")
        lines.extend(["", tx_url])

        payload = {
            "alarm_id": alarm.id,
            "address": group.address,
            "tx_hash": group.tx_hash,
            "block_height": group.block_height,
            "events": [self._event_payload(e) for e in group.events],
            "links": {"transaction": tx_url, "contract": address_url},
        }

        return Notification(
            destination=alarm.target.destination,
            subject=subject,
            plain_text="\n".join(lines),
            payload=payload,
            dedup_key=dedup_key(alarm.id, group.tx_hash),
        )

    @staticmethod
    def _event_payload(event: ChainEvent) -> dict[str, Any]:
        return {
            "event": event.event_name,
            "block_height": event.block_height,
            "log_index": event.log_index,
            "args": event.payload,
        }
