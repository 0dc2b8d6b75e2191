"""Reorg safety policy.

A block is only treated as final once it is buried under enough blocks
that a chain reorganization is no longer expected to replace it. The
margin is the larger of the deployment-wide setting and the alarm's own
``block_confirmations``: an alarm can be stricter, never looser.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from contract_alarms.errors import ReorgDeferral

if TYPE_CHECKING:
    from contract_alarms.alarms.models import Alarm
    from contract_alarms.config import Settings


class ReorgPolicy:
    """Decides whether a block height is final for an alarm."""

    def __init__(self, reorg_safety: int) -> None:
        """Initialize the policy.

        Args:
            reorg_safety: Global number of blocks to wait before trusting finality.
        """
        if reorg_safety < 0:
            raise ValueError("reorg_safety must be >= 0")
        self.reorg_safety = reorg_safety

    @classmethod
    def from_settings(cls, settings: Settings) -> ReorgPolicy:
        """Build the policy from application settings."""
        return cls(settings.get_reorg_safety())

    def required_confirmations(self, alarm: Alarm) -> int:
        """Confirmations required for ``alarm``."""
        return max(self.reorg_safety, alarm.block_confirmations)

    def effective_safe_height(self, chain_head: int, alarm: Alarm) -> int:
        """Highest block height that is final for ``alarm``."""
        return chain_head - self.required_confirmations(alarm)

    def is_final(self, block_height: int, chain_head: int, alarm: Alarm) -> bool:
        """Return True if ``block_height`` is at or below the safe height."""
        return block_height <= self.effective_safe_height(chain_head, alarm)

    def ensure_final(self, block_height: int, chain_head: int, alarm: Alarm) -> None:
        """Raise ReorgDeferral if ``block_height`` may still be reorganized.

        Raises:
            ReorgDeferral: The block is above the safe height.
        """
        safe_height = self.effective_safe_height(chain_head, alarm)
        if block_height > safe_height:
            raise ReorgDeferral(block_height, safe_height)
