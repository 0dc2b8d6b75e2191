"""Exception hierarchy shared across the alarm service."""

from __future__ import annotations


class AlarmsError(Exception):
    """Base exception for contract alarm errors."""


class AlarmValidationError(AlarmsError):
    """Raised when an alarm description is missing or has malformed fields.

    Attributes:
        errors: One readable message per problem found.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("Invalid alarm: " + "; ".join(errors))


class StoreError(AlarmsError):
    """Raised when persistence is unavailable or a constraint is violated."""


class DispatchError(AlarmsError):
    """Raised when a notification could not be delivered or timed out."""


class ReorgDeferral(AlarmsError):
    """Signal that a block is not yet final for an alarm.

    Not a failure: the event is re-evaluated once the chain head advances.
    """

    def __init__(self, block_height: int, safe_height: int) -> None:
        self.block_height = block_height
        self.safe_height = safe_height
        super().__init__(f"Block {block_height} is above safe height {safe_height}")
