"""Validation of user-submitted alarm descriptions."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from contract_alarms.alarms.models import NotificationKind, NotificationTarget
from contract_alarms.errors import AlarmValidationError

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


def abi_event_names(abi: list[dict[str, Any]]) -> set[str]:
    """Names of all ``event`` entries in an ABI."""
    return {
        entry["name"]
        for entry in abi
        if isinstance(entry, dict) and entry.get("type") == "event" and entry.get("name")
    }


class AlarmDescription(BaseModel):
    """A new alarm as submitted by a user.

    ``abi`` may be JSON text or already-structured data and ``event_names``
    may be a comma-joined string; both are normalised here so the rest of
    the service only ever sees structured values.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    address: str
    abi: list[dict[str, Any]]
    event_names: list[str] = Field(min_length=1)
    email: str | None = None
    webhook: str | None = None
    block_confirmations: int = Field(default=0, ge=0)

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        """Require a 20-byte hex contract address."""
        if not ADDRESS_PATTERN.match(v):
            raise ValueError("address must be a 0x-prefixed 40 character hex string")
        return v.lower()

    @field_validator("abi", mode="before")
    @classmethod
    def parse_abi(cls, v: Any) -> Any:
        """Decode an ABI given as JSON text."""
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError as e:
                raise ValueError(f"abi is not valid JSON: {e.msg}") from e
        return v

    @field_validator("event_names", mode="before")
    @classmethod
    def split_event_names(cls, v: Any) -> Any:
        """Accept comma-joined names, drop blanks and duplicates."""
        if isinstance(v, str):
            v = v.split(",")
        if isinstance(v, list | tuple):
            names = [str(n).strip() for n in v]
            return list(dict.fromkeys(n for n in names if n))
        return v

    @field_validator("webhook")
    @classmethod
    def validate_webhook(cls, v: str | None) -> str | None:
        """Validate webhook URL format."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("webhook must be an HTTP(S) URL")
        return v or None

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str | None) -> str | None:
        """Validate email address shape."""
        if v and "@" not in v:
            raise ValueError("email must be an email address")
        return v or None

    @model_validator(mode="after")
    def check_target_and_events(self) -> AlarmDescription:
        """Exactly one target, and every watched event must exist in the ABI."""
        if bool(self.email) == bool(self.webhook):
            raise ValueError("exactly one of email or webhook is required")

        known = abi_event_names(self.abi)
        missing = [n for n in self.event_names if n not in known]
        if missing:
            raise ValueError(f"events not found in abi: {', '.join(missing)}")
        return self

    @property
    def target(self) -> NotificationTarget:
        """Notification target derived from email/webhook."""
        if self.email:
            return NotificationTarget(NotificationKind.EMAIL, self.email)
        return NotificationTarget(NotificationKind.WEBHOOK, self.webhook or "")

    @classmethod
    def parse(cls, data: AlarmDescription | Mapping[str, Any]) -> AlarmDescription:
        """Validate raw input, converting pydantic errors to AlarmValidationError.

        Raises:
            AlarmValidationError: With one message per invalid field.
        """
        if isinstance(data, AlarmDescription):
            return data
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            messages = []
            for error in e.errors():
                field = ".".join(str(loc) for loc in error["loc"])
                msg = error["msg"].removeprefix("Value error, ")
                messages.append(f"{field}: {msg}" if field else msg)
            raise AlarmValidationError(messages) from e
