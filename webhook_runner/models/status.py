"""Structured results of handling one webhook event.

Every processed event produces an ``Outcome``; failures carry a
``DeathReason`` explaining why the command never ran.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class Status(StrEnum):
    DISPATCHED = "dispatched"
    NO_COMMAND = "no_command"
    IGNORED = "ignored"
    FAILED = "failed"


class ReasonKind(StrEnum):
    INVALID_WEBHOOK = "invalid_webhook"
    FAILED_CLONE = "failed_clone"
    REPOSITORY_INTEGRITY = "repository_integrity"
    REPOSITORY_ERROR = "repository_error"
    KEYRING_VERIFICATION = "keyring_verification"
    COMMAND_FAILED = "command_failed"


class DeathReason(BaseModel):
    """Why an event did not lead to a command run."""

    kind: ReasonKind
    message: str
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def invalid_webhook(cls, field_path: str, value: str | None = None) -> DeathReason:
        return cls(
            kind=ReasonKind.INVALID_WEBHOOK,
            message=f"Received invalid data in webhook at path: {field_path}, value?: {value!r}",
            details={"field_path": field_path, "value": value},
        )


class Outcome(BaseModel):
    """Result body returned for every processed event."""

    status: Status
    reason: DeathReason | None = None
    ref: str | None = None
    commit: str | None = None
    command: str | None = None
