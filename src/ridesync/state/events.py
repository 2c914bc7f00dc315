"""Normalized ride updates.

All ingestion paths (push, poll, rehydration, local commands) convert their
inputs into these updates. Only the state machine is allowed to merge them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ridesync.models.ride import RidePhase


class UpdateSource(StrEnum):
    PUSH = "push"
    POLL = "poll"
    REHYDRATE = "rehydrate"
    LOCAL = "local"

    @property
    def is_trusted(self) -> bool:
        """Server-originated updates reset the staleness clock."""
        return self != UpdateSource.LOCAL


class RideUpdate(BaseModel):
    """A normalized patch to merge into the active ride session.

    ``data`` keys are :class:`ridesync.state.machine.RideSession` field
    names; absent keys mean "no information". ``booking_id`` of ``None``
    targets whichever session is active.
    """

    model_config = ConfigDict(frozen=True)

    booking_id: str | None = None
    source: UpdateSource
    phase: RidePhase | None = None
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    data: dict[str, Any] = Field(default_factory=dict, description="Normalized session patch")

    @field_validator("booking_id")
    @classmethod
    def _normalize_booking_id(cls, value: str | None) -> str | None:
        if value is None:
            return None
        text = value.strip()
        return text or None
