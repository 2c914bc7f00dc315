"""Base model and enum for ride API payloads.

Every ride payload model inherits from :class:`RideBaseModel` which
provides:

* ``alias_generator=to_camel`` so camelCase API keys map
  automatically to snake_case fields.
* A ``model_validator(mode="before")`` that strips placeholder values
  (``""``, ``"--"``, ``"null"``, NaN) so the field default is used.
* A ``raw`` dict that captures the original payload.

String enums inherit from :class:`RideEnum` which adds an ``UNKNOWN``
member and a ``_missing_`` hook that matches case-insensitively and
returns ``UNKNOWN`` for any value without a mapped member.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from ridesync.ingestion.normalize import is_placeholder, normalize_timestamp_seconds


def parse_ride_timestamp(value: Any) -> datetime | None:
    """Convert epoch seconds, epoch milliseconds or ISO-8601 text to a UTC datetime."""
    if value is None:
        return value
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    seconds = normalize_timestamp_seconds(value)
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=UTC)


RideTimestamp = Annotated[datetime | None, BeforeValidator(parse_ride_timestamp)]
"""Annotated type that coerces epoch numbers or ISO strings to UTC datetimes."""


class RideEnum(StrEnum):
    """Base for server-reported string enums.

    Every subclass **must** define ``UNKNOWN``.
    """

    @classmethod
    def _missing_(cls, value: object) -> RideEnum:
        if isinstance(value, str):
            wanted = value.strip().upper().replace("-", "_").replace(" ", "_")
            for member in cls:
                if member.value == wanted:
                    return member
        unknown: RideEnum = cls.UNKNOWN  # type: ignore[attr-defined]
        return unknown


class RideBaseModel(BaseModel):
    """Base for ride API payload models.

    Handles:
    * camelCase → snake_case via ``alias_generator=to_camel``
    * placeholder values (``""``, ``"--"``, NaN) → dropped so the field
      default is used instead
    * stashes the original API dict in ``raw``
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)
    """Original API payload dict."""

    @staticmethod
    def _clean_dict(values: dict[str, Any]) -> dict[str, Any]:
        return {
            key: value
            for key, value in values.items()
            if value is not None and not is_placeholder(value) and not (isinstance(value, float) and math.isnan(value))
        }

    @model_validator(mode="before")
    @classmethod
    def _clean_values(cls, values: Any) -> Any:
        """Strip placeholder values and stash the raw payload."""
        if not isinstance(values, dict):
            return values
        original = dict(values)
        cleaned = RideBaseModel._clean_dict(original)
        # Only auto-stash raw when not explicitly provided.
        if "raw" not in values:
            cleaned["raw"] = original
        return cleaned
