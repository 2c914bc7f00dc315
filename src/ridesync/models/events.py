"""Pushed broker events as a tagged union.

Ride-update topics carry ``{"type": "...", "ride": {...}}`` envelopes;
location topics carry bare ``{"latitude": .., "longitude": ..}`` bodies.
Both are parsed into one of the :data:`RideEvent` cases.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import AliasChoices, Field, TypeAdapter, ValidationError, field_validator, model_validator

from ridesync.exceptions import MalformedMessage
from ridesync.ingestion.normalize import safe_float, safe_str
from ridesync.models._base import RideBaseModel, RideTimestamp
from ridesync.models.ride import RideSnapshot

# Alternate spellings of the event discriminator seen from different backends.
_TYPE_ALIASES: dict[str, str] = {
    "MATCHED": "RIDE_ACCEPTED",
    "RIDE_MATCHED": "RIDE_ACCEPTED",
    "ACCEPTED": "RIDE_ACCEPTED",
    "STARTED": "RIDE_STARTED",
    "COMPLETED": "RIDE_COMPLETED",
    "CANCELLED": "RIDE_CANCELLED",
    "RIDE_CANCELED": "RIDE_CANCELLED",
    "LOCATION": "DRIVER_LOCATION",
    "LOCATION_UPDATE": "DRIVER_LOCATION",
}


class _RideEnvelope(RideBaseModel):
    """Common shape of ride lifecycle events."""

    ride: RideSnapshot = Field(default_factory=RideSnapshot)

    @model_validator(mode="before")
    @classmethod
    def _lift_top_level_ride(cls, values: Any) -> Any:
        # Some publishers flatten the ride fields into the envelope itself.
        if not isinstance(values, dict) or isinstance(values.get("ride"), dict):
            return values
        merged = dict(values)
        merged["ride"] = {k: v for k, v in values.items() if k not in ("type", "raw")}
        return merged

    @property
    def booking_id(self) -> str | None:
        return self.ride.booking_id


class Matched(_RideEnvelope):
    """A provider accepted the ride."""

    type: Literal["RIDE_ACCEPTED"] = "RIDE_ACCEPTED"


class Started(_RideEnvelope):
    """The trip began (verification code accepted)."""

    type: Literal["RIDE_STARTED"] = "RIDE_STARTED"


class Completed(_RideEnvelope):
    """The trip finished."""

    type: Literal["RIDE_COMPLETED"] = "RIDE_COMPLETED"


class Cancelled(_RideEnvelope):
    """Either party (or the server) cancelled the ride."""

    type: Literal["RIDE_CANCELLED"] = "RIDE_CANCELLED"


class LocationUpdate(RideBaseModel):
    """Counterpart position report."""

    type: Literal["DRIVER_LOCATION"] = "DRIVER_LOCATION"
    lat: float = Field(validation_alias=AliasChoices("latitude", "lat"))
    lng: float = Field(validation_alias=AliasChoices("longitude", "lng", "lon"))
    heading: float | None = None
    speed: float | None = None
    driver_id: str | None = None
    booking_id: str | None = Field(default=None, validation_alias=AliasChoices("bookingId", "rideId", "booking_id"))
    timestamp: RideTimestamp = None

    @field_validator("lat", "lng", "heading", "speed", mode="before")
    @classmethod
    def _coerce_floats(cls, value: Any) -> Any:
        parsed = safe_float(value)
        return value if parsed is None else parsed

    @field_validator("driver_id", "booking_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> str | None:
        return safe_str(value)


RideEvent = Annotated[
    Matched | Started | Completed | Cancelled | LocationUpdate,
    Field(discriminator="type"),
]
"""Every event kind the engine reacts to."""

_RIDE_EVENT_ADAPTER: TypeAdapter[Matched | Started | Completed | Cancelled | LocationUpdate] = TypeAdapter(RideEvent)


class ChatMessage(RideBaseModel):
    """One chat line exchanged on a ride."""

    ride_id: str | None = Field(default=None, validation_alias=AliasChoices("rideId", "bookingId", "ride_id"))
    sender_id: str | None = None
    sender_name: str | None = None
    sender_type: str | None = None
    message: str = ""
    client_message_id: str | None = None
    timestamp: RideTimestamp = None

    @field_validator("ride_id", "sender_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> str | None:
        return safe_str(value)


def parse_ride_event(data: Any, *, destination: str = "") -> Matched | Started | Completed | Cancelled | LocationUpdate:
    """Parse a decoded ride-updates payload into its event case.

    Raises
    ------
    MalformedMessage
        When the payload is not an object, has an unknown ``type``, or
        fails validation.
    """
    if not isinstance(data, dict):
        raise MalformedMessage("Event payload is not an object", destination=destination)
    raw_type = data.get("type")
    if not isinstance(raw_type, str) or not raw_type.strip():
        raise MalformedMessage("Event payload has no type", destination=destination)
    normalized = raw_type.strip().upper()
    normalized = _TYPE_ALIASES.get(normalized, normalized)
    try:
        return _RIDE_EVENT_ADAPTER.validate_python({**data, "type": normalized})
    except ValidationError as exc:
        raise MalformedMessage(f"Invalid {normalized} event: {exc.error_count()} error(s)", destination=destination) from exc


def parse_location_message(data: Any, *, destination: str = "") -> LocationUpdate:
    """Parse a counterpart-location topic payload (``type`` is optional there)."""
    if not isinstance(data, dict):
        raise MalformedMessage("Location payload is not an object", destination=destination)
    try:
        return LocationUpdate.model_validate({**data, "type": "DRIVER_LOCATION"})
    except ValidationError as exc:
        raise MalformedMessage(f"Invalid location payload: {exc.error_count()} error(s)", destination=destination) from exc


def parse_chat_message(data: Any, *, destination: str = "") -> ChatMessage:
    if not isinstance(data, dict):
        raise MalformedMessage("Chat payload is not an object", destination=destination)
    try:
        return ChatMessage.model_validate(data)
    except ValidationError as exc:
        raise MalformedMessage(f"Invalid chat payload: {exc.error_count()} error(s)", destination=destination) from exc
