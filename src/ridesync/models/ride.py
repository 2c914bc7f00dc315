"""Ride resource models."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from ridesync.config import Role
from ridesync.ingestion.normalize import safe_float, safe_str
from ridesync.models._base import RideBaseModel, RideEnum, RideTimestamp


class RidePhase(StrEnum):
    """Client-side ride phase driven by the state machine."""

    SEARCH = "search"
    QUOTING = "quoting"
    BOOKING = "booking"
    TRACKING = "tracking"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RidePhase.COMPLETED, RidePhase.CANCELLED)

    @property
    def has_session(self) -> bool:
        """Whether a RideSession exists in this phase."""
        return self in (RidePhase.BOOKING, RidePhase.TRACKING, RidePhase.IN_PROGRESS)


class RideStatus(RideEnum):
    """Status values reported by the ride resource API."""

    PENDING = "PENDING"
    REQUESTED = "REQUESTED"
    SEARCHING = "SEARCHING"
    ACCEPTED = "ACCEPTED"
    ARRIVED = "ARRIVED"
    STARTED = "STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    ONGOING = "ONGOING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"

    @property
    def phase(self) -> RidePhase | None:
        """Map the server status onto a client phase (``None`` when unknown)."""
        return _STATUS_PHASES.get(self)

    @property
    def is_terminal(self) -> bool:
        return self in (RideStatus.COMPLETED, RideStatus.CANCELLED)


_STATUS_PHASES: dict[RideStatus, RidePhase] = {
    RideStatus.PENDING: RidePhase.BOOKING,
    RideStatus.REQUESTED: RidePhase.BOOKING,
    RideStatus.SEARCHING: RidePhase.BOOKING,
    RideStatus.ACCEPTED: RidePhase.TRACKING,
    RideStatus.ARRIVED: RidePhase.TRACKING,
    RideStatus.STARTED: RidePhase.IN_PROGRESS,
    RideStatus.IN_PROGRESS: RidePhase.IN_PROGRESS,
    RideStatus.ONGOING: RidePhase.IN_PROGRESS,
    RideStatus.COMPLETED: RidePhase.COMPLETED,
    RideStatus.CANCELLED: RidePhase.CANCELLED,
}


class Coordinates(BaseModel):
    """A WGS84 position."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    lat: float = Field(validation_alias=AliasChoices("lat", "latitude"), ge=-90.0, le=90.0)
    lng: float = Field(validation_alias=AliasChoices("lng", "longitude", "lon"), ge=-180.0, le=180.0)

    @field_validator("lat", "lng", mode="before")
    @classmethod
    def _coerce(cls, value: Any) -> Any:
        parsed = safe_float(value)
        return value if parsed is None else parsed

    @classmethod
    def from_pair(cls, lat: Any, lng: Any) -> Coordinates | None:
        """Build coordinates when both parts parse, else ``None``."""
        lat_f = safe_float(lat)
        lng_f = safe_float(lng)
        if lat_f is None or lng_f is None:
            return None
        if not (-90.0 <= lat_f <= 90.0 and -180.0 <= lng_f <= 180.0):
            return None
        return cls(lat=lat_f, lng=lng_f)

    def as_tuple(self) -> tuple[float, float]:
        return (self.lat, self.lng)


class CounterpartInfo(BaseModel):
    """Display details of the other party."""

    model_config = ConfigDict(frozen=True)

    name: str | None = None
    phone: str | None = None
    vehicle_type: str | None = None
    vehicle_number: str | None = None
    rating: float | None = None


class RideSnapshot(RideBaseModel):
    """A (possibly partial) snapshot of the ride resource.

    Pushed events embed partial snapshots; ``GET /rides/{id}`` returns a
    full one. Absent fields are ``None`` and never mean "clear".
    """

    booking_id: str | None = Field(default=None, validation_alias=AliasChoices("bookingId", "booking_id", "rideId", "id"))
    status: RideStatus | None = None
    customer_id: str | None = None
    driver_id: str | None = Field(default=None, validation_alias=AliasChoices("driverId", "driver_id", "riderId"))
    pickup_location: str | None = None
    drop_location: str | None = None
    pickup_lat: float | None = Field(default=None, validation_alias=AliasChoices("pickupLat", "pickupLatitude", "pickup_lat"))
    pickup_lng: float | None = Field(default=None, validation_alias=AliasChoices("pickupLng", "pickupLongitude", "pickup_lng"))
    drop_lat: float | None = Field(default=None, validation_alias=AliasChoices("dropLat", "dropLatitude", "drop_lat"))
    drop_lng: float | None = Field(default=None, validation_alias=AliasChoices("dropLng", "dropLongitude", "drop_lng"))
    driver_lat: float | None = None
    driver_lng: float | None = None
    fare: float | None = None
    vehicle_type: str | None = None
    verification_code: str | None = Field(
        default=None,
        validation_alias=AliasChoices("otp", "verificationCode", "verification_code"),
    )
    driver_name: str | None = None
    driver_phone: str | None = None
    vehicle_number: str | None = None
    driver_rating: float | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    updated_at: RideTimestamp = Field(default=None, validation_alias=AliasChoices("updatedAt", "updated_at", "timestamp"))

    @model_validator(mode="before")
    @classmethod
    def _flatten_driver_location(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        nested = values.get("driverLocation")
        if isinstance(nested, dict) and ("driverLat" not in values or "driverLng" not in values):
            merged = dict(values)
            merged.setdefault("driverLat", nested.get("lat", nested.get("latitude")))
            merged.setdefault("driverLng", nested.get("lng", nested.get("longitude")))
            merged.setdefault("raw", values)
            return merged
        return values

    @field_validator(
        "pickup_lat", "pickup_lng", "drop_lat", "drop_lng", "driver_lat", "driver_lng", "fare", "driver_rating",
        mode="before",
    )
    @classmethod
    def _coerce_floats(cls, value: Any) -> float | None:
        return safe_float(value)

    @field_validator("booking_id", "customer_id", "driver_id", "verification_code", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> str | None:
        return safe_str(value)

    @property
    def phase(self) -> RidePhase | None:
        return self.status.phase if self.status is not None else None

    @property
    def pickup(self) -> Coordinates | None:
        return Coordinates.from_pair(self.pickup_lat, self.pickup_lng)

    @property
    def drop(self) -> Coordinates | None:
        return Coordinates.from_pair(self.drop_lat, self.drop_lng)

    @property
    def driver_location(self) -> Coordinates | None:
        return Coordinates.from_pair(self.driver_lat, self.driver_lng)

    def counterpart_id(self, role: Role) -> str | None:
        return self.driver_id if role == Role.REQUESTER else self.customer_id

    def counterpart_display(self, role: Role) -> CounterpartInfo | None:
        if role == Role.REQUESTER:
            info = CounterpartInfo(
                name=self.driver_name,
                phone=self.driver_phone,
                vehicle_type=self.vehicle_type,
                vehicle_number=self.vehicle_number,
                rating=self.driver_rating,
            )
        else:
            info = CounterpartInfo(name=self.customer_name, phone=self.customer_phone)
        if not info.model_dump(exclude_none=True):
            return None
        return info


class FareQuote(RideBaseModel):
    """One priced option returned by a quote request."""

    vehicle_type: str
    fare: float
    eta_minutes: float | None = Field(default=None, validation_alias=AliasChoices("etaMinutes", "eta", "eta_minutes"))
    distance_km: float | None = Field(default=None, validation_alias=AliasChoices("distanceKm", "distance", "distance_km"))
