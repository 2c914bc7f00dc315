"""Location sample model consumed by the smoother."""

from __future__ import annotations

import time
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from ridesync.models.events import LocationUpdate
from ridesync.models.ride import Coordinates


class LocationSource(StrEnum):
    PUSH = "push"
    POLL = "poll"
    LOCAL = "local"


class LocationSample(BaseModel):
    """One position report, consumed in arrival order.

    Parameters
    ----------
    lat, lng : float
        Position in degrees.
    timestamp : float
        Epoch seconds the sample was produced (or received, when the
        publisher did not stamp it).
    source : LocationSource
        Which path delivered the sample.
    heading, speed : float or None
        Optional course (degrees) and speed.
    """

    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)
    timestamp: float = Field(default_factory=time.time)
    source: LocationSource = LocationSource.PUSH
    heading: float | None = None
    speed: float | None = None

    @property
    def position(self) -> Coordinates:
        return Coordinates(lat=self.lat, lng=self.lng)

    @classmethod
    def from_update(cls, update: LocationUpdate) -> LocationSample:
        stamp = update.timestamp.timestamp() if update.timestamp is not None else time.time()
        return cls(
            lat=update.lat,
            lng=update.lng,
            timestamp=stamp,
            source=LocationSource.PUSH,
            heading=update.heading,
            speed=update.speed,
        )

    @classmethod
    def from_coordinates(cls, coords: Coordinates, source: LocationSource) -> LocationSample:
        return cls(lat=coords.lat, lng=coords.lng, source=source)
