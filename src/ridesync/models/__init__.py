"""Data models for ride payloads, events and engine output."""

from ridesync.models._base import RideBaseModel, RideEnum, RideTimestamp, parse_ride_timestamp
from ridesync.models.events import (
    Cancelled,
    ChatMessage,
    Completed,
    LocationUpdate,
    Matched,
    RideEvent,
    Started,
    parse_chat_message,
    parse_location_message,
    parse_ride_event,
)
from ridesync.models.location import LocationSample, LocationSource
from ridesync.models.notification import Notification, NotificationLevel
from ridesync.models.ride import Coordinates, CounterpartInfo, FareQuote, RidePhase, RideSnapshot, RideStatus

__all__ = [
    "Cancelled",
    "ChatMessage",
    "Completed",
    "Coordinates",
    "CounterpartInfo",
    "FareQuote",
    "LocationSample",
    "LocationSource",
    "LocationUpdate",
    "Matched",
    "Notification",
    "NotificationLevel",
    "RideBaseModel",
    "RideEnum",
    "RideEvent",
    "RidePhase",
    "RideSnapshot",
    "RideStatus",
    "RideTimestamp",
    "Started",
    "parse_chat_message",
    "parse_location_message",
    "parse_ride_event",
    "parse_ride_timestamp",
]
