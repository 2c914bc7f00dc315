"""Ride resource endpoints.

Endpoints:
  - GET  /rides/{id}
  - POST /rides/quote
  - POST /rides/book
  - POST /rides/{id}/accept
  - POST /rides/{id}/verify-otp
  - POST /rides/{id}/start | /complete | /cancel | /rate
  - GET  /rides/nearby
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from ridesync._api._common import parse_snapshot, send_command
from ridesync._constants import (
    ACCEPT_PATH,
    BOOK_PATH,
    CANCEL_PATH,
    COMPLETE_PATH,
    NEARBY_PATH,
    QUOTE_PATH,
    RATE_PATH,
    RIDE_PATH,
    START_PATH,
    VERIFY_CODE_PATH,
)
from ridesync._transport import Transport
from ridesync.exceptions import CommandRejected, HttpError
from ridesync.models.ride import Coordinates, FareQuote, RideSnapshot

_logger = logging.getLogger(__name__)

_ALREADY_ACCEPTED = re.compile(r"already accepted", re.IGNORECASE)


async def fetch_ride(transport: Transport, booking_id: str) -> RideSnapshot:
    """Fetch the authoritative ride snapshot."""
    path = RIDE_PATH.format(booking_id=booking_id)
    payload = await transport.request_json("GET", path)
    snapshot = parse_snapshot(payload, endpoint=path)
    if snapshot.booking_id is None:
        snapshot = snapshot.model_copy(update={"booking_id": booking_id})
    return snapshot


async def request_quotes(
    transport: Transport,
    pickup: Coordinates,
    drop: Coordinates,
    *,
    vehicle_type: str | None = None,
) -> list[FareQuote]:
    """Ask the server to price a trip; an empty list is treated as rejection."""
    body: dict[str, Any] = {
        "pickupLat": pickup.lat,
        "pickupLng": pickup.lng,
        "dropLat": drop.lat,
        "dropLng": drop.lng,
    }
    if vehicle_type:
        body["vehicleType"] = vehicle_type
    result = await send_command(transport, "quote", "POST", QUOTE_PATH, payload=body)
    items = result.get("quotes") if isinstance(result, dict) else result
    if not isinstance(items, list):
        raise CommandRejected("Quote reply has no quotes", command="quote", endpoint=QUOTE_PATH)
    quotes: list[FareQuote] = []
    for item in items:
        try:
            quotes.append(FareQuote.model_validate(item))
        except ValidationError:
            _logger.debug("Skipping invalid quote entry", exc_info=True)
    if not quotes:
        raise CommandRejected("No vehicles available for this trip", command="quote", endpoint=QUOTE_PATH)
    return quotes


async def book_ride(
    transport: Transport,
    customer_id: str,
    pickup: Coordinates,
    drop: Coordinates,
    *,
    details: Mapping[str, Any] | None = None,
) -> RideSnapshot:
    """Create a ride; returns the initial snapshot carrying the booking id."""
    body: dict[str, Any] = {
        "customerId": customer_id,
        "pickupLat": pickup.lat,
        "pickupLng": pickup.lng,
        "dropLat": drop.lat,
        "dropLng": drop.lng,
    }
    if details:
        body.update({k: v for k, v in details.items() if v is not None})
    result = await send_command(transport, "book", "POST", BOOK_PATH, payload=body)
    snapshot = parse_snapshot(result, endpoint=BOOK_PATH)
    if not snapshot.booking_id:
        raise CommandRejected("Booking reply has no booking id", command="book", endpoint=BOOK_PATH)
    return snapshot


async def accept_ride(transport: Transport, booking_id: str, provider_id: str) -> RideSnapshot:
    """Accept a ride as provider.

    A rejection saying the ride is "already accepted" (a retried accept
    that the server already applied) is recovered by fetching the ride.
    """
    path = ACCEPT_PATH.format(booking_id=booking_id)
    try:
        result = await send_command(transport, "accept", "POST", path, payload={"driverId": provider_id})
    except CommandRejected as exc:
        if exc.status_code != 400 or not _ALREADY_ACCEPTED.search(str(exc)):
            raise
        _logger.debug("Ride %s already accepted; fetching details", booking_id)
        snapshot = await fetch_ride(transport, booking_id)
        if snapshot.driver_id and snapshot.driver_id != provider_id:
            raise
        return snapshot
    snapshot = parse_snapshot(result, endpoint=path) if isinstance(result, dict) else RideSnapshot()
    if snapshot.booking_id is None:
        snapshot = snapshot.model_copy(update={"booking_id": booking_id})
    return snapshot


async def verify_code(transport: Transport, booking_id: str, code: str) -> None:
    """Check the rider's verification code; raises CommandRejected on mismatch."""
    path = VERIFY_CODE_PATH.format(booking_id=booking_id)
    await send_command(transport, "verify_code", "POST", path, payload={"otp": code})


async def start_ride(transport: Transport, booking_id: str) -> None:
    await send_command(transport, "start", "POST", START_PATH.format(booking_id=booking_id))


async def complete_ride(transport: Transport, booking_id: str) -> None:
    await send_command(transport, "complete", "POST", COMPLETE_PATH.format(booking_id=booking_id))


async def cancel_ride(transport: Transport, booking_id: str) -> None:
    await send_command(transport, "cancel", "POST", CANCEL_PATH.format(booking_id=booking_id))


async def rate_ride(transport: Transport, booking_id: str, stars: int, comment: str | None = None) -> None:
    body: dict[str, Any] = {"rating": stars}
    if comment:
        body["comment"] = comment
    await send_command(transport, "rate", "POST", RATE_PATH.format(booking_id=booking_id), payload=body)


async def fetch_nearby_rides(
    transport: Transport,
    location: Coordinates,
    radius_km: float,
    *,
    filters: Mapping[str, Any] | None = None,
) -> list[RideSnapshot]:
    """List open ride requests around *location* (provider side)."""
    params: dict[str, Any] = {
        "latitude": location.lat,
        "longitude": location.lng,
        "radius": radius_km,
    }
    if filters:
        params.update(filters)
    payload = await transport.request_json("GET", NEARBY_PATH, params=params)
    if not isinstance(payload, list):
        raise HttpError(f"{NEARBY_PATH} returned a non-list payload", endpoint=NEARBY_PATH)
    rides: list[RideSnapshot] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        try:
            rides.append(RideSnapshot.model_validate(item))
        except ValidationError:
            _logger.debug("Skipping invalid nearby ride entry", exc_info=True)
    return rides
