"""Emergency (SOS) endpoint."""

from __future__ import annotations

from typing import Any

from ridesync._api._common import send_command
from ridesync._constants import SOS_PATH
from ridesync._transport import Transport
from ridesync.models.ride import Coordinates


async def send_sos(
    transport: Transport,
    user_id: str,
    *,
    location: Coordinates | None = None,
    booking_id: str | None = None,
) -> None:
    body: dict[str, Any] = {
        "userId": user_id,
        "location": {"lat": location.lat, "lng": location.lng} if location is not None else None,
        "rideId": booking_id,
    }
    await send_command(transport, "sos", "POST", SOS_PATH, payload=body)
