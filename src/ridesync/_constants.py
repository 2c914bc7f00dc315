"""Protocol constants shared across modules."""

from __future__ import annotations

from ridesync.config import Role

# Broker destinations (joined with RideSyncConfig.topic_prefix).
RIDE_UPDATES_TOPIC = "ride-updates/{participant_id}"
DRIVER_LOCATION_TOPIC = "driver-location/{key}"
RIDE_REQUESTS_TOPIC = "ride-requests/{provider_id}"
CHAT_TOPIC = "chat/{booking_id}"

# Outbound broker destinations.
SEND_DRIVER_LOCATION = "app/driver-location"
SEND_CHAT = "app/chat"

# Ride resource API.
RIDE_PATH = "/rides/{booking_id}"
BOOK_PATH = "/rides/book"
QUOTE_PATH = "/rides/quote"
ACCEPT_PATH = "/rides/{booking_id}/accept"
VERIFY_CODE_PATH = "/rides/{booking_id}/verify-otp"
START_PATH = "/rides/{booking_id}/start"
COMPLETE_PATH = "/rides/{booking_id}/complete"
CANCEL_PATH = "/rides/{booking_id}/cancel"
RATE_PATH = "/rides/{booking_id}/rate"
NEARBY_PATH = "/rides/nearby"
SOS_PATH = "/emergency/sos"

#: Persistence key holding the active booking id, per role.
ACTIVE_RIDE_KEYS: dict[Role, str] = {
    Role.REQUESTER: "active_ride_requester",
    Role.PROVIDER: "active_ride_provider",
}

#: Hydration attempts used when a booking poll (not a push) found the match.
MATCH_POLL_HYDRATION_ATTEMPTS = 5

#: Default search radius (km) for provider nearby-ride listing.
DEFAULT_NEARBY_RADIUS_KM = 10.0


def topic(prefix: str, template: str, **values: str) -> str:
    """Render a broker destination, applying the configured prefix."""
    path = template.format(**values)
    if not prefix:
        return path
    return f"{prefix.rstrip('/')}/{path}"
