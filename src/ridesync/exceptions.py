"""Custom exception hierarchy for ridesync."""

from __future__ import annotations


class RideSyncError(Exception):
    """Base exception for all ridesync errors."""


class ConfigError(RideSyncError):
    """Invalid or missing configuration."""


class TransportError(RideSyncError):
    """Broker link failure (connect refused, link dropped, publish failed).

    Recovered locally by reconnect-with-backoff and operation replay; the
    engine never surfaces it directly to the user.
    """


class TransportTimeout(TransportError):
    """A caller waited too long for an in-flight connect attempt."""


class HttpError(RideSyncError):
    """Ride API failure (network, non-2xx, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
        body: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        self.body = body
        super().__init__(message)


class CommandRejected(RideSyncError):
    """Server refused an explicit user-initiated command.

    The state machine stays where it was; callers surface this as an
    actionable notification.
    """

    def __init__(
        self,
        message: str,
        *,
        command: str,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.command = command
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class StaleDataError(RideSyncError):
    """Expected data did not arrive before its deadline."""

    def __init__(self, message: str, *, booking_id: str = "", field: str = "") -> None:
        self.booking_id = booking_id
        self.field = field
        super().__init__(message)


class MalformedMessage(RideSyncError):
    """Push payload could not be decoded or does not match any event shape."""

    def __init__(self, message: str, *, destination: str = "") -> None:
        self.destination = destination
        super().__init__(message)


class RideStateError(RideSyncError):
    """Local command is not valid in the current ride phase."""
