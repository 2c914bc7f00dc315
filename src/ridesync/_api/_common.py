"""Shared helpers for ride API endpoint modules.

This module centralizes the most repeated patterns:
- mapping HTTP failures of user commands to :class:`CommandRejected`
- unwrapping ``{"ride": {...}}`` / ``{"success": false}`` reply envelopes
- parsing ride snapshots with a consistent error

It is internal to ridesync and may change at any time.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from ridesync._transport import Transport
from ridesync.exceptions import CommandRejected, HttpError
from ridesync.models.ride import RideSnapshot

_logger = logging.getLogger(__name__)


def error_message(body: str, default: str) -> str:
    """Pull a human-readable message out of an error body."""
    if not body:
        return default
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        return default
    if isinstance(parsed, dict):
        for key in ("message", "error", "detail"):
            value = parsed.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return default


def unwrap_ride(payload: Any) -> Any:
    """Return the ride object from either ``{"ride": {...}}`` or a bare ride."""
    if isinstance(payload, dict) and isinstance(payload.get("ride"), dict):
        return payload["ride"]
    return payload


def parse_snapshot(payload: Any, *, endpoint: str) -> RideSnapshot:
    ride = unwrap_ride(payload)
    if not isinstance(ride, dict):
        raise HttpError(f"{endpoint} returned a non-object ride", endpoint=endpoint)
    try:
        return RideSnapshot.model_validate(ride)
    except ValidationError as exc:
        raise HttpError(f"{endpoint} returned an invalid ride: {exc.error_count()} error(s)", endpoint=endpoint) from exc


async def send_command(
    transport: Transport,
    command: str,
    method: str,
    path: str,
    *,
    payload: Mapping[str, Any] | None = None,
) -> Any:
    """Issue a user-initiated command.

    Raises
    ------
    CommandRejected
        The server answered with a 4xx/5xx, or with ``{"success": false}``.
    HttpError
        The server could not be reached or the reply was not JSON.
    """
    try:
        result = await transport.request_json(method, path, payload=payload)
    except HttpError as exc:
        if exc.status_code is None:
            raise
        message = error_message(exc.body, f"{command} failed (HTTP {exc.status_code})")
        _logger.debug("Command %s rejected status=%s message=%s", command, exc.status_code, message)
        raise CommandRejected(message, command=command, status_code=exc.status_code, endpoint=path) from exc

    if isinstance(result, dict) and result.get("success") is False:
        message = str(result.get("error") or result.get("message") or f"{command} failed")
        raise CommandRejected(message, command=command, endpoint=path)
    return result
