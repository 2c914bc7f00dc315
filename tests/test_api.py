from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from ridesync._api import rides
from ridesync._api._common import error_message, send_command
from ridesync._transport import HttpTransport
from ridesync.exceptions import CommandRejected, HttpError
from ridesync.models.ride import Coordinates


class _ReplyTransport:
    def __init__(self, *replies: Any) -> None:
        self._replies = list(replies)
        self.requests: list[tuple[str, str, Any]] = []

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        payload: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        self.requests.append((method, path, payload if payload is not None else params))
        reply = self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def test_error_message_prefers_server_text() -> None:
    assert error_message('{"message": " Invalid OTP "}', "fallback") == "Invalid OTP"
    assert error_message('{"error": "Ride not found"}', "fallback") == "Ride not found"
    assert error_message("<html>", "fallback") == "fallback"
    assert error_message("", "fallback") == "fallback"


@pytest.mark.asyncio
async def test_http_status_becomes_command_rejected() -> None:
    transport = _ReplyTransport(HttpError("HTTP 409", status_code=409, body='{"message": "Ride already cancelled"}'))

    with pytest.raises(CommandRejected) as exc_info:
        await send_command(transport, "cancel", "POST", "/rides/B1/cancel")

    exc = exc_info.value
    assert str(exc) == "Ride already cancelled"
    assert exc.command == "cancel"
    assert exc.status_code == 409
    assert exc.endpoint == "/rides/B1/cancel"


@pytest.mark.asyncio
async def test_success_false_envelope_is_rejected() -> None:
    transport = _ReplyTransport({"success": False, "error": "Driver unavailable"})

    with pytest.raises(CommandRejected, match="Driver unavailable"):
        await send_command(transport, "book", "POST", "/rides/book")


@pytest.mark.asyncio
async def test_network_failure_stays_http_error() -> None:
    transport = _ReplyTransport(HttpError("Request to /rides/B1/start failed"))

    with pytest.raises(HttpError) as exc_info:
        await send_command(transport, "start", "POST", "/rides/B1/start")

    assert not isinstance(exc_info.value, CommandRejected)


@pytest.mark.asyncio
async def test_fetch_ride_fills_missing_booking_id() -> None:
    transport = _ReplyTransport({"ride": {"status": "STARTED", "otp": "1234"}})

    snapshot = await rides.fetch_ride(transport, "B1")

    assert snapshot.booking_id == "B1"
    assert snapshot.verification_code == "1234"
    assert transport.requests == [("GET", "/rides/B1", None)]


@pytest.mark.asyncio
async def test_book_ride_requires_booking_id() -> None:
    transport = _ReplyTransport({"success": True, "ride": {"status": "REQUESTED"}})

    with pytest.raises(CommandRejected, match="no booking id"):
        await rides.book_ride(transport, "cust-1", Coordinates(lat=1.0, lng=2.0), Coordinates(lat=3.0, lng=4.0))


@pytest.mark.asyncio
async def test_book_ride_sends_details() -> None:
    transport = _ReplyTransport({"ride": {"bookingId": "B1", "status": "REQUESTED"}})

    snapshot = await rides.book_ride(
        transport,
        "cust-1",
        Coordinates(lat=1.0, lng=2.0),
        Coordinates(lat=3.0, lng=4.0),
        details={"vehicleType": "bike", "paymentMethod": None},
    )

    assert snapshot.booking_id == "B1"
    assert transport.requests[0][2] == {
        "customerId": "cust-1",
        "pickupLat": 1.0,
        "pickupLng": 2.0,
        "dropLat": 3.0,
        "dropLng": 4.0,
        "vehicleType": "bike",
    }


@pytest.mark.asyncio
async def test_quotes_skip_invalid_entries() -> None:
    transport = _ReplyTransport([{"vehicleType": "bike", "fare": 40}, {"fare": "n/a"}])

    quotes = await rides.request_quotes(transport, Coordinates(lat=1.0, lng=2.0), Coordinates(lat=3.0, lng=4.0))

    assert [q.vehicle_type for q in quotes] == ["bike"]


@pytest.mark.asyncio
async def test_accept_recovery_only_for_already_accepted() -> None:
    rejected = HttpError("HTTP 400", status_code=400, body='{"message": "Ride not available"}')
    transport = _ReplyTransport(rejected)

    with pytest.raises(CommandRejected, match="Ride not available"):
        await rides.accept_ride(transport, "B1", "drv-1")
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_http_transport_round_trip() -> None:
    seen: dict[str, Any] = {}

    async def get_ride(request: web.Request) -> web.Response:
        seen["auth"] = request.headers.get("Authorization")
        return web.json_response({"ride": {"bookingId": request.match_info["booking_id"], "status": "ACCEPTED"}})

    async def cancel(request: web.Request) -> web.Response:
        seen["cancel_body"] = await request.json()
        return web.json_response({"message": "Ride already completed"}, status=409)

    async def nearby(request: web.Request) -> web.Response:
        seen["query"] = dict(request.query)
        return web.Response(text="")

    app = web.Application()
    app.router.add_get("/api/rides/nearby", nearby)
    app.router.add_get("/api/rides/{booking_id}", get_ride)
    app.router.add_post("/api/rides/{booking_id}/cancel", cancel)

    async with TestServer(app) as server, aiohttp.ClientSession() as http:
        transport = HttpTransport(str(server.make_url("/api")), http, timeout=5.0)
        transport.set_bearer_token("tok")

        snapshot = await rides.fetch_ride(transport, "B1")
        assert snapshot.booking_id == "B1"
        assert seen["auth"] == "Bearer tok"

        with pytest.raises(CommandRejected) as exc_info:
            await send_command(transport, "cancel", "POST", "/rides/B1/cancel", payload={"reason": "late"})
        assert exc_info.value.status_code == 409
        assert str(exc_info.value) == "Ride already completed"
        assert seen["cancel_body"] == {"reason": "late"}

        assert await transport.request_json("GET", "/rides/nearby", params={"radius": 5, "type": None}) is None
        assert seen["query"] == {"radius": "5"}
