from __future__ import annotations

import asyncio
import copy
import itertools
import json
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import pytest

from ridesync._mqtt import LinkSubscription
from ridesync.config import RideSyncConfig, Role
from ridesync.exceptions import HttpError, TransportError


@dataclass
class FakeLink:
    """In-memory broker link."""

    connected: bool = False
    fail_connects: int = 0
    connect_calls: int = 0
    connect_gate: asyncio.Event | None = None
    subscriptions: dict[int, tuple[str, Callable[[bytes], None]]] = field(default_factory=dict)
    subscribe_log: list[str] = field(default_factory=list)
    published: list[tuple[str, Any]] = field(default_factory=list)
    _on_lost: Callable[[Exception], None] | None = None
    _tokens: Any = field(default_factory=lambda: itertools.count(1))

    def set_on_connection_lost(self, callback: Callable[[Exception], None] | None) -> None:
        self._on_lost = callback

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise TransportError("connection refused")
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False
        self.subscriptions.clear()

    def subscribe(self, destination: str, on_message: Callable[[bytes], None]) -> LinkSubscription:
        if not self.connected:
            raise TransportError("not connected")
        handle = LinkSubscription(destination=destination, token=next(self._tokens))
        self.subscriptions[handle.token] = (destination, on_message)
        self.subscribe_log.append(destination)
        return handle

    def unsubscribe(self, handle: LinkSubscription) -> None:
        self.subscriptions.pop(handle.token, None)

    def publish(self, destination: str, payload: bytes) -> None:
        if not self.connected:
            raise TransportError("not connected")
        self.published.append((destination, json.loads(payload)))

    def destinations(self) -> list[str]:
        return sorted(dest for dest, _ in self.subscriptions.values())

    def deliver(self, destination: str, payload: Mapping[str, Any] | bytes) -> int:
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        delivered = 0
        for dest, callback in list(self.subscriptions.values()):
            if dest == destination:
                callback(body)
                delivered += 1
        return delivered

    def drop(self) -> None:
        """Simulate the broker dropping the link."""
        self.connected = False
        self.subscriptions.clear()
        if self._on_lost is not None:
            self._on_lost(TransportError("link dropped"))


@dataclass
class FakeRideBackend:
    """Ride resource API double implementing the Transport protocol."""

    rides: dict[str, dict[str, Any]] = field(default_factory=dict)
    calls: list[tuple[str, str, Any]] = field(default_factory=list)
    errors: dict[tuple[str, str], HttpError] = field(default_factory=dict)
    # Queued one-shot replies per (method, path); exceptions are raised.
    scripted: dict[tuple[str, str], list[Any]] = field(default_factory=dict)
    # Fields hidden from GET replies until the n-th fetch of that ride.
    withhold_code_until: dict[str, int] = field(default_factory=dict)
    next_id: int = 100

    def fetches(self, booking_id: str) -> int:
        path = f"/rides/{booking_id}"
        return sum(1 for method, p, _ in self.calls if method == "GET" and p == path)

    def posted(self, path: str) -> list[Any]:
        return [payload for method, p, payload in self.calls if method == "POST" and p == path]

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        payload: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        self.calls.append((method, path, dict(payload) if payload is not None else dict(params or {})))
        key = (method, path)
        if key in self.errors:
            raise self.errors[key]
        queue = self.scripted.get(key)
        if queue:
            reply = queue.pop(0)
            if isinstance(reply, Exception):
                raise reply
            return reply

        parts = path.strip("/").split("/")
        if method == "POST" and path == "/rides/quote":
            return {"quotes": [{"vehicleType": "bike", "fare": 42.5, "etaMinutes": 4}]}
        if method == "POST" and path == "/rides/book":
            booking_id = f"B{self.next_id}"
            self.next_id += 1
            body = dict(payload or {})
            ride = {"bookingId": booking_id, "status": "REQUESTED", **body, "otp": "4321"}
            self.rides[booking_id] = ride
            reply = {k: v for k, v in ride.items() if k != "otp"}
            return {"success": True, "ride": reply}
        if method == "GET" and path == "/rides/nearby":
            return [ride for ride in self.rides.values() if ride.get("status") == "REQUESTED"]
        if len(parts) >= 2 and parts[0] == "rides" and parts[1] in self.rides:
            ride = self.rides[parts[1]]
            if method == "GET" and len(parts) == 2:
                reply = copy.deepcopy(ride)
                gate = self.withhold_code_until.get(parts[1], 0)
                if self.fetches(parts[1]) < gate:
                    reply.pop("otp", None)
                return reply
            action = parts[2] if len(parts) > 2 else ""
            if action == "accept":
                if ride.get("driverId"):
                    raise HttpError(
                        "HTTP 400",
                        status_code=400,
                        endpoint=path,
                        body='{"message": "Ride already accepted"}',
                    )
                ride.update(status="ACCEPTED", driverId=(payload or {}).get("driverId"))
                return {"ride": copy.deepcopy(ride)}
            if action == "verify-otp":
                if (payload or {}).get("otp") != ride.get("otp"):
                    raise HttpError("HTTP 400", status_code=400, endpoint=path, body='{"message": "Invalid OTP"}')
                return {"success": True}
            if action in {"start", "complete", "cancel"}:
                ride["status"] = {"start": "STARTED", "complete": "COMPLETED", "cancel": "CANCELLED"}[action]
                return {"success": True}
            if action == "rate":
                return {"success": True}
        if method == "POST" and path == "/emergency/sos":
            return {"success": True}
        raise HttpError("HTTP 404", status_code=404, endpoint=path, body='{"message": "not found"}')


def fast_config(participant_id: str = "cust-1", role: Role = Role.REQUESTER, **overrides: Any) -> RideSyncConfig:
    values: dict[str, Any] = {
        "participant_id": participant_id,
        "role": role,
        "connect_timeout": 0.2,
        "reconnect_base_delay": 0.01,
        "reconnect_max_delay": 0.05,
        "reconnect_alert_after": 3,
        "poll_interval": 0.02,
        "staleness_threshold": 0.05,
        "match_poll_interval": 0.02,
        "stale_ceiling": 60.0,
        "hydration_delay": 0.01,
        "animation_duration": 0.04,
        "animation_frame_interval": 0.01,
        "sos_countdown": 0.02,
    }
    values.update(overrides)
    return RideSyncConfig(**values)


async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def link() -> FakeLink:
    return FakeLink()


@pytest.fixture
def backend() -> FakeRideBackend:
    return FakeRideBackend()


@pytest.fixture
def config_factory() -> Callable[..., RideSyncConfig]:
    return fast_config


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    return _eventually
