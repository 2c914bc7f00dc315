from __future__ import annotations

import asyncio
from typing import Any

import pytest

from ridesync.config import Role
from ridesync.connection import ConnectionState
from ridesync.engine import RideSyncEngine
from ridesync.exceptions import CommandRejected, HttpError, RideStateError
from ridesync.models.location import LocationSample, LocationSource
from ridesync.models.notification import Notification, NotificationLevel
from ridesync.models.ride import Coordinates, RidePhase
from ridesync.persistence import MemorySessionStore
from ridesync.state.machine import RideSession

PICKUP = Coordinates(lat=12.97, lng=77.59)
DROP = Coordinates(lat=12.93, lng=77.62)


class _Recorder:
    def __init__(self) -> None:
        self.phases: list[RidePhase] = []
        self.sessions: list[RideSession | None] = []
        self.notifications: list[Notification] = []
        self.locations: list[LocationSample] = []
        self.chat: list[Any] = []

    def state(self, phase: RidePhase, session: RideSession | None) -> None:
        self.phases.append(phase)
        self.sessions.append(session)

    def callbacks(self) -> dict[str, Any]:
        return {
            "on_state_change": self.state,
            "on_notification": self.notifications.append,
            "on_location": self.locations.append,
            "on_chat_message": self.chat.append,
        }


def _engine(config: Any, backend: Any, link: Any, store: MemorySessionStore, rec: _Recorder) -> RideSyncEngine:
    return RideSyncEngine(config, transport=backend, link=link, store=store, **rec.callbacks())


def _matched(booking_id: str, **ride: Any) -> dict[str, Any]:
    return {"type": "RIDE_ACCEPTED", "ride": {"bookingId": booking_id, "status": "ACCEPTED", **ride}}


@pytest.mark.asyncio
async def test_book_then_matched_without_code_hydrates_code(
    link: Any, backend: Any, config_factory: Any, eventually: Any
) -> None:
    store = MemorySessionStore()
    rec = _Recorder()
    # Keep the booking poll out of the way so only hydration fetches.
    config = config_factory(match_poll_interval=30.0)

    async with _engine(config, backend, link, store, rec) as engine:
        assert engine.phase == RidePhase.SEARCH
        session = await engine.book_ride(PICKUP, DROP)
        booking_id = session.booking_id
        assert engine.phase == RidePhase.BOOKING
        assert session.verification_code is None
        assert store.get("active_ride_requester") == booking_id

        backend.rides[booking_id]["status"] = "ACCEPTED"
        backend.withhold_code_until[booking_id] = 2
        assert link.deliver("ride-updates/cust-1", _matched(booking_id, driverId="drv-7", driverName="Ravi")) == 1

        assert engine.phase == RidePhase.TRACKING
        await eventually(lambda: engine.session is not None and engine.session.verification_code is not None)

        current = engine.session
        assert current is not None
        assert current.status == RidePhase.TRACKING
        assert current.verification_code == "4321"
        assert current.counterpart_id == "drv-7"
        assert current.counterpart_display is not None and current.counterpart_display.name == "Ravi"
        assert backend.fetches(booking_id) == 2
        assert f"driver-location/{booking_id}" in link.destinations()
        assert "driver-location/drv-7" in link.destinations()
        assert f"chat/{booking_id}" in link.destinations()
        assert rec.phases[:3] == [RidePhase.BOOKING, RidePhase.TRACKING, RidePhase.TRACKING]


@pytest.mark.asyncio
async def test_stale_poll_after_matched_does_not_regress(
    link: Any, backend: Any, config_factory: Any, eventually: Any
) -> None:
    rec = _Recorder()

    async with _engine(config_factory(), backend, link, MemorySessionStore(), rec) as engine:
        session = await engine.book_ride(PICKUP, DROP)
        booking_id = session.booking_id

        link.deliver("ride-updates/cust-1", _matched(booking_id, driverId="drv-7"))
        assert engine.phase == RidePhase.TRACKING
        fetched = backend.fetches(booking_id)

        # The server still reports REQUESTED; the poll must not move us back.
        await eventually(lambda: backend.fetches(booking_id) >= fetched + 2)

        assert engine.phase == RidePhase.TRACKING
        assert RidePhase.BOOKING not in rec.phases[1:]


@pytest.mark.asyncio
async def test_restart_mid_trip_enters_in_progress_directly(
    link: Any, backend: Any, config_factory: Any
) -> None:
    backend.rides["B5"] = {
        "bookingId": "B5",
        "status": "IN_PROGRESS",
        "driverId": "drv-2",
        "otp": "1111",
        "driverLat": 12.9,
        "driverLng": 77.6,
    }
    store = MemorySessionStore({"active_ride_requester": "B5"})
    rec = _Recorder()

    async with _engine(config_factory(), backend, link, store, rec) as engine:
        assert engine.phase == RidePhase.IN_PROGRESS
        session = engine.session
        assert session is not None
        assert session.booking_id == "B5"
        assert session.verification_code == "1111"
        assert rec.phases[0] == RidePhase.IN_PROGRESS
        assert not {RidePhase.SEARCH, RidePhase.QUOTING, RidePhase.BOOKING} & set(rec.phases)
        assert engine.counterpart_position == Coordinates(lat=12.9, lng=77.6)
        assert "driver-location/drv-2" in link.destinations()
        assert engine.poller.is_running


@pytest.mark.asyncio
async def test_restart_with_completed_ride_does_not_resume(
    link: Any, backend: Any, config_factory: Any
) -> None:
    backend.rides["B6"] = {"bookingId": "B6", "status": "COMPLETED"}
    store = MemorySessionStore({"active_ride_requester": "B6"})

    async with _engine(config_factory(), backend, link, store, _Recorder()) as engine:
        assert engine.phase == RidePhase.SEARCH
        assert engine.session is None
        assert store.get("active_ride_requester") is None
        assert not engine.poller.is_running


@pytest.mark.asyncio
async def test_disconnect_in_progress_falls_back_to_polling_for_position(
    link: Any, backend: Any, config_factory: Any, eventually: Any
) -> None:
    backend.rides["B5"] = {
        "bookingId": "B5",
        "status": "IN_PROGRESS",
        "driverId": "drv-2",
        "driverLat": 12.90,
        "driverLng": 77.60,
    }
    store = MemorySessionStore({"active_ride_requester": "B5"})
    rec = _Recorder()

    async with _engine(config_factory(), backend, link, store, rec) as engine:
        link.fail_connects = 1_000
        link.drop()
        assert engine.connection.state != ConnectionState.CONNECTED

        backend.rides["B5"].update(driverLat=12.95, driverLng=77.65)
        await eventually(lambda: engine.counterpart_position == Coordinates(lat=12.95, lng=77.65))
        assert any(sample.source == LocationSource.POLL for sample in rec.locations)

        backend.rides["B5"].update(driverLat=12.97, driverLng=77.67)
        await eventually(lambda: engine.counterpart_position == Coordinates(lat=12.97, lng=77.67))

        await eventually(lambda: not engine.realtime_available)
        assert any(n.level == NotificationLevel.WARNING and "Real-time" in n.message for n in rec.notifications)

        link.fail_connects = 0
        await eventually(lambda: engine.connection.is_connected)
        assert engine.realtime_available
        assert "ride-updates/cust-1" in link.destinations()
        assert engine.phase == RidePhase.IN_PROGRESS


@pytest.mark.asyncio
async def test_out_of_order_and_duplicate_events(link: Any, backend: Any, config_factory: Any) -> None:
    rec = _Recorder()
    store = MemorySessionStore()

    async with _engine(config_factory(), backend, link, store, rec) as engine:
        booking_id = (await engine.book_ride(PICKUP, DROP)).booking_id

        link.deliver("ride-updates/cust-1", {"type": "RIDE_STARTED", "ride": {"bookingId": booking_id}})
        link.deliver("ride-updates/cust-1", _matched(booking_id, otp="8080"))
        assert engine.phase == RidePhase.IN_PROGRESS
        session = engine.session
        assert session is not None
        assert session.verification_code == "8080"

        link.deliver("ride-updates/cust-1", {"type": "RIDE_COMPLETED", "ride": {"bookingId": booking_id}})
        link.deliver("ride-updates/cust-1", {"type": "RIDE_COMPLETED", "ride": {"bookingId": booking_id}})
        link.deliver("ride-updates/cust-1", {"type": "RIDE_CANCELLED", "ride": {"bookingId": booking_id}})

        assert engine.phase == RidePhase.COMPLETED
        assert engine.session is None
        assert [n.message for n in rec.notifications].count("Ride completed") == 1
        assert store.get("active_ride_requester") is None
        assert link.destinations() == ["ride-updates/cust-1"]
        assert not engine.poller.is_running

        last = engine.last_session
        assert last is not None and last.booking_id == booking_id
        await engine.rate_ride(5, "smooth ride")
        assert backend.posted(f"/rides/{booking_id}/rate") == [{"rating": 5, "comment": "smooth ride"}]


@pytest.mark.asyncio
async def test_cancel_is_optimistic_and_failure_only_notifies(
    link: Any, backend: Any, config_factory: Any
) -> None:
    rec = _Recorder()
    store = MemorySessionStore()

    async with _engine(config_factory(), backend, link, store, rec) as engine:
        booking_id = (await engine.book_ride(PICKUP, DROP)).booking_id
        backend.errors[("POST", f"/rides/{booking_id}/cancel")] = HttpError(
            "HTTP 500", status_code=500, endpoint="cancel", body='{"message": "server busy"}'
        )

        task = engine.cancel_ride()
        assert engine.phase == RidePhase.CANCELLED
        assert store.get("active_ride_requester") is None

        await task
        errors = [n for n in rec.notifications if n.level == NotificationLevel.ERROR]
        assert len(errors) == 1
        assert isinstance(errors[0].error, CommandRejected)
        assert "server busy" in errors[0].message
        assert engine.phase == RidePhase.CANCELLED

        with pytest.raises(RideStateError):
            engine.cancel_ride()


@pytest.mark.asyncio
async def test_cancel_reaches_server_when_engine_exits_right_after(
    link: Any, backend: Any, config_factory: Any
) -> None:
    rec = _Recorder()

    async with _engine(config_factory(), backend, link, MemorySessionStore(), rec) as engine:
        booking_id = (await engine.book_ride(PICKUP, DROP)).booking_id
        engine.cancel_ride()

    assert backend.posted(f"/rides/{booking_id}/cancel") == [{}]
    assert backend.rides[booking_id]["status"] == "CANCELLED"


@pytest.mark.asyncio
async def test_cancel_reaches_server_when_signing_out_right_after(
    link: Any, backend: Any, config_factory: Any
) -> None:
    rec = _Recorder()
    engine = _engine(config_factory(), backend, link, MemorySessionStore(), rec)
    await engine.start()
    booking_id = (await engine.book_ride(PICKUP, DROP)).booking_id

    engine.cancel_ride()
    await engine.sign_out()

    assert backend.posted(f"/rides/{booking_id}/cancel") == [{}]
    assert not link.connected


@pytest.mark.asyncio
async def test_dual_location_topics_deliver_each_report_once(
    link: Any, backend: Any, config_factory: Any
) -> None:
    rec = _Recorder()

    async with _engine(config_factory(match_poll_interval=30.0), backend, link, MemorySessionStore(), rec) as engine:
        booking_id = (await engine.book_ride(PICKUP, DROP)).booking_id
        link.deliver("ride-updates/cust-1", _matched(booking_id, driverId="drv-7"))

        report = {"latitude": 12.91, "longitude": 77.61, "driverId": "drv-7", "timestamp": 1_700_000_000_000}
        link.deliver(f"driver-location/{booking_id}", report)
        link.deliver("driver-location/drv-7", report)

        assert len(rec.locations) == 1
        assert engine.counterpart_position == Coordinates(lat=12.91, lng=77.61)
        session = engine.session
        assert session is not None
        assert session.counterpart_location == Coordinates(lat=12.91, lng=77.61)

        link.deliver(f"driver-location/{booking_id}", {"latitude": "bad"})
        assert len(rec.locations) == 1


@pytest.mark.asyncio
async def test_quote_flow_and_role_guards(link: Any, backend: Any, config_factory: Any) -> None:
    rec = _Recorder()

    async with _engine(config_factory(), backend, link, MemorySessionStore(), rec) as engine:
        quotes = await engine.request_quotes(PICKUP, DROP, vehicle_type="bike")
        assert engine.phase == RidePhase.QUOTING
        assert quotes[0].fare == 42.5
        assert engine.quotes == quotes

        engine.abandon_quote()
        assert engine.phase == RidePhase.SEARCH

        backend.scripted[("POST", "/rides/quote")] = [{"quotes": []}]
        with pytest.raises(CommandRejected):
            await engine.request_quotes(PICKUP, DROP)
        assert engine.phase == RidePhase.SEARCH
        assert rec.notifications[-1].level == NotificationLevel.ERROR

        with pytest.raises(RideStateError):
            await engine.accept_ride("B1")


@pytest.mark.asyncio
async def test_chat_and_queued_sends(link: Any, backend: Any, config_factory: Any, eventually: Any) -> None:
    rec = _Recorder()

    async with _engine(config_factory(), backend, link, MemorySessionStore(), rec) as engine:
        booking_id = (await engine.book_ride(PICKUP, DROP)).booking_id

        link.fail_connects = 1_000
        link.drop()
        sent = engine.send_chat("At the gate")
        assert link.published == []

        link.fail_connects = 0
        await eventually(lambda: len(link.published) == 1)
        destination, payload = link.published[0]
        assert destination == "app/chat"
        assert payload["rideId"] == booking_id
        assert payload["message"] == "At the gate"
        assert payload["clientMessageId"] == sent.client_message_id

        link.deliver(f"chat/{booking_id}", {"rideId": booking_id, "senderId": "drv-7", "message": "Coming"})
        link.deliver(f"chat/{booking_id}", {"rideId": "OTHER", "message": "wrong ride"})
        assert [m.message for m in rec.chat] == ["Coming"]


@pytest.mark.asyncio
async def test_sos_countdown_can_be_cancelled(link: Any, backend: Any, config_factory: Any, eventually: Any) -> None:
    rec = _Recorder()

    async with _engine(config_factory(sos_countdown=0.05), backend, link, MemorySessionStore(), rec) as engine:
        engine.trigger_sos(PICKUP)
        assert engine.cancel_sos()
        await asyncio.sleep(0.1)
        assert backend.posted("/emergency/sos") == []

        engine.trigger_sos(PICKUP)
        await eventually(lambda: len(backend.posted("/emergency/sos")) == 1)
        body = backend.posted("/emergency/sos")[0]
        assert body["userId"] == "cust-1"
        assert body["location"] == {"lat": 12.97, "lng": 77.59}


@pytest.mark.asyncio
async def test_malformed_push_is_dropped(link: Any, backend: Any, config_factory: Any) -> None:
    async with _engine(config_factory(), backend, link, MemorySessionStore(), _Recorder()) as engine:
        booking_id = (await engine.book_ride(PICKUP, DROP)).booking_id

        link.deliver("ride-updates/cust-1", b"\x00garbage")
        link.deliver("ride-updates/cust-1", {"type": "SOMETHING_ELSE"})
        link.deliver("ride-updates/cust-1", _matched(booking_id))

        assert engine.phase == RidePhase.TRACKING


@pytest.mark.asyncio
async def test_sign_out_clears_everything(link: Any, backend: Any, config_factory: Any) -> None:
    store = MemorySessionStore()
    engine = _engine(config_factory(), backend, link, store, _Recorder())
    await engine.start()
    await engine.book_ride(PICKUP, DROP)

    await engine.sign_out()

    assert engine.session is None
    assert store.get("active_ride_requester") is None
    assert engine.connection.state == ConnectionState.DISCONNECTED
    assert link.subscriptions == {}
    assert not engine.poller.is_running


@pytest.mark.asyncio
async def test_role_is_checked_for_requester_commands(link: Any, backend: Any, config_factory: Any) -> None:
    config = config_factory("drv-1", Role.PROVIDER)
    async with _engine(config, backend, link, MemorySessionStore(), _Recorder()) as engine:
        with pytest.raises(RideStateError):
            await engine.book_ride(PICKUP, DROP)
