"""High-level async ride synchronization engine."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Coroutine, Mapping
from datetime import UTC, datetime
from typing import Any

import aiohttp
from pydantic import ValidationError

from ridesync._api import emergency as _emergency_api
from ridesync._api import rides as _rides_api
from ridesync._api._common import unwrap_ride
from ridesync._constants import (
    CHAT_TOPIC,
    DEFAULT_NEARBY_RADIUS_KM,
    DRIVER_LOCATION_TOPIC,
    MATCH_POLL_HYDRATION_ATTEMPTS,
    RIDE_REQUESTS_TOPIC,
    RIDE_UPDATES_TOPIC,
    SEND_CHAT,
    SEND_DRIVER_LOCATION,
    topic,
)
from ridesync._mqtt import BrokerLink, MqttBrokerLink
from ridesync._tasks import TaskOwner
from ridesync._transport import HttpTransport, Transport
from ridesync.config import RideSyncConfig, Role
from ridesync.connection import ConnectionManager, ConnectionState
from ridesync.exceptions import CommandRejected, HttpError, MalformedMessage, RideStateError, StaleDataError, TransportError
from ridesync.hydration import CodeHydrator
from ridesync.ingestion.apply import update_from_event, update_from_snapshot
from ridesync.models.events import (
    Cancelled,
    ChatMessage,
    Completed,
    LocationUpdate,
    Matched,
    Started,
    parse_chat_message,
    parse_location_message,
    parse_ride_event,
)
from ridesync.models.location import LocationSample, LocationSource
from ridesync.models.notification import Notification, NotificationLevel
from ridesync.models.ride import Coordinates, FareQuote, RidePhase, RideSnapshot
from ridesync.persistence import FileSessionStore, MemorySessionStore, SessionPersistence, SessionStore
from ridesync.poller import ReconciliationPoller
from ridesync.smoother import LocationSmoother
from ridesync.state.events import RideUpdate, UpdateSource
from ridesync.state.machine import MergeOutcome, RideSession, RideStateMachine
from ridesync.subscriptions import TopicKey, TopicKind

_logger = logging.getLogger(__name__)

StateCallback = Callable[[RidePhase, RideSession | None], None]


class RideSyncEngine:
    """Keeps one participant's view of the active ride consistent.

    Usage::

        async with RideSyncEngine(config, on_state_change=render) as engine:
            await engine.book_ride(pickup, drop)

    Pushed events, polled snapshots and local commands all converge on the
    internal :class:`RideStateMachine`; callbacks report the results.

    Parameters
    ----------
    config : RideSyncConfig
        Engine configuration.
    transport : Transport or None
        Ride API transport. Defaults to :class:`HttpTransport` on an
        aiohttp session created (and closed) by the engine.
    link : BrokerLink or None
        Pub/sub link. Defaults to :class:`MqttBrokerLink`.
    store : SessionStore or None
        Persistence backend for the active booking id.
    on_state_change : callable
        ``(phase, session)`` after every visible change.
    on_notification : callable
        User-facing :class:`Notification` messages.
    on_location : callable
        Smoothed counterpart positions.
    on_chat_message, on_ride_request : callable
        Incoming chat lines and (providers) incoming ride requests.
    """

    def __init__(
        self,
        config: RideSyncConfig,
        *,
        transport: Transport | None = None,
        link: BrokerLink | None = None,
        store: SessionStore | None = None,
        http_session: aiohttp.ClientSession | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: StateCallback | None = None,
        on_notification: Callable[[Notification], None] | None = None,
        on_location: Callable[[LocationSample], None] | None = None,
        on_chat_message: Callable[[ChatMessage], None] | None = None,
        on_ride_request: Callable[[RideSnapshot], None] | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._http_session = http_session
        self._owns_http_session = False
        self._on_state_change = on_state_change
        self._on_notification = on_notification
        self._on_location = on_location
        self._on_chat_message = on_chat_message
        self._on_ride_request = on_ride_request
        self._started = False

        if store is None:
            store = FileSessionStore(config.session_store_path) if config.session_store_path else MemorySessionStore()

        self._machine = RideStateMachine(clock=clock)
        self.connection = ConnectionManager(
            link if link is not None else MqttBrokerLink(config),
            connect_timeout=config.connect_timeout,
            reconnect_base_delay=config.reconnect_base_delay,
            reconnect_max_delay=config.reconnect_max_delay,
            reconnect_alert_after=config.reconnect_alert_after,
            on_state_change=self._on_connection_state,
            on_unavailable=self._on_realtime_unavailable,
            on_restored=self._on_realtime_restored,
        )
        self._persistence = SessionPersistence(store, config.role, self._fetch_ride)
        self._poller = ReconciliationPoller(
            self._machine,
            self._fetch_ride,
            self._on_poll_snapshot,
            poll_interval=config.poll_interval,
            staleness_threshold=config.staleness_threshold,
            match_poll_interval=config.match_poll_interval,
            stale_ceiling=config.stale_ceiling,
            on_stale=self._on_stale,
        )
        self._hydrator = CodeHydrator(
            self._fetch_ride,
            self._on_hydration_snapshot,
            attempts=config.hydration_attempts,
            delay=config.hydration_delay,
        )
        self._smoother = LocationSmoother(
            self._emit_location,
            duration=config.animation_duration,
            frame_interval=config.animation_frame_interval,
        )
        self._timers = TaskOwner("engine", logger=_logger)
        self._commands = TaskOwner("commands", logger=_logger)

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> RideSyncEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        """Subscribe participant topics, connect, and resume a persisted ride."""
        if self._started:
            return
        self._started = True
        if self._transport is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
                self._owns_http_session = True
            self._transport = HttpTransport(
                self._config.api_base_url,
                self._http_session,
                timeout=self._config.request_timeout,
            )

        self._subscribe_participant_topics()
        try:
            await self.connection.connect()
        except TransportError as exc:
            _logger.warning("Broker unavailable at start (%s); relying on polling until reconnect", exc)
        session = self._machine.session
        if session is not None:
            # Restarted without losing the session: re-arm its subscriptions and poller.
            self._on_session_opened(session)
        else:
            await self._resume()

    async def stop(self) -> None:
        """Cancel every timer, tear the broker link down and release HTTP resources.

        Commands already sent to the background (a cancel) get up to
        ``request_timeout`` to reach the server before the HTTP session closes.
        """
        if not self._started:
            return
        self._started = False
        await self._poller.aclose()
        await self._hydrator.aclose()
        await self._smoother.aclose()
        await self._timers.aclose()
        pending = await self._commands.drain(self._config.request_timeout)
        if pending:
            _logger.warning("Abandoning %d ride command(s) still in flight at stop", pending)
        await self._commands.aclose()
        await self.connection.disconnect()
        if self._owns_http_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
            self._transport = None
            self._owns_http_session = False

    async def sign_out(self) -> None:
        """Drop the active session and its persisted id, then stop."""
        discarded = self._machine.discard()
        self._persistence.clear()
        if discarded is not None:
            _logger.debug("Signed out with ride %s active", discarded.booking_id)
        await self.stop()
        self._invoke("on_state_change", self._on_state_change, self._machine.phase, None)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def config(self) -> RideSyncConfig:
        return self._config

    @property
    def phase(self) -> RidePhase:
        return self._machine.phase

    @property
    def session(self) -> RideSession | None:
        return self._machine.session

    @property
    def last_session(self) -> RideSession | None:
        return self._machine.last_session

    @property
    def quotes(self) -> list[FareQuote]:
        return self._machine.quotes

    @property
    def counterpart_position(self) -> Coordinates | None:
        return self._smoother.position

    @property
    def realtime_available(self) -> bool:
        return self.connection.realtime_available

    @property
    def machine(self) -> RideStateMachine:
        return self._machine

    @property
    def poller(self) -> ReconciliationPoller:
        return self._poller

    @property
    def hydrator(self) -> CodeHydrator:
        return self._hydrator

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_transport(self) -> Transport:
        if self._transport is None:
            raise RideStateError("Engine not started. Use 'async with RideSyncEngine(...) as engine:'")
        return self._transport

    def _require_role(self, role: Role, command: str) -> None:
        if self._config.role != role:
            raise RideStateError(f"{command} is only available to the {role.value} role")

    def _require_session(self, command: str, *phases: RidePhase) -> RideSession:
        session = self._machine.session
        if session is None:
            raise RideStateError(f"{command}: no active ride")
        if phases and session.status not in phases:
            raise RideStateError(f"{command} is not allowed while the ride is {session.status.value}")
        return session

    async def _fetch_ride(self, booking_id: str) -> RideSnapshot:
        return await _rides_api.fetch_ride(self._require_transport(), booking_id)

    def _topic(self, template: str, **values: str) -> str:
        return topic(self._config.topic_prefix, template, **values)

    def _invoke(self, name: str, callback: Callable[..., None] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            _logger.debug("%s callback failed", name, exc_info=True)

    def _notify(self, message: str, level: NotificationLevel = NotificationLevel.INFO, error: Exception | None = None) -> None:
        _logger.debug("Notification [%s] %s", level.value, message)
        self._invoke("on_notification", self._on_notification, Notification(message, level, error))

    def _emit_location(self, sample: LocationSample) -> None:
        self._invoke("on_location", self._on_location, sample)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _subscribe_participant_topics(self) -> None:
        participant = self._config.participant_id
        registry = self.connection.registry
        registry.subscribe(
            TopicKey(TopicKind.RIDE_UPDATES, participant),
            self._topic(RIDE_UPDATES_TOPIC, participant_id=participant),
            self._on_ride_update_message,
        )
        if self._config.role == Role.PROVIDER:
            registry.subscribe(
                TopicKey(TopicKind.RIDE_REQUESTS, participant),
                self._topic(RIDE_REQUESTS_TOPIC, provider_id=participant),
                self._on_ride_request_message,
            )

    def _subscribe_session_topics(self, session: RideSession) -> None:
        registry = self.connection.registry
        booking_id = session.booking_id
        registry.subscribe(
            TopicKey(TopicKind.CHAT, booking_id),
            self._topic(CHAT_TOPIC, booking_id=booking_id),
            self._on_chat_payload,
        )
        if self._config.role != Role.REQUESTER:
            return
        # Backends publish driver positions per booking or per driver; listen to both.
        registry.subscribe(
            TopicKey(TopicKind.RIDE_LOCATION, booking_id),
            self._topic(DRIVER_LOCATION_TOPIC, key=booking_id),
            self._on_location_payload,
        )
        self._subscribe_counterpart(session)

    def _subscribe_counterpart(self, session: RideSession) -> None:
        counterpart = session.counterpart_id
        if self._config.role != Role.REQUESTER or not counterpart:
            return
        key = TopicKey(TopicKind.COUNTERPART_LOCATION, counterpart)
        if key in self.connection.registry:
            return
        self.connection.registry.unsubscribe_kind(TopicKind.COUNTERPART_LOCATION)
        self.connection.registry.subscribe(
            key,
            self._topic(DRIVER_LOCATION_TOPIC, key=counterpart),
            self._on_location_payload,
        )

    def _unsubscribe_session_topics(self) -> None:
        self.connection.registry.unsubscribe_kind(TopicKind.COUNTERPART_LOCATION, TopicKind.RIDE_LOCATION, TopicKind.CHAT)

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    def _on_ride_update_message(self, data: Any) -> None:
        event = parse_ride_event(data, destination=RIDE_UPDATES_TOPIC)
        if isinstance(event, LocationUpdate):
            self._on_location_update(event)
        elif isinstance(event, (Matched, Started, Completed, Cancelled)):
            self._on_lifecycle_event(event)

    def _on_lifecycle_event(self, event: Matched | Started | Completed | Cancelled) -> None:
        update = update_from_event(event, role=self._config.role)
        if self._machine.booking_id is not None:
            self._handle_outcome(self._machine.apply(update))
            return

        # Idle: an event for a live booking we do not hold yet (e.g. the book
        # reply has not returned) opens the session.
        phase = update.phase
        if update.booking_id is None or phase is None or not phase.has_session:
            _logger.debug("Ignoring %s for %s with no active ride", event.type, update.booking_id)
            return
        if self._config.role == Role.PROVIDER and event.ride.driver_id not in (None, self._config.participant_id):
            _logger.debug("Ignoring %s for %s assigned to another provider", event.type, update.booking_id)
            return
        self._handle_outcome(self._machine.open_session(update))

    def _on_location_payload(self, data: Any) -> None:
        self._on_location_update(parse_location_message(data, destination=DRIVER_LOCATION_TOPIC))

    def _on_location_update(self, update: LocationUpdate) -> None:
        booking_id = self._machine.booking_id
        if booking_id is None or self._config.role != Role.REQUESTER:
            return
        if update.booking_id is not None and update.booking_id != booking_id:
            return
        self._machine.touch()
        sample = LocationSample.from_update(update)
        target = self._smoother.target
        # Dual subscriptions deliver the same report twice.
        if target is not None and target.position == sample.position and target.timestamp == sample.timestamp:
            return
        self._smoother.push(sample)
        self._machine.apply(
            RideUpdate(booking_id=booking_id, source=UpdateSource.PUSH, data={"counterpart_location": sample.position})
        )

    def _on_chat_payload(self, data: Any) -> None:
        message = parse_chat_message(data, destination=CHAT_TOPIC)
        booking_id = self._machine.booking_id
        if message.ride_id is not None and message.ride_id != booking_id:
            return
        self._invoke("on_chat_message", self._on_chat_message, message)

    def _on_ride_request_message(self, data: Any) -> None:
        try:
            snapshot = RideSnapshot.model_validate(unwrap_ride(data))
        except ValidationError as exc:
            raise MalformedMessage(
                f"Invalid ride request: {exc.error_count()} error(s)", destination=RIDE_REQUESTS_TOPIC
            ) from exc
        if snapshot.booking_id is None:
            raise MalformedMessage("Ride request has no booking id", destination=RIDE_REQUESTS_TOPIC)
        self._invoke("on_ride_request", self._on_ride_request, snapshot)

    # ------------------------------------------------------------------
    # Poll / hydration sinks
    # ------------------------------------------------------------------

    def _on_poll_snapshot(self, booking_id: str, snapshot: RideSnapshot) -> None:
        update = update_from_snapshot(snapshot, role=self._config.role, source=UpdateSource.POLL, booking_id=booking_id)
        matched_by_poll = self._machine.phase == RidePhase.BOOKING and update.phase in (
            RidePhase.TRACKING,
            RidePhase.IN_PROGRESS,
        )
        outcome = self._machine.apply(update)
        self._handle_outcome(outcome, hydration_attempts=MATCH_POLL_HYDRATION_ATTEMPTS if matched_by_poll else None)
        location = snapshot.driver_location
        if outcome.accepted and not outcome.closed and location is not None and self._config.role == Role.REQUESTER:
            self._smoother.push(LocationSample.from_coordinates(location, LocationSource.POLL))

    def _on_hydration_snapshot(self, booking_id: str, snapshot: RideSnapshot) -> bool:
        update = update_from_snapshot(snapshot, role=self._config.role, source=UpdateSource.POLL, booking_id=booking_id)
        outcome = self._machine.apply(update)
        self._handle_outcome(outcome)
        if not outcome.accepted or outcome.closed:
            return True
        return outcome.session is not None and outcome.session.verification_code is not None

    def _on_stale(self, error: StaleDataError) -> None:
        self._notify("Ride status could not be refreshed", NotificationLevel.ERROR, error)

    # ------------------------------------------------------------------
    # Merge outcome side effects
    # ------------------------------------------------------------------

    def _handle_outcome(self, outcome: MergeOutcome, *, hydration_attempts: int | None = None) -> MergeOutcome:
        if not outcome.accepted:
            _logger.debug("Update for %s ignored: %s", outcome.booking_id, outcome.reason)
            return outcome

        session = outcome.session
        opened = session is not None and not outcome.previous.has_session

        if outcome.closed:
            self._on_session_closed(outcome)
        elif session is not None:
            if opened:
                self._on_session_opened(session)
            elif outcome.filled("counterpart_id"):
                self._subscribe_counterpart(session)
            if (
                self._config.role == Role.REQUESTER
                and session.status == RidePhase.TRACKING
                and (opened or outcome.advanced)
                and session.verification_code is None
            ):
                self._hydrator.trigger(session.booking_id, attempts=hydration_attempts)
            if outcome.advanced and not opened:
                _logger.debug("Ride %s: %s -> %s", session.booking_id, outcome.previous.value, outcome.phase.value)

        visible = set(outcome.changed) - {"counterpart_location"}
        if opened or outcome.closed or outcome.advanced or visible:
            self._invoke("on_state_change", self._on_state_change, outcome.phase, None if outcome.closed else session)
        return outcome

    def _on_session_opened(self, session: RideSession) -> None:
        _logger.debug("Ride %s active in %s", session.booking_id, session.status.value)
        self._persistence.save(session.booking_id)
        self._smoother.reset()
        self._subscribe_session_topics(session)
        self._poller.start(session.booking_id)
        if session.counterpart_location is not None and self._config.role == Role.REQUESTER:
            self._smoother.push(LocationSample.from_coordinates(session.counterpart_location, LocationSource.POLL))

    def _on_session_closed(self, outcome: MergeOutcome) -> None:
        booking_id = outcome.booking_id
        _logger.debug("Ride %s ended as %s", booking_id, outcome.phase.value)
        self._persistence.clear()
        self._poller.stop()
        if booking_id is not None:
            self._hydrator.cancel(booking_id)
        self._smoother.reset()
        self._timers.cancel("sos")
        self._unsubscribe_session_topics()
        if outcome.phase == RidePhase.COMPLETED:
            self._notify("Ride completed")
        else:
            self._notify("Ride cancelled", NotificationLevel.WARNING)

    async def _resume(self) -> None:
        snapshot = await self._persistence.resume()
        if snapshot is None:
            return
        update = update_from_snapshot(snapshot, role=self._config.role, source=UpdateSource.REHYDRATE)
        outcome = self._handle_outcome(self._machine.open_session(update))
        if outcome.accepted:
            _logger.debug("Resumed ride %s in %s", outcome.booking_id, outcome.phase.value)

    # ------------------------------------------------------------------
    # Connection callbacks
    # ------------------------------------------------------------------

    def _on_connection_state(self, state: ConnectionState) -> None:
        _logger.debug("Broker connection %s", state.value)

    def _on_realtime_unavailable(self) -> None:
        self._notify(
            "Real-time updates unavailable; still refreshing the ride periodically",
            NotificationLevel.WARNING,
            TransportError("Broker unreachable"),
        )

    def _on_realtime_restored(self) -> None:
        self._notify("Real-time updates restored")

    # ------------------------------------------------------------------
    # Background commands
    # ------------------------------------------------------------------

    def _background(self, command: str, booking_id: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[None]:
        name = f"{command}:{booking_id}"
        running = self._commands.get(name)
        if running is not None and not running.done():
            coro.close()
            return running
        return self._commands.spawn(name, self._run_command(command, coro))

    async def _run_command(self, command: str, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            await coro
        except (CommandRejected, HttpError) as exc:
            _logger.warning("Background %s failed: %s", command, exc)
            self._notify(f"Could not {command} the ride: {exc}", NotificationLevel.ERROR, exc)

    async def _command(self, command: str, coro: Coroutine[Any, Any, Any]) -> Any:
        try:
            return await coro
        except CommandRejected as exc:
            self._notify(str(exc), NotificationLevel.ERROR, exc)
            raise

    # ------------------------------------------------------------------
    # Requester commands
    # ------------------------------------------------------------------

    async def request_quotes(
        self,
        pickup: Coordinates,
        drop: Coordinates,
        *,
        vehicle_type: str | None = None,
    ) -> list[FareQuote]:
        """Price a trip (SEARCH -> QUOTING)."""
        self._require_role(Role.REQUESTER, "request_quotes")
        if self._machine.booking_id is not None:
            raise RideStateError("Cannot request quotes while a ride is active")
        quotes: list[FareQuote] = await self._command(
            "quote",
            _rides_api.request_quotes(self._require_transport(), pickup, drop, vehicle_type=vehicle_type),
        )
        self._handle_outcome(self._machine.begin_quote(quotes))
        return quotes

    def abandon_quote(self) -> None:
        """Back out of QUOTING to SEARCH."""
        self._handle_outcome(self._machine.abandon_quote())

    async def book_ride(
        self,
        pickup: Coordinates,
        drop: Coordinates,
        *,
        details: Mapping[str, Any] | None = None,
    ) -> RideSession:
        """Create a ride; the session opens in BOOKING once the server confirms."""
        self._require_role(Role.REQUESTER, "book_ride")
        if self._machine.booking_id is not None:
            raise RideStateError(f"Ride {self._machine.booking_id} is already active")
        snapshot: RideSnapshot = await self._command(
            "book",
            _rides_api.book_ride(
                self._require_transport(),
                self._config.participant_id,
                pickup,
                drop,
                details=details,
            ),
        )
        phase = snapshot.phase if snapshot.phase is not None and snapshot.phase.has_session else RidePhase.BOOKING
        update = update_from_snapshot(snapshot, role=self._config.role, source=UpdateSource.LOCAL, phase=phase)
        self._handle_outcome(self._machine.open_session(update))
        session = self._machine.session
        if session is None:
            raise RideStateError(f"Ride {snapshot.booking_id} ended before it could be tracked")
        return session

    # ------------------------------------------------------------------
    # Provider commands
    # ------------------------------------------------------------------

    async def accept_ride(self, booking_id: str) -> RideSession:
        """Accept a ride request; the session opens directly in TRACKING."""
        self._require_role(Role.PROVIDER, "accept_ride")
        active = self._machine.booking_id
        if active is not None and active != booking_id:
            raise RideStateError(f"Ride {active} is already active")
        snapshot: RideSnapshot = await self._command(
            "accept",
            _rides_api.accept_ride(self._require_transport(), booking_id, self._config.participant_id),
        )
        phase = RidePhase.IN_PROGRESS if snapshot.phase == RidePhase.IN_PROGRESS else RidePhase.TRACKING
        update = update_from_snapshot(
            snapshot,
            role=self._config.role,
            source=UpdateSource.LOCAL,
            booking_id=booking_id,
            phase=phase,
        )
        self._handle_outcome(self._machine.open_session(update))
        session = self._machine.session
        if session is None:
            raise RideStateError(f"Ride {booking_id} is no longer active")
        return session

    async def verify_code(self, code: str) -> RideSession:
        """Check the rider's code and start the trip (TRACKING -> IN_PROGRESS).

        The phase only changes once the server has accepted both the code and
        the start; a rejected start leaves the ride in TRACKING so the code
        can be submitted again.
        """
        self._require_role(Role.PROVIDER, "verify_code")
        session = self._require_session("verify_code", RidePhase.TRACKING)
        code = code.strip()
        if not code:
            raise ValueError("Verification code must not be empty")
        transport = self._require_transport()
        await self._command("verify_code", _rides_api.verify_code(transport, session.booking_id, code))
        await self._command("start", _rides_api.start_ride(transport, session.booking_id))
        self._handle_outcome(
            self._machine.apply(
                RideUpdate(booking_id=session.booking_id, source=UpdateSource.LOCAL, phase=RidePhase.IN_PROGRESS)
            )
        )
        return self._machine.session or session

    async def complete_ride(self) -> RideSession:
        """Finish the trip once the server confirms it; returns the closed session."""
        self._require_role(Role.PROVIDER, "complete_ride")
        session = self._require_session("complete_ride", RidePhase.IN_PROGRESS)
        await self._command("complete", _rides_api.complete_ride(self._require_transport(), session.booking_id))
        self._handle_outcome(
            self._machine.apply(
                RideUpdate(booking_id=session.booking_id, source=UpdateSource.LOCAL, phase=RidePhase.COMPLETED)
            )
        )
        last = self._machine.last_session
        if last is None or last.booking_id != session.booking_id:
            raise RideStateError(f"Ride {session.booking_id} did not close")
        return last

    async def nearby_rides(
        self,
        location: Coordinates,
        radius_km: float = DEFAULT_NEARBY_RADIUS_KM,
        **filters: Any,
    ) -> list[RideSnapshot]:
        self._require_role(Role.PROVIDER, "nearby_rides")
        return await _rides_api.fetch_nearby_rides(self._require_transport(), location, radius_km, filters=filters)

    def send_location(self, sample: LocationSample) -> bool:
        """Publish this provider's position; queued while the broker is down."""
        self._require_role(Role.PROVIDER, "send_location")
        payload: dict[str, Any] = {
            "driverId": self._config.participant_id,
            "latitude": sample.lat,
            "longitude": sample.lng,
            "heading": sample.heading,
            "speed": sample.speed,
        }
        booking_id = self._machine.booking_id
        if booking_id is not None:
            payload["bookingId"] = booking_id
        return self.connection.send(self._topic(SEND_DRIVER_LOCATION), payload)

    # ------------------------------------------------------------------
    # Shared commands
    # ------------------------------------------------------------------

    def cancel_ride(self) -> asyncio.Task[None]:
        """Cancel the active ride.

        The session is closed locally right away; the server command runs in
        the background. A failed command raises an ERROR notification but is
        not rolled back: the next poll or push reconciles.
        """
        session = self._require_session("cancel_ride")
        transport = self._require_transport()
        self._handle_outcome(
            self._machine.apply(
                RideUpdate(booking_id=session.booking_id, source=UpdateSource.LOCAL, phase=RidePhase.CANCELLED)
            )
        )
        return self._background("cancel", session.booking_id, _rides_api.cancel_ride(transport, session.booking_id))

    def send_chat(self, text: str, *, sender_name: str | None = None) -> ChatMessage:
        """Publish a chat line on the active ride; queued while the broker is down."""
        session = self._require_session("send_chat")
        text = text.strip()
        if not text:
            raise ValueError("Chat message must not be empty")
        message = ChatMessage(
            ride_id=session.booking_id,
            sender_id=self._config.participant_id,
            sender_name=sender_name,
            sender_type="CUSTOMER" if self._config.role == Role.REQUESTER else "DRIVER",
            message=text,
            client_message_id=uuid.uuid4().hex,
            timestamp=datetime.now(UTC),
        )
        payload = message.model_dump(mode="json", by_alias=True, exclude={"raw"}, exclude_none=True)
        self.connection.send(self._topic(SEND_CHAT), payload)
        return message

    async def rate_ride(self, stars: int, comment: str | None = None) -> None:
        """Rate the most recently completed ride."""
        if not 1 <= stars <= 5:
            raise ValueError("Rating must be between 1 and 5")
        last = self._machine.last_session
        if last is None or last.status != RidePhase.COMPLETED:
            raise RideStateError("No completed ride to rate")
        await self._command("rate", _rides_api.rate_ride(self._require_transport(), last.booking_id, stars, comment))

    def trigger_sos(self, location: Coordinates | None = None) -> asyncio.Task[None]:
        """Start the SOS countdown; the alert is sent unless cancelled in time."""
        transport = self._require_transport()
        if self._timers.is_running("sos"):
            task = self._timers.get("sos")
            assert task is not None  # noqa: S101
            return task
        self._notify(
            f"Sending SOS in {self._config.sos_countdown:.0f} seconds",
            NotificationLevel.WARNING,
        )
        return self._timers.spawn("sos", self._sos_countdown(transport, location))

    def cancel_sos(self) -> bool:
        cancelled = self._timers.cancel("sos")
        if cancelled:
            self._notify("SOS cancelled")
        return cancelled

    async def _sos_countdown(self, transport: Transport, location: Coordinates | None) -> None:
        await asyncio.sleep(self._config.sos_countdown)
        booking_id = self._machine.booking_id
        if location is None:
            location = self._smoother.position
        try:
            await _emergency_api.send_sos(transport, self._config.participant_id, location=location, booking_id=booking_id)
        except (CommandRejected, HttpError) as exc:
            _logger.warning("SOS failed: %s", exc)
            self._notify("SOS could not be sent", NotificationLevel.ERROR, exc)
            return
        self._notify("SOS sent", NotificationLevel.WARNING)
