"""Reconciliation poller.

Fallback fetch of the authoritative ride resource while a session is
active:

- BOOKING: every ``match_poll_interval`` unconditionally, so a match the
  push channel dropped is still noticed.
- TRACKING / IN_PROGRESS: every ``poll_interval``, but only fetches when the
  push channel has been silent for ``staleness_threshold``. The poller's
  own merges do not count as push, so a silent channel is polled on every
  tick.

Snapshots go through the same merge as pushed events. Polling never stops
while the session is active; after ``stale_ceiling`` seconds without any
trusted update (pushed or polled) a single :class:`StaleDataError` is
reported per episode.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from ridesync._tasks import TaskOwner
from ridesync.exceptions import HttpError, StaleDataError
from ridesync.models.ride import RidePhase, RideSnapshot
from ridesync.state.machine import RideStateMachine

_logger = logging.getLogger(__name__)

FetchRide = Callable[[str], Awaitable[RideSnapshot]]
SnapshotSink = Callable[[str, RideSnapshot], None]


class ReconciliationPoller:
    """Polls one booking until its session ends or :meth:`stop` is called."""

    def __init__(
        self,
        machine: RideStateMachine,
        fetch: FetchRide,
        on_snapshot: SnapshotSink,
        *,
        poll_interval: float = 5.0,
        staleness_threshold: float = 6.0,
        match_poll_interval: float = 3.0,
        stale_ceiling: float = 300.0,
        on_stale: Callable[[StaleDataError], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._machine = machine
        self._fetch = fetch
        self._on_snapshot = on_snapshot
        self._poll_interval = poll_interval
        self._staleness_threshold = staleness_threshold
        self._match_poll_interval = match_poll_interval
        self._stale_ceiling = stale_ceiling
        self._on_stale = on_stale
        self._sleep = sleep
        self._tasks = TaskOwner("poller", logger=_logger)
        self._stale_reported = False
        self.fetch_count = 0

    @property
    def is_running(self) -> bool:
        return self._tasks.is_running("poll")

    def start(self, booking_id: str) -> asyncio.Task[None]:
        """(Re)start polling *booking_id*; any previous loop is cancelled."""
        self._stale_reported = False
        _logger.debug("Poller started for %s", booking_id)
        return self._tasks.spawn("poll", self._loop(booking_id))

    def stop(self) -> None:
        if self._tasks.cancel("poll"):
            _logger.debug("Poller stopped")

    async def aclose(self) -> None:
        await self._tasks.aclose()

    def _owns(self, booking_id: str) -> bool:
        return self._machine.booking_id == booking_id and self._machine.phase.has_session

    def interval(self) -> float:
        if self._machine.phase == RidePhase.BOOKING:
            return self._match_poll_interval
        return self._poll_interval

    async def _loop(self, booking_id: str) -> None:
        while self._owns(booking_id):
            await self._sleep(self.interval())
            if not self._owns(booking_id):
                break
            await self.poll_once(booking_id)
        _logger.debug("Poller for %s exited", booking_id)

    async def poll_once(self, booking_id: str) -> bool:
        """Run one poll cycle; returns whether a snapshot was merged."""
        if not self._owns(booking_id):
            return False
        booking = self._machine.phase == RidePhase.BOOKING
        if not booking and self._machine.push_age() <= self._staleness_threshold:
            self._check_ceiling(booking_id)
            return False

        try:
            snapshot = await self._fetch(booking_id)
        except HttpError as exc:
            _logger.debug("Poll for %s failed: %s", booking_id, exc)
            self._check_ceiling(booking_id)
            return False
        self.fetch_count += 1

        # The session may have ended while the fetch was in flight.
        if not self._owns(booking_id):
            return False
        self._on_snapshot(booking_id, snapshot)
        self._check_ceiling(booking_id)
        return True

    def _check_ceiling(self, booking_id: str) -> None:
        age = self._machine.trusted_age()
        if age < self._stale_ceiling:
            self._stale_reported = False
            return
        if self._stale_reported or not self._owns(booking_id):
            return
        self._stale_reported = True
        _logger.warning("No trusted update for %s in %.0fs", booking_id, age)
        if self._on_stale is not None:
            self._on_stale(
                StaleDataError(
                    f"Ride status could not be refreshed for {age:.0f}s",
                    booking_id=booking_id,
                    field="status",
                )
            )
