"""Verification-code hydration.

When a session reaches TRACKING without a verification code (the match
push omitted it), the code is fetched from the ride resource with a small
bounded retry. At most one run is in flight per booking id; a second
trigger while one runs is a no-op. Exhausting the attempts is silent: the
reconciliation poller keeps merging snapshots and remains a second path
to the code.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from ridesync._tasks import TaskOwner
from ridesync.exceptions import HttpError
from ridesync.models.ride import RideSnapshot

_logger = logging.getLogger(__name__)

FetchRide = Callable[[str], Awaitable[RideSnapshot]]
#: Merges a fetched snapshot; returns True once the session holds a code.
SnapshotSink = Callable[[str, RideSnapshot], bool]


class CodeHydrator:
    """Bounded-retry fetch of a booking's verification code."""

    def __init__(
        self,
        fetch: FetchRide,
        on_snapshot: SnapshotSink,
        *,
        attempts: int = 3,
        delay: float = 0.8,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._fetch = fetch
        self._on_snapshot = on_snapshot
        self._attempts = attempts
        self._delay = delay
        self._sleep = sleep
        self._tasks = TaskOwner("hydration", logger=_logger)

    def is_running(self, booking_id: str) -> bool:
        return self._tasks.is_running(booking_id)

    def trigger(self, booking_id: str, *, attempts: int | None = None) -> asyncio.Task[bool] | None:
        """Start hydrating *booking_id* unless a run is already in flight.

        Returns the new task, or ``None`` when the trigger was a no-op.
        """
        if self._tasks.is_running(booking_id):
            _logger.debug("Hydration for %s already in flight", booking_id)
            return None
        runs = attempts if attempts is not None else self._attempts
        return self._tasks.spawn(booking_id, self._run(booking_id, runs), replace=False)

    async def _run(self, booking_id: str, attempts: int) -> bool:
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                await self._sleep(self._delay)
            try:
                snapshot = await self._fetch(booking_id)
            except HttpError as exc:
                _logger.debug("Hydration fetch %d/%d for %s failed: %s", attempt, attempts, booking_id, exc)
                continue
            if self._on_snapshot(booking_id, snapshot):
                _logger.debug("Verification code for %s hydrated on attempt %d", booking_id, attempt)
                return True
        _logger.debug("Hydration for %s gave up after %d attempt(s)", booking_id, attempts)
        return False

    def cancel(self, booking_id: str | None = None) -> None:
        if booking_id is None:
            self._tasks.cancel_all()
        else:
            self._tasks.cancel(booking_id)

    async def aclose(self) -> None:
        await self._tasks.aclose()
