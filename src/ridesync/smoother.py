"""Counterpart location smoothing.

Turns discrete position reports into continuous motion: each new sample
starts a short linear interpolation from the currently rendered position,
replacing any animation still running. The first sample (nothing rendered
yet) is applied immediately. ``push`` never awaits, so feeding the smoother
cannot delay a state merge.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable

from ridesync._tasks import TaskOwner
from ridesync.models.location import LocationSample
from ridesync.models.ride import Coordinates

_logger = logging.getLogger(__name__)


def interpolate(start: Coordinates, end: Coordinates, fraction: float) -> Coordinates:
    t = min(1.0, max(0.0, fraction))
    return Coordinates(
        lat=start.lat + (end.lat - start.lat) * t,
        lng=start.lng + (end.lng - start.lng) * t,
    )


def frames(start: Coordinates, end: Coordinates, duration: float, frame_interval: float) -> list[Coordinates]:
    """Intermediate positions from *start* (exclusive) to *end* (inclusive)."""
    steps = max(1, math.ceil(duration / frame_interval))
    return [interpolate(start, end, i / steps) for i in range(1, steps + 1)]


class LocationSmoother:
    """Animates the rendered counterpart position towards the latest sample."""

    def __init__(
        self,
        on_position: Callable[[LocationSample], None],
        *,
        duration: float = 2.0,
        frame_interval: float = 0.05,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._on_position = on_position
        self._duration = duration
        self._frame_interval = frame_interval
        self._sleep = sleep
        self._rendered: Coordinates | None = None
        self._target: LocationSample | None = None
        self._tasks = TaskOwner("smoother", logger=_logger)

    @property
    def position(self) -> Coordinates | None:
        """The position most recently handed to ``on_position``."""
        return self._rendered

    @property
    def target(self) -> LocationSample | None:
        return self._target

    @property
    def animating(self) -> bool:
        return self._tasks.is_running("animate")

    def push(self, sample: LocationSample) -> None:
        self._target = sample
        start = self._rendered
        if start is None or start == sample.position:
            self._tasks.cancel("animate")
            self._emit(sample)
            return
        self._tasks.spawn("animate", self._animate(start, sample))

    async def _animate(self, start: Coordinates, sample: LocationSample) -> None:
        path = frames(start, sample.position, self._duration, self._frame_interval)
        for point in path[:-1]:
            self._emit(sample.model_copy(update={"lat": point.lat, "lng": point.lng}))
            await self._sleep(self._frame_interval)
        self._emit(sample)

    def _emit(self, sample: LocationSample) -> None:
        self._rendered = sample.position
        self._on_position(sample)

    def reset(self) -> None:
        """Forget the rendered position (new counterpart or session end)."""
        self._tasks.cancel_all()
        self._rendered = None
        self._target = None

    async def aclose(self) -> None:
        await self._tasks.aclose()
        self._rendered = None
        self._target = None
