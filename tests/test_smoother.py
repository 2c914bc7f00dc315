from __future__ import annotations

import asyncio

import pytest

from ridesync.models.location import LocationSample, LocationSource
from ridesync.models.ride import Coordinates
from ridesync.smoother import LocationSmoother, frames, interpolate


def test_interpolate_clamps_fraction() -> None:
    start = Coordinates(lat=10.0, lng=20.0)
    end = Coordinates(lat=12.0, lng=24.0)

    assert interpolate(start, end, 0.5) == Coordinates(lat=11.0, lng=22.0)
    assert interpolate(start, end, -1.0) == start
    assert interpolate(start, end, 3.0) == end


def test_frames_end_exactly_on_target() -> None:
    start = Coordinates(lat=0.0, lng=0.0)
    end = Coordinates(lat=1.0, lng=1.0)

    path = frames(start, end, duration=2.0, frame_interval=0.5)

    assert len(path) == 4
    assert path[0] == Coordinates(lat=0.25, lng=0.25)
    assert path[-1] == end


@pytest.mark.asyncio
async def test_first_sample_is_applied_immediately() -> None:
    rendered: list[LocationSample] = []
    smoother = LocationSmoother(rendered.append)

    smoother.push(LocationSample(lat=12.0, lng=77.0))

    assert [(s.lat, s.lng) for s in rendered] == [(12.0, 77.0)]
    assert smoother.position == Coordinates(lat=12.0, lng=77.0)
    assert not smoother.animating


@pytest.mark.asyncio
async def test_next_sample_animates_instead_of_jumping() -> None:
    rendered: list[LocationSample] = []

    async def no_sleep(_delay: float) -> None:
        await asyncio.sleep(0)

    smoother = LocationSmoother(rendered.append, duration=1.0, frame_interval=0.25, sleep=no_sleep)
    smoother.push(LocationSample(lat=0.0, lng=0.0))
    smoother.push(LocationSample(lat=1.0, lng=2.0, source=LocationSource.POLL))

    # push never blocks: nothing beyond the first sample is rendered yet.
    assert len(rendered) == 1
    assert smoother.animating

    for _ in range(20):
        await asyncio.sleep(0)

    positions = [(s.lat, s.lng) for s in rendered]
    assert positions == [(0.0, 0.0), (0.25, 0.5), (0.5, 1.0), (0.75, 1.5), (1.0, 2.0)]
    assert rendered[-1].source == LocationSource.POLL
    assert smoother.position == Coordinates(lat=1.0, lng=2.0)


@pytest.mark.asyncio
async def test_new_sample_restarts_from_current_rendered_position() -> None:
    rendered: list[LocationSample] = []
    release = asyncio.Event()

    async def gated_sleep(_delay: float) -> None:
        await release.wait()

    smoother = LocationSmoother(rendered.append, duration=1.0, frame_interval=0.5, sleep=gated_sleep)
    smoother.push(LocationSample(lat=0.0, lng=0.0))
    smoother.push(LocationSample(lat=2.0, lng=0.0))
    await asyncio.sleep(0)
    assert smoother.position == Coordinates(lat=1.0, lng=0.0)

    smoother.push(LocationSample(lat=1.0, lng=4.0))
    await asyncio.sleep(0)
    release.set()
    for _ in range(10):
        await asyncio.sleep(0)

    positions = [(s.lat, s.lng) for s in rendered]
    assert positions == [(0.0, 0.0), (1.0, 0.0), (1.0, 2.0), (1.0, 4.0)]


@pytest.mark.asyncio
async def test_reset_forgets_rendered_position() -> None:
    rendered: list[LocationSample] = []
    smoother = LocationSmoother(rendered.append)
    smoother.push(LocationSample(lat=5.0, lng=5.0))

    smoother.reset()
    smoother.push(LocationSample(lat=6.0, lng=6.0))

    assert [(s.lat, s.lng) for s in rendered] == [(5.0, 5.0), (6.0, 6.0)]
    await smoother.aclose()
