#!/usr/bin/env python3
"""Passive ride watcher for observing push/poll synchronization.

This script runs a :class:`ridesync.RideSyncEngine` configured from
``RIDESYNC_*`` environment variables and prints every phase change,
notification, smoothed counterpart position and chat line it produces.

Use it to see whether pushed events arrive or the poller is doing the work.
Install the package first (``pip install -e .``).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
import time
from dataclasses import dataclass

from ridesync import RideSyncConfig, RideSyncEngine
from ridesync.models import ChatMessage, LocationSample, Notification, RidePhase, RideSnapshot
from ridesync.state.machine import RideSession

_LOG = logging.getLogger("ride_watch")


@dataclass
class WatchStats:
    started_at: float
    state_changes: int = 0
    notifications: int = 0
    positions: int = 0
    chat_messages: int = 0
    last_event_at: float | None = None

    def touch(self, now: float) -> None:
        self.last_event_at = now


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Watch the active ride of one participant.",
    )
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        help="Maximum runtime in seconds (0 = run until Ctrl+C).",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the session as JSON on every phase change.",
    )
    parser.add_argument(
        "--positions",
        action="store_true",
        help="Print every smoothed counterpart position (noisy).",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args()


def _session_json(session: RideSession | None) -> str:
    if session is None:
        return "null"
    body = {
        "bookingId": session.booking_id,
        "status": session.status.value,
        "counterpartId": session.counterpart_id,
        "hasCode": session.verification_code is not None,
        "fare": session.fare,
    }
    return json.dumps(body, ensure_ascii=False, sort_keys=True)


def _print_summary(stats: WatchStats) -> None:
    runtime = time.time() - stats.started_at
    print("[watch] Summary")
    print(f"[watch]   runtime_s     : {runtime:.1f}")
    print(f"[watch]   state_changes : {stats.state_changes}")
    print(f"[watch]   notifications : {stats.notifications}")
    print(f"[watch]   positions     : {stats.positions}")
    print(f"[watch]   chat_messages : {stats.chat_messages}")


async def _watch(args: argparse.Namespace, config: RideSyncConfig, stats: WatchStats) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)

    def on_state_change(phase: RidePhase, session: RideSession | None) -> None:
        stats.state_changes += 1
        stats.touch(time.time())
        booking = session.booking_id if session is not None else "-"
        print(f"[watch] phase={phase.value} booking={booking}")
        if args.json:
            print(_session_json(session))

    def on_notification(notification: Notification) -> None:
        stats.notifications += 1
        print(f"[watch] {notification.level.value.upper()}: {notification.message}")

    def on_location(sample: LocationSample) -> None:
        stats.positions += 1
        if args.positions:
            print(f"[watch] position {sample.lat:.6f},{sample.lng:.6f} source={sample.source.value}")

    def on_chat_message(message: ChatMessage) -> None:
        stats.chat_messages += 1
        print(f"[watch] chat from {message.sender_name or message.sender_id}: {message.message}")

    def on_ride_request(snapshot: RideSnapshot) -> None:
        print(f"[watch] ride request {snapshot.booking_id} pickup={snapshot.pickup_location or snapshot.pickup}")

    engine = RideSyncEngine(
        config,
        on_state_change=on_state_change,
        on_notification=on_notification,
        on_location=on_location,
        on_chat_message=on_chat_message,
        on_ride_request=on_ride_request,
    )
    async with engine:
        session = engine.session
        print(f"[watch] participant={config.participant_id} role={config.role.value} phase={engine.phase.value}")
        if session is not None:
            print(f"[watch] resumed booking {session.booking_id}")
        timeout = args.duration if args.duration > 0 else None
        try:
            await asyncio.wait_for(stop.wait(), timeout)
        except TimeoutError:
            print(f"[watch] Reached --duration={args.duration}s, stopping.")


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    config = RideSyncConfig.from_env()
    stats = WatchStats(started_at=time.time())
    try:
        asyncio.run(_watch(args, config, stats))
    except KeyboardInterrupt:
        pass
    except Exception as exc:  # pragma: no cover - network/system interaction
        _LOG.debug("Watch failed", exc_info=True)
        print(f"[watch] Failed: {exc}", file=sys.stderr)
        return 2

    _print_summary(stats)
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
