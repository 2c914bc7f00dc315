"""Transport connection manager.

Owns one logical broker connection:

- ``connect()`` is idempotent; a caller arriving while an attempt is in
  flight attaches to it and gives up after ``connect_timeout`` with
  :class:`TransportTimeout`.
- subscribe/send operations issued while not CONNECTED are queued as
  :class:`PendingOperation` and replayed FIFO, exactly once, on connect.
- a dropped link reverts to DISCONNECTED, re-queues live subscriptions and
  schedules reconnects with exponential backoff until it succeeds or
  ``disconnect()`` is called.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import random
from collections import deque
from collections.abc import Callable, Hashable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from ridesync._mqtt import BrokerLink
from ridesync._redact import redact_for_log
from ridesync._tasks import TaskOwner
from ridesync.exceptions import TransportError, TransportTimeout
from ridesync.subscriptions import SubscriptionRegistry

_logger = logging.getLogger(__name__)


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class OperationKind(StrEnum):
    SUBSCRIBE = "subscribe"
    SEND = "send"


@dataclass
class PendingOperation:
    """A subscribe or send deferred until the link is CONNECTED."""

    kind: OperationKind
    destination: str
    run: Callable[[], None]
    key: Hashable | None = None


class ConnectionManager:
    """Single logical connection to the pub/sub broker.

    Parameters
    ----------
    link : BrokerLink
        The underlying transport (paho-mqtt in production, a fake in tests).
    connect_timeout : float
        Bounded wait for callers attaching to an in-flight connect.
    reconnect_base_delay, reconnect_max_delay : float
        Backoff bounds; delay doubles per consecutive failure.
    reconnect_alert_after : int
        Consecutive failed attempts before ``on_unavailable`` fires (once
        per outage); ``on_restored`` fires on the next successful connect.
    """

    def __init__(
        self,
        link: BrokerLink,
        *,
        connect_timeout: float = 10.0,
        reconnect_base_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
        reconnect_alert_after: int = 5,
        on_state_change: Callable[[ConnectionState], None] | None = None,
        on_unavailable: Callable[[], None] | None = None,
        on_restored: Callable[[], None] | None = None,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        self._link = link
        self._connect_timeout = connect_timeout
        self._base_delay = reconnect_base_delay
        self._max_delay = reconnect_max_delay
        self._alert_after = reconnect_alert_after
        self._on_state_change = on_state_change
        self._on_unavailable = on_unavailable
        self._on_restored = on_restored
        self._jitter = jitter

        self._state = ConnectionState.DISCONNECTED
        self._pending: deque[PendingOperation] = deque()
        self._attempt: asyncio.Task[None] | None = None
        self._failures = 0
        self._unavailable = False
        self._closed = True
        self._tasks = TaskOwner("connection", logger=_logger)

        link.set_on_connection_lost(self._handle_lost)
        self.registry = SubscriptionRegistry(self)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def link(self) -> BrokerLink:
        return self._link

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def pending(self) -> tuple[PendingOperation, ...]:
        return tuple(self._pending)

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def realtime_available(self) -> bool:
        return not self._unavailable

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect (or attach to an in-flight attempt).

        Raises
        ------
        TransportTimeout
            Attached to an in-flight attempt that did not resolve in time.
        TransportError
            The attempt failed; a reconnect has been scheduled.
        """
        if self._state == ConnectionState.CONNECTED:
            return
        self._closed = False

        attempt = self._attempt
        if attempt is not None and not attempt.done():
            try:
                await asyncio.wait_for(asyncio.shield(attempt), self._connect_timeout)
            except TimeoutError as exc:
                raise TransportTimeout(f"Connect still in progress after {self._connect_timeout}s") from exc
            return

        self._tasks.cancel("reconnect")
        self._attempt = asyncio.get_running_loop().create_task(self._open())
        try:
            await asyncio.shield(self._attempt)
        except TransportError:
            self._schedule_reconnect()
            raise

    async def _open(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._link.connect()
        except asyncio.CancelledError:
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        except (TransportError, OSError) as exc:
            self._set_state(ConnectionState.DISCONNECTED)
            self._failures += 1
            _logger.warning("Broker connect failed (attempt %d): %s", self._failures, exc)
            if self._failures >= self._alert_after and not self._unavailable:
                self._unavailable = True
                if self._on_unavailable is not None:
                    self._on_unavailable()
            if isinstance(exc, TransportError):
                raise
            raise TransportError(f"Broker connect failed: {exc}") from exc

        self._failures = 0
        self._set_state(ConnectionState.CONNECTED)
        if self._unavailable:
            self._unavailable = False
            if self._on_restored is not None:
                self._on_restored()
        self._flush()

    async def disconnect(self) -> None:
        """Unsubscribe everything, tear the link down and drop queued operations."""
        self._closed = True
        self.registry.unsubscribe_all()
        await self._tasks.aclose()
        attempt = self._attempt
        self._attempt = None
        if attempt is not None and not attempt.done():
            attempt.cancel()
            with contextlib.suppress(asyncio.CancelledError, TransportError):
                await attempt
        dropped = len(self._pending)
        self._pending.clear()
        try:
            await self._link.disconnect()
        except TransportError:
            _logger.debug("Broker disconnect failed", exc_info=True)
        self._failures = 0
        self._set_state(ConnectionState.DISCONNECTED)
        _logger.debug("Disconnected; dropped %d pending operation(s)", dropped)

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    def backoff_delay(self, failures: int) -> float:
        """Delay before the next attempt after *failures* consecutive failures."""
        exponent = max(0, min(failures - 1, 16))
        raw = self._base_delay * (2**exponent)
        return min(self._max_delay, raw * (0.8 + 0.4 * self._jitter()))

    def _schedule_reconnect(self) -> None:
        if self._closed or self._tasks.is_running("reconnect"):
            return
        self._tasks.spawn("reconnect", self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while not self._closed and self._state != ConnectionState.CONNECTED:
            delay = self.backoff_delay(max(self._failures, 1))
            _logger.debug("Reconnecting in %.2fs", delay)
            await asyncio.sleep(delay)
            if self._closed or self._state == ConnectionState.CONNECTED:
                return
            attempt = self._attempt
            if attempt is None or attempt.done():
                attempt = asyncio.get_running_loop().create_task(self._open())
                self._attempt = attempt
            try:
                await asyncio.shield(attempt)
            except TransportError:
                continue

    def _handle_lost(self, exc: Exception) -> None:
        if self._state != ConnectionState.CONNECTED:
            return
        _logger.warning("Broker link lost: %s", exc)
        self._set_state(ConnectionState.DISCONNECTED)
        self.registry.requeue_live()
        self._schedule_reconnect()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def enqueue(self, operation: PendingOperation) -> None:
        """Defer an operation; keyed operations replace an earlier one with the same key."""
        if operation.key is not None:
            self.drop_pending(operation.key)
        self._pending.append(operation)
        _logger.debug("Queued %s %s (%d pending)", operation.kind.value, operation.destination, len(self._pending))

    def defer(
        self,
        kind: OperationKind | str,
        destination: str,
        run: Callable[[], None],
        *,
        key: Hashable | None = None,
    ) -> PendingOperation:
        operation = PendingOperation(OperationKind(kind), destination, run, key)
        self.enqueue(operation)
        return operation

    def drop_pending(self, key: Hashable) -> int:
        before = len(self._pending)
        self._pending = deque(op for op in self._pending if op.key != key)
        return before - len(self._pending)

    def send(self, destination: str, payload: Mapping[str, Any] | bytes) -> bool:
        """Publish now when CONNECTED, otherwise queue for replay.

        Returns ``True`` when the message went out immediately.
        """
        body = payload if isinstance(payload, bytes) else json.dumps(payload, separators=(",", ":")).encode()

        def _publish() -> None:
            self._link.publish(destination, body)

        if self._state == ConnectionState.CONNECTED:
            try:
                _publish()
                _logger.debug("Sent %s %s", destination, redact_for_log(payload))
                return True
            except TransportError as exc:
                self.enqueue(PendingOperation(OperationKind.SEND, destination, _publish))
                self._handle_lost(exc)
                return False

        self.enqueue(PendingOperation(OperationKind.SEND, destination, _publish))
        return False

    def _flush(self) -> None:
        replayed = 0
        while self._pending and self._state == ConnectionState.CONNECTED:
            operation = self._pending.popleft()
            try:
                operation.run()
            except TransportError as exc:
                self._pending.appendleft(operation)
                self._handle_lost(exc)
                break
            replayed += 1
        if replayed:
            _logger.debug("Replayed %d queued operation(s)", replayed)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        _logger.debug("Connection %s -> %s", self._state.value, state.value)
        self._state = state
        if self._on_state_change is not None:
            self._on_state_change(state)
