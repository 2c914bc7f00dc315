"""Ride state machine.

Holds at most one active :class:`RideSession` and is the only component
allowed to mutate it. Every incoming update is merged field-by-field:

* absent fields never erase known values;
* ``verification_code`` is write-once while the ride is active;
* status only moves forward (see :mod:`ridesync.state.policy`); an update
  reporting an earlier status may still fill fields the session has never
  seen, but it cannot overwrite known ones;
* a terminal update closes the session and every later update for that
  booking id is ignored (the last ``CLOSED_HISTORY`` closed ids are kept).
"""

from __future__ import annotations

import copy
import logging
import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

from ridesync.exceptions import RideStateError
from ridesync.models.ride import Coordinates, CounterpartInfo, FareQuote, RidePhase
from ridesync.state.events import RideUpdate, UpdateSource
from ridesync.state.policy import can_advance, is_regression

_logger = logging.getLogger(__name__)

_WRITE_ONCE_FIELDS = frozenset({"verification_code"})

#: Closed booking ids remembered so late events for them are ignored.
CLOSED_HISTORY = 64


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RideSession(BaseModel):
    """The locally held view of the active ride."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    booking_id: str
    status: RidePhase
    counterpart_id: str | None = None
    pickup: Coordinates | None = None
    drop: Coordinates | None = None
    pickup_address: str | None = None
    drop_address: str | None = None
    fare: float | None = None
    vehicle_type: str | None = None
    verification_code: str | None = None
    counterpart_display: CounterpartInfo | None = None
    counterpart_location: Coordinates | None = None
    last_updated_at: datetime | None = None


_PATCHABLE_FIELDS = frozenset(RideSession.model_fields) - {"booking_id", "status", "last_updated_at"}


def _merge_value(existing: Any, incoming: Any) -> Any:
    if isinstance(existing, CounterpartInfo) and isinstance(incoming, CounterpartInfo):
        return existing.model_copy(update=incoming.model_dump(exclude_none=True))
    return copy.deepcopy(incoming)


def _merge_patch(session: RideSession, patch: dict[str, Any], *, overwrite: bool) -> list[str]:
    """Apply *patch* onto *session*, returning the names of changed fields.

    With ``overwrite=False`` only fields the session has never seen are
    filled (used for updates older than the current phase).
    """
    changed: list[str] = []
    for key, value in patch.items():
        if key not in _PATCHABLE_FIELDS:
            _logger.debug("Ignoring unknown session field %s", key)
            continue
        if value is None:
            continue
        current = getattr(session, key)
        if current is not None and (key in _WRITE_ONCE_FIELDS or not overwrite):
            continue
        merged = _merge_value(current, value)
        if merged != current:
            setattr(session, key, merged)
            changed.append(key)
    return changed


@dataclass(frozen=True)
class MergeOutcome:
    """What a single merge did to the state machine."""

    accepted: bool
    previous: RidePhase
    phase: RidePhase
    booking_id: str | None = None
    changed: tuple[str, ...] = ()
    session: RideSession | None = None
    closed: bool = False
    reason: str = ""

    @property
    def advanced(self) -> bool:
        return self.phase != self.previous

    def filled(self, name: str) -> bool:
        return name in self.changed


@dataclass
class _Slot:
    session: RideSession | None = None
    phase: RidePhase = RidePhase.SEARCH
    quotes: list[FareQuote] = field(default_factory=list)
    last_session: RideSession | None = None


class RideStateMachine:
    """Per-engine ride state.

    Single-threaded by contract: only the owning engine's handlers on the
    event loop call into it, so no locking is performed.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
        closed_history: int = CLOSED_HISTORY,
    ) -> None:
        self._clock = clock
        self._now = now
        self._slot = _Slot()
        self._closed: deque[str] = deque(maxlen=closed_history)
        self._last_trusted_at: float | None = None
        self._last_pushed_at: float | None = None

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def phase(self) -> RidePhase:
        return self._slot.phase

    @property
    def session(self) -> RideSession | None:
        """A copy of the active session (``None`` when no ride is active)."""
        session = self._slot.session
        return session.model_copy(deep=True) if session is not None else None

    @property
    def booking_id(self) -> str | None:
        session = self._slot.session
        return session.booking_id if session is not None else None

    @property
    def last_session(self) -> RideSession | None:
        """The most recently closed session (for rating / receipts)."""
        last = self._slot.last_session
        return last.model_copy(deep=True) if last is not None else None

    @property
    def quotes(self) -> list[FareQuote]:
        return list(self._slot.quotes)

    def is_closed(self, booking_id: str) -> bool:
        return booking_id in self._closed

    def trusted_age(self) -> float:
        """Seconds since the last trusted (server-originated) update."""
        if self._last_trusted_at is None:
            return math.inf
        return self._clock() - self._last_trusted_at

    def push_age(self) -> float:
        """Seconds since the push channel last delivered something for the session.

        Unlike :meth:`trusted_age`, the poller's own fetches do not reset it.
        """
        if self._last_pushed_at is None:
            return math.inf
        return self._clock() - self._last_pushed_at

    def touch(self) -> None:
        """Record a pushed signal that is not a session patch (e.g. a location report)."""
        self._last_trusted_at = self._last_pushed_at = self._clock()

    # ------------------------------------------------------------------
    # Local transitions without a session
    # ------------------------------------------------------------------

    def begin_quote(self, quotes: list[FareQuote]) -> MergeOutcome:
        """SEARCH → QUOTING after a successful quote request."""
        previous = self._slot.phase
        if self._slot.session is not None:
            raise RideStateError(f"Cannot quote while a ride is {previous.value}")
        self._slot.quotes = list(quotes)
        self._slot.phase = RidePhase.QUOTING
        return MergeOutcome(accepted=True, previous=previous, phase=RidePhase.QUOTING)

    def abandon_quote(self) -> MergeOutcome:
        """QUOTING → SEARCH when the user backs out before booking."""
        previous = self._slot.phase
        if previous != RidePhase.QUOTING:
            raise RideStateError(f"No quote to abandon in phase {previous.value}")
        self._slot.quotes = []
        self._slot.phase = RidePhase.SEARCH
        return MergeOutcome(accepted=True, previous=previous, phase=RidePhase.SEARCH)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def open_session(self, update: RideUpdate) -> MergeOutcome:
        """Create the active session from a confirmed booking, accept or rehydration.

        The session enters ``update.phase`` directly; callers resuming a
        ride therefore skip SEARCH/QUOTING/BOOKING.
        """
        previous = self._slot.phase
        booking_id = update.booking_id
        phase = update.phase
        if booking_id is None or phase is None or not phase.has_session:
            raise RideStateError("A session needs a booking id and an active phase")
        if self._slot.session is not None:
            if self._slot.session.booking_id == booking_id:
                return self.apply(update)
            raise RideStateError(f"Ride {self._slot.session.booking_id} is already active")
        if booking_id in self._closed:
            return MergeOutcome(
                accepted=False,
                previous=previous,
                phase=previous,
                booking_id=booking_id,
                reason="booking already closed",
            )

        session = RideSession(booking_id=booking_id, status=phase, last_updated_at=self._now())
        changed = _merge_patch(session, update.data, overwrite=True)
        self._slot.session = session
        self._slot.phase = phase
        self._slot.quotes = []
        # Opening always comes from a server reply, so the staleness clocks start here.
        self._last_trusted_at = self._last_pushed_at = self._clock()
        _logger.debug("Session %s opened in %s via %s", booking_id, phase.value, update.source.value)
        return MergeOutcome(
            accepted=True,
            previous=previous,
            phase=phase,
            booking_id=booking_id,
            changed=("status", *changed),
            session=session.model_copy(deep=True),
        )

    def apply(self, update: RideUpdate) -> MergeOutcome:
        """Merge an update into the active session."""
        previous = self._slot.phase
        session = self._slot.session

        if update.booking_id is not None and update.booking_id in self._closed:
            return MergeOutcome(False, previous, previous, update.booking_id, reason="booking already closed")
        if session is None:
            return MergeOutcome(False, previous, previous, update.booking_id, reason="no active session")
        if update.booking_id is not None and update.booking_id != session.booking_id:
            return MergeOutcome(False, previous, previous, update.booking_id, reason="different booking")

        current = session.status
        incoming = update.phase
        regression = is_regression(current, incoming)
        advance = incoming is not None and incoming != current and can_advance(current, incoming)

        changed = _merge_patch(session, update.data, overwrite=not regression)
        if advance and incoming is not None:
            session.status = incoming
            changed.insert(0, "status")
        if changed:
            session.last_updated_at = self._now()
        if update.source.is_trusted:
            self._last_trusted_at = self._clock()
        if update.source == UpdateSource.PUSH:
            self._last_pushed_at = self._last_trusted_at

        if regression:
            _logger.debug(
                "Ignored %s status %s for %s (current %s)",
                update.source.value,
                incoming.value if incoming else None,
                session.booking_id,
                current.value,
            )

        snapshot = session.model_copy(deep=True)
        if session.status.is_terminal:
            self._close(session)
            return MergeOutcome(
                accepted=True,
                previous=previous,
                phase=session.status,
                booking_id=session.booking_id,
                changed=tuple(changed),
                session=snapshot,
                closed=True,
            )

        self._slot.phase = session.status
        return MergeOutcome(
            accepted=True,
            previous=previous,
            phase=session.status,
            booking_id=session.booking_id,
            changed=tuple(changed),
            session=snapshot,
            reason="stale status" if regression else "",
        )

    def discard(self) -> RideSession | None:
        """Drop the active session without a terminal status (sign-out)."""
        session = self._slot.session
        self._slot = _Slot(last_session=self._slot.last_session)
        self._last_trusted_at = self._last_pushed_at = None
        return session

    def _close(self, session: RideSession) -> None:
        if session.booking_id not in self._closed:
            self._closed.append(session.booking_id)
        self._slot.last_session = session
        self._slot.session = None
        self._slot.phase = session.status
        self._last_trusted_at = self._last_pushed_at = None
        _logger.debug("Session %s closed as %s", session.booking_id, session.status.value)
