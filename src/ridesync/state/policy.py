"""Deterministic phase-transition policy.

This module contains *no* payload parsing. The ingestion layer produces
normalized patches; the policy only decides ordering questions.
"""

from __future__ import annotations

from ridesync.models.ride import RidePhase

PHASE_RANK: dict[RidePhase, int] = {
    RidePhase.SEARCH: 0,
    RidePhase.QUOTING: 1,
    RidePhase.BOOKING: 2,
    RidePhase.TRACKING: 3,
    RidePhase.IN_PROGRESS: 4,
    RidePhase.COMPLETED: 5,
    RidePhase.CANCELLED: 5,
}


def phase_rank(phase: RidePhase) -> int:
    return PHASE_RANK[phase]


def can_advance(current: RidePhase, incoming: RidePhase) -> bool:
    """Whether a session in *current* may move to *incoming*.

    Policy:
    - terminal phases never move.
    - CANCELLED is reachable from every phase that holds a session.
    - otherwise the rank must strictly increase; skipping intermediate
      phases is allowed so a lost "matched" or "started" event cannot
      strand the session.
    """
    if current.is_terminal:
        return False
    if incoming == RidePhase.CANCELLED:
        return current.has_session
    return phase_rank(incoming) > phase_rank(current)


def is_regression(current: RidePhase, incoming: RidePhase | None) -> bool:
    """True when *incoming* reports an earlier phase than *current*."""
    if incoming is None:
        return False
    return phase_rank(incoming) < phase_rank(current)
