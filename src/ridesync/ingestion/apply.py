"""Conversion of ride payloads into :class:`RideUpdate` patches.

This module centralizes the common pattern used across ingestion paths:

- take a typed :class:`RideSnapshot` (from an event envelope or a poll)
- dump a normalized session patch from it
- wrap it in a :class:`RideUpdate` carrying its source and phase

Keeping this logic in one place guarantees pushed and polled data are
merged under the same rules.
"""

from __future__ import annotations

from typing import Any

from ridesync.config import Role
from ridesync.ingestion.normalize import prune_patch
from ridesync.models.events import Cancelled, Completed, Matched, Started
from ridesync.models.ride import RidePhase, RideSnapshot
from ridesync.state.events import RideUpdate, UpdateSource

# Phase implied by each lifecycle event regardless of the embedded status.
_EVENT_PHASES: dict[type, RidePhase] = {
    Matched: RidePhase.TRACKING,
    Started: RidePhase.IN_PROGRESS,
    Completed: RidePhase.COMPLETED,
    Cancelled: RidePhase.CANCELLED,
}


def snapshot_patch(snapshot: RideSnapshot, role: Role) -> dict[str, Any]:
    """Dump the session-relevant fields of *snapshot* as a pruned patch."""
    patch: dict[str, Any] = {
        "counterpart_id": snapshot.counterpart_id(role),
        "pickup": snapshot.pickup,
        "drop": snapshot.drop,
        "pickup_address": snapshot.pickup_location,
        "drop_address": snapshot.drop_location,
        "fare": snapshot.fare,
        "vehicle_type": snapshot.vehicle_type,
        "verification_code": snapshot.verification_code,
        "counterpart_display": snapshot.counterpart_display(role),
    }
    if role == Role.REQUESTER:
        patch["counterpart_location"] = snapshot.driver_location
    pruned: dict[str, Any] = prune_patch({k: v for k, v in patch.items() if v is not None})
    return pruned


def update_from_snapshot(
    snapshot: RideSnapshot,
    *,
    role: Role,
    source: UpdateSource,
    booking_id: str | None = None,
    phase: RidePhase | None = None,
) -> RideUpdate:
    """Build an update from a snapshot; *phase* overrides the snapshot status."""
    return RideUpdate(
        booking_id=snapshot.booking_id or booking_id,
        source=source,
        phase=phase if phase is not None else snapshot.phase,
        data=snapshot_patch(snapshot, role),
    )


def update_from_event(event: Matched | Started | Completed | Cancelled, *, role: Role) -> RideUpdate:
    """Build a PUSH update from a lifecycle event."""
    return update_from_snapshot(
        event.ride,
        role=role,
        source=UpdateSource.PUSH,
        phase=_EVENT_PHASES[type(event)],
    )
