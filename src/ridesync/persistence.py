"""Session persistence.

Only the active booking id is stored, under a per-role key. A stored id is
never trusted blindly: :meth:`SessionPersistence.resume` fetches the ride
and discards the id when the server reports it terminal, unknown or gone.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Protocol

from ridesync._constants import ACTIVE_RIDE_KEYS
from ridesync.config import Role
from ridesync.exceptions import HttpError
from ridesync.hydration import FetchRide
from ridesync.models.ride import RideSnapshot

_logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    """Minimal key/value store for persisted engine state."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemorySessionStore:
    """Process-local store (default when no path is configured)."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class FileSessionStore:
    """JSON object on disk; writes go through a temp file and ``os.replace``."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)

    def _read(self) -> dict[str, str]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            _logger.warning("Session store %s is not valid JSON; ignoring it", self.path)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items() if v is not None}

    def _write(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self.path)

    def get(self, key: str) -> str | None:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)


class SessionPersistence:
    """Stores and revalidates this participant's active booking id."""

    def __init__(self, store: SessionStore, role: Role, fetch: FetchRide) -> None:
        self._store = store
        self._fetch = fetch
        self.key = ACTIVE_RIDE_KEYS[role]

    def load(self) -> str | None:
        value = self._store.get(self.key)
        if value is None:
            return None
        value = value.strip()
        return value or None

    def save(self, booking_id: str) -> None:
        if self.load() == booking_id:
            return
        self._store.set(self.key, booking_id)
        _logger.debug("Persisted active ride %s under %s", booking_id, self.key)

    def clear(self) -> None:
        self._store.delete(self.key)
        _logger.debug("Cleared persisted ride under %s", self.key)

    async def resume(self) -> RideSnapshot | None:
        """Revalidate the stored id against the server.

        Returns the fetched snapshot when the ride is still active. The id
        is discarded when the ride is terminal, has no active phase, or no
        longer exists; it is kept (and ``None`` returned) when the server
        could not be reached, so the next start retries.
        """
        booking_id = self.load()
        if booking_id is None:
            return None
        try:
            snapshot = await self._fetch(booking_id)
        except HttpError as exc:
            if exc.status_code is not None and 400 <= exc.status_code < 500:
                _logger.debug("Stored ride %s rejected by server (HTTP %s)", booking_id, exc.status_code)
                self.clear()
            else:
                _logger.warning("Could not revalidate stored ride %s: %s", booking_id, exc)
            return None

        phase = snapshot.phase
        if phase is None or not phase.has_session:
            _logger.debug(
                "Stored ride %s is %s; not resuming",
                booking_id,
                snapshot.status.value if snapshot.status else "unknown",
            )
            self.clear()
            return None
        if snapshot.booking_id != booking_id:
            snapshot = snapshot.model_copy(update={"booking_id": booking_id})
        return snapshot
