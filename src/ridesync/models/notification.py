"""User-facing notifications emitted by the engine."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class NotificationLevel(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notification:
    """A toast-style message for the UI layer.

    ``error`` carries the underlying exception for ERROR/WARNING notices
    raised by failed commands or unrecoverable staleness.
    """

    message: str
    level: NotificationLevel = NotificationLevel.INFO
    error: Exception | None = None
