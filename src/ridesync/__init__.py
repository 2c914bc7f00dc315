"""ridesync - Real-time ride-state synchronization engine."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("ridesync")
except PackageNotFoundError:
    __version__ = "0+local"
from ridesync.config import RideSyncConfig, Role
from ridesync.connection import ConnectionManager, ConnectionState
from ridesync.engine import RideSyncEngine
from ridesync.exceptions import (
    CommandRejected,
    ConfigError,
    HttpError,
    MalformedMessage,
    RideStateError,
    RideSyncError,
    StaleDataError,
    TransportError,
    TransportTimeout,
)
from ridesync.models import (
    ChatMessage,
    Coordinates,
    CounterpartInfo,
    FareQuote,
    LocationSample,
    LocationSource,
    Notification,
    NotificationLevel,
    RidePhase,
    RideSnapshot,
    RideStatus,
)
from ridesync.persistence import FileSessionStore, MemorySessionStore, SessionStore
from ridesync.state.machine import RideSession

__all__ = [
    "__version__",
    "ChatMessage",
    "CommandRejected",
    "ConfigError",
    "ConnectionManager",
    "ConnectionState",
    "Coordinates",
    "CounterpartInfo",
    "FareQuote",
    "FileSessionStore",
    "HttpError",
    "LocationSample",
    "LocationSource",
    "MalformedMessage",
    "MemorySessionStore",
    "Notification",
    "NotificationLevel",
    "RidePhase",
    "RideSession",
    "RideSnapshot",
    "RideStateError",
    "RideStatus",
    "RideSyncConfig",
    "RideSyncEngine",
    "RideSyncError",
    "SessionStore",
    "StaleDataError",
    "TransportError",
    "TransportTimeout",
]
