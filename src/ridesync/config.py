"""Engine configuration for ridesync."""

from __future__ import annotations

import dataclasses
import os
from enum import StrEnum
from typing import Any

from ridesync.exceptions import ConfigError


class Role(StrEnum):
    """Which side of the ride this engine instance represents."""

    REQUESTER = "requester"
    PROVIDER = "provider"


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class RideSyncConfig:
    """Engine configuration.

    Parameters
    ----------
    participant_id : str
        Id of the local party (customer id or driver id). Used for the
        ride-updates topic and for provider commands.
    role : Role
        Requester or provider.
    api_base_url : str
        Base URL of the ride resource API.
    broker_host, broker_port : str, int
        MQTT broker address.
    broker_tls : bool
        Enable TLS on the broker link.
    broker_username, broker_password : str or None
        Optional broker credentials.
    topic_prefix : str
        Prefix prepended to every broker topic.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    request_timeout : float
        Total timeout for one ride API request.
    connect_timeout : float
        Bounded wait for a caller attaching to an in-flight connect.
    reconnect_base_delay, reconnect_max_delay : float
        Exponential backoff bounds for broker reconnects.
    reconnect_alert_after : int
        Consecutive reconnect failures before the "real-time updates
        unavailable" notice is raised.
    poll_interval : float
        Reconciliation poller tick while TRACKING / IN_PROGRESS.
    staleness_threshold : float
        Seconds without a trusted update before the poller fetches.
    match_poll_interval : float
        Poll interval while BOOKING (waiting for a provider).
    stale_ceiling : float
        Seconds without any trusted update before an error notice is raised.
    hydration_attempts : int
        Verification-code fetch attempts per booking.
    hydration_delay : float
        Fixed delay between hydration attempts.
    animation_duration, animation_frame_interval : float
        Location smoother interpolation window and frame spacing.
    session_store_path : str or None
        JSON file for session persistence; in-memory when ``None``.
    sos_countdown : float
        Seconds before a triggered SOS is sent.
    """

    participant_id: str
    role: Role = Role.REQUESTER
    api_base_url: str = "http://localhost:8080/api"
    broker_host: str = "localhost"
    broker_port: int = 1883
    broker_tls: bool = False
    broker_username: str | None = None
    broker_password: str | None = None
    topic_prefix: str = ""
    mqtt_keepalive: int = 60
    request_timeout: float = 15.0
    connect_timeout: float = 10.0
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    reconnect_alert_after: int = 5
    poll_interval: float = 5.0
    staleness_threshold: float = 6.0
    match_poll_interval: float = 3.0
    stale_ceiling: float = 300.0
    hydration_attempts: int = 3
    hydration_delay: float = 0.8
    animation_duration: float = 2.0
    animation_frame_interval: float = 0.05
    session_store_path: str | None = None
    sos_countdown: float = 10.0

    def __post_init__(self) -> None:
        if not str(self.participant_id).strip():
            raise ConfigError("participant_id must be non-empty")
        if not isinstance(self.role, Role):
            try:
                object.__setattr__(self, "role", Role(str(self.role).lower()))
            except ValueError as exc:
                raise ConfigError(f"Unknown role: {self.role!r}") from exc
        for name in (
            "request_timeout",
            "connect_timeout",
            "reconnect_base_delay",
            "reconnect_max_delay",
            "poll_interval",
            "staleness_threshold",
            "match_poll_interval",
            "stale_ceiling",
            "animation_duration",
            "animation_frame_interval",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.hydration_attempts < 1:
            raise ConfigError("hydration_attempts must be at least 1")
        if self.hydration_delay < 0 or self.sos_countdown < 0:
            raise ConfigError("delays must not be negative")

    @classmethod
    def from_env(cls, **overrides: Any) -> RideSyncConfig:
        """Create configuration from ``RIDESYNC_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "RIDESYNC_PARTICIPANT_ID": "participant_id",
            "RIDESYNC_ROLE": "role",
            "RIDESYNC_API_BASE_URL": "api_base_url",
            "RIDESYNC_BROKER_HOST": "broker_host",
            "RIDESYNC_BROKER_USERNAME": "broker_username",
            "RIDESYNC_BROKER_PASSWORD": "broker_password",
            "RIDESYNC_TOPIC_PREFIX": "topic_prefix",
            "RIDESYNC_SESSION_STORE_PATH": "session_store_path",
        }
        _ENV_INT_MAP = {
            "RIDESYNC_BROKER_PORT": "broker_port",
            "RIDESYNC_MQTT_KEEPALIVE": "mqtt_keepalive",
            "RIDESYNC_RECONNECT_ALERT_AFTER": "reconnect_alert_after",
            "RIDESYNC_HYDRATION_ATTEMPTS": "hydration_attempts",
        }
        _ENV_FLOAT_MAP = {
            "RIDESYNC_REQUEST_TIMEOUT": "request_timeout",
            "RIDESYNC_CONNECT_TIMEOUT": "connect_timeout",
            "RIDESYNC_POLL_INTERVAL": "poll_interval",
            "RIDESYNC_STALENESS_THRESHOLD": "staleness_threshold",
            "RIDESYNC_MATCH_POLL_INTERVAL": "match_poll_interval",
            "RIDESYNC_STALE_CEILING": "stale_ceiling",
            "RIDESYNC_HYDRATION_DELAY": "hydration_delay",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val
        try:
            for env_key, field_name in _ENV_INT_MAP.items():
                val = env.get(env_key)
                if val is not None:
                    config_kwargs[field_name] = int(val)
            for env_key, field_name in _ENV_FLOAT_MAP.items():
                val = env.get(env_key)
                if val is not None:
                    config_kwargs[field_name] = float(val)
        except ValueError as exc:
            raise ConfigError(f"Invalid numeric environment value: {exc}") from exc

        if "broker_tls" not in overrides:
            config_kwargs["broker_tls"] = _env_bool(env.get("RIDESYNC_BROKER_TLS"), False)

        config_kwargs.update(overrides)
        if "participant_id" not in config_kwargs:
            raise ConfigError("RIDESYNC_PARTICIPANT_ID is not set")

        return cls(**config_kwargs)
