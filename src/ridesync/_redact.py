"""Helpers for safe debug logging.

Ride payloads carry the one-time verification code, contact numbers and
broker/API credentials. Everything that reaches a DEBUG log goes through
:func:`redact_for_log` first.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel

# Compared after lower-casing and dropping "_" so camelCase and snake_case match.
_SECRET_KEYS: frozenset[str] = frozenset(
    {
        "otp",
        "verificationcode",
        "password",
        "brokerpassword",
        "token",
        "accesstoken",
        "refreshtoken",
        "authorization",
        "cookie",
    }
)
_PHONE_KEYS: frozenset[str] = frozenset({"phone", "customerphone", "driverphone", "emergencyphone"})

_MAX_DEPTH = 20


def _normalize_key(key: Any) -> str:
    return str(key).lower().replace("_", "")


def _mask_phone(value: Any) -> str:
    text = str(value)
    if len(text) <= 2:
        return "**"
    return "*" * (len(text) - 2) + text[-2:]


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a redacted copy of *value* suitable for debug logs.

    Secrets become ``"<redacted>"``, phone numbers keep their last two
    digits, long strings are truncated and pydantic models are dumped by
    alias before redaction.
    """
    if _depth > _MAX_DEPTH:
        return "<max-depth>"

    if value is None or isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, str):
        return value if len(value) <= max_string else f"{value[:max_string]}…<truncated>"

    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", by_alias=True, exclude_none=True)

    if isinstance(value, Mapping):
        redacted: dict[str, Any] = {}
        for key, item in value.items():
            name = _normalize_key(key)
            if item is None:
                redacted[str(key)] = None
            elif name in _SECRET_KEYS:
                redacted[str(key)] = "<redacted>"
            elif name in _PHONE_KEYS:
                redacted[str(key)] = _mask_phone(item)
            else:
                redacted[str(key)] = redact_for_log(item, max_string=max_string, _depth=_depth + 1)
        return redacted

    if isinstance(value, Sequence):
        return [redact_for_log(item, max_string=max_string, _depth=_depth + 1) for item in value]

    return repr(value)
