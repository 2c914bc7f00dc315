"""Normalization helpers.

Ride backends send ``""``, ``"--"`` or ``"null"`` where a value is not
known yet, send ids as numbers and timestamps in several encodings. These
helpers turn all of that into ``None`` or a canonical Python value before
anything reaches the state machine.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any

PLACEHOLDERS = frozenset({"", "--", "null", "undefined", "NaN", "nan"})


def is_placeholder(value: Any) -> bool:
    return isinstance(value, str) and value.strip() in PLACEHOLDERS


def safe_float(value: Any) -> float | None:
    """Parse a finite float; booleans and placeholders give ``None``."""
    if value is None or isinstance(value, bool) or is_placeholder(value):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(result) or math.isinf(result) else result


def safe_str(value: Any) -> str | None:
    """Stringify ids (``42`` -> ``"42"``), dropping placeholders."""
    if value is None:
        return None
    text = str(value).strip()
    return None if text in PLACEHOLDERS else text


def prune_patch(data: Any) -> Any:
    """Recursively drop empty values from a session patch.

    Nested dicts and lists are pruned first; a container left empty is then
    dropped itself. Other values (including pydantic models) pass through.

    The state machine relies on this: a key that is absent from a patch
    means "no information", never "clear this field".
    """
    if isinstance(data, dict):
        pruned = {key: prune_patch(value) for key, value in data.items()}
        return {key: value for key, value in pruned.items() if not _is_empty(value)}
    if isinstance(data, list):
        return [item for item in (prune_patch(value) for value in data) if not _is_empty(item)]
    return data


def _is_empty(value: Any) -> bool:
    return value is None or is_placeholder(value) or value == {} or value == []


def normalize_timestamp_seconds(value: Any) -> float | None:
    """Normalize API timestamps to epoch seconds.

    Accepts epoch seconds, epoch milliseconds (anything above ``1e11``) and
    ISO-8601 text; missing, non-positive or unparseable values give ``None``.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str) and safe_float(value) is None:
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=UTC)
        return dt.timestamp()
    ts = safe_float(value)
    if ts is None or ts <= 0:
        return None
    if ts > 1e11:
        ts /= 1000.0
    return ts
