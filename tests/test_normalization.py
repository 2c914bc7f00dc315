from __future__ import annotations

from datetime import UTC, datetime

from ridesync.ingestion.normalize import normalize_timestamp_seconds, prune_patch, safe_float, safe_str
from ridesync.models._base import parse_ride_timestamp


def test_safe_float_rejects_placeholders() -> None:
    assert safe_float("12.5") == 12.5
    assert safe_float("--") is None
    assert safe_float("NaN") is None
    assert safe_float(True) is None
    assert safe_float(float("inf")) is None


def test_safe_str_strips_and_drops_placeholders() -> None:
    assert safe_str(" B1 ") == "B1"
    assert safe_str(1234) == "1234"
    assert safe_str("null") is None


def test_prune_patch_drops_empty_values_recursively() -> None:
    patch = {
        "fare": 0.0,
        "vehicle_type": "",
        "counterpart_display": {"name": "--", "phone": None},
        "stops": [{}, "A", ""],
    }

    assert prune_patch(patch) == {"fare": 0.0, "stops": ["A"]}


def test_timestamps_accept_seconds_milliseconds_and_iso() -> None:
    expected = datetime.fromtimestamp(1_770_928_447, tz=UTC)

    assert parse_ride_timestamp(1_770_928_447) == expected
    assert parse_ride_timestamp(1_770_928_447_000) == expected
    assert parse_ride_timestamp("2026-02-12T20:34:07Z") == expected
    assert normalize_timestamp_seconds(0) is None
    assert normalize_timestamp_seconds("not a date") is None
