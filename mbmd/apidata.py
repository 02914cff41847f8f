"""Ordered JSON export of device readings."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from .readings import Readings
from .snips import unix_seconds


def _rfc3339(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    text = ts.strftime("%Y-%m-%dT%H:%M:%S")
    if ts.microsecond:
        text += "." + f"{ts.microsecond:06d}".rstrip("0")
    offset = ts.utcoffset()
    if not offset:
        return text + "Z"
    minutes = int(offset.total_seconds()) // 60
    sign = "+" if minutes >= 0 else "-"
    hours, mins = divmod(abs(minutes), 60)
    return f"{text}{sign}{hours:02d}:{mins:02d}"


def _encode_value(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:f}"
    if isinstance(value, datetime):
        return json.dumps(_rfc3339(value))
    return json.dumps(value)


def encode_pairs(pairs: Iterable[tuple[str, Any]]) -> str:
    """Encode key/value pairs as a JSON object, keeping their order.

    Floats are written with six decimals; datetimes as RFC 3339 strings.
    """
    body = ",".join(f"{json.dumps(key)}:{_encode_value(val)}" for key, val in pairs)
    return "{" + body + "}"


def api_data(readings: Readings) -> str:
    """JSON object with timestamp, unix time and the values sorted by measurement name."""
    header = [
        ("Timestamp", readings.timestamp),
        ("Unix", unix_seconds(readings.timestamp)),
    ]
    values = sorted((str(m), v) for m, v in readings.values.items())
    return encode_pairs(header + values)