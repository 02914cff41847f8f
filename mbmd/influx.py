"""InfluxDB publisher using the line protocol over HTTP."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

import requests

from .snips import QuerySnip

log = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MEASUREMENT_ESCAPES = str.maketrans({",": r"\,", " ": r"\ "})
_KEY_ESCAPES = str.maketrans({",": r"\,", "=": r"\=", " ": r"\ "})


def _unix_nanos(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return (ts - _EPOCH) // timedelta(microseconds=1) * 1000


def _field_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return f"{value}i"
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"influx: non-finite field value {value}")
        return repr(value)
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    raise TypeError(f"influx: unsupported field type {type(value).__name__}")


def line_protocol(
    measurement: str,
    tags: Mapping[str, str],
    fields: Mapping[str, Any],
    timestamp: datetime,
) -> str:
    """Encode one point in line protocol with tags and fields sorted by key."""
    if not fields:
        raise ValueError("influx: point without fields")
    tag_part = "".join(
        f",{key.translate(_KEY_ESCAPES)}={value.translate(_KEY_ESCAPES)}"
        for key, value in sorted(tags.items())
        if value != ""
    )
    field_part = ",".join(
        f"{key.translate(_KEY_ESCAPES)}={_field_value(value)}"
        for key, value in sorted(fields.items())
    )
    head = measurement.translate(_MEASUREMENT_ESCAPES)
    return f"{head}{tag_part} {field_part} {_unix_nanos(timestamp)}"


class Influx:
    """Writes query results to an InfluxDB v2 (or v1 compatible) server."""

    def __init__(
        self,
        url: str,
        database: str,
        measurement: str,
        org: str = "",
        token: str | None = None,
        user: str = "",
        password: str | None = None,
        session: Any = None,
        timeout: float = 10.0,
    ) -> None:
        if not database:
            raise ValueError("influx: missing database")
        if not measurement:
            raise ValueError("influx: missing measurement")
        if not token and user:
            token = f"{user}:{password or ''}"

        self.measurement = measurement
        self._session = session if session is not None else requests.Session()
        self._timeout = timeout
        self._write_url = f"{url.rstrip('/')}/api/v2/write"
        self._params = {"org": org, "bucket": database, "precision": "ns"}
        self._headers = {"Content-Type": "text/plain; charset=utf-8"}
        if token:
            self._headers["Authorization"] = f"Token {token}"

    def write_point(
        self,
        tags: Mapping[str, str],
        fields: Mapping[str, Any],
        timestamp: datetime | None = None,
    ) -> bool:
        """Write one point; errors are logged and reported as False."""
        try:
            line = line_protocol(
                self.measurement, tags, fields, timestamp or datetime.now(timezone.utc)
            )
        except (ValueError, TypeError) as err:
            log.error("influxdb error: %s", err)
            return False
        try:
            response = self._session.post(
                self._write_url,
                params=self._params,
                data=line.encode("utf-8"),
                headers=self._headers,
                timeout=self._timeout,
            )
        except requests.RequestException as err:
            log.error("influxdb error: %s", err)
            return False
        if response.status_code >= 300:
            log.error("influxdb error: %s %s", response.status_code, response.text)
            return False
        return True

    def run(self, snips: Iterable[QuerySnip]) -> None:
        """Write every snip, then close the connection."""
        try:
            for snip in snips:
                self.write_point(
                    {"device": snip.device, "type": str(snip.measurement)},
                    {"value": float(snip.value)},
                )
        finally:
            self._session.close()