"""Measurements and the snips that carry query results and device status."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from .runtimeinfo import RuntimeInfo

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
"""Timestamp of readings that have never been updated."""

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def unix_millis(ts: datetime) -> int:
    """Milliseconds since the Unix epoch."""
    return (_aware(ts) - _EPOCH) // timedelta(milliseconds=1)


def unix_seconds(ts: datetime) -> int:
    """Whole seconds since the Unix epoch."""
    return (_aware(ts) - _EPOCH) // timedelta(seconds=1)


@dataclass(frozen=True)
class Measurement:
    """A measured quantity identified by its name."""

    name: str
    description: str = field(default="", compare=False)
    unit: str = field(default="", compare=False)

    def __str__(self) -> str:
        return self.name


VOLTAGE_L1 = Measurement("VoltageL1")
CURRENT_L1 = Measurement("CurrentL1")
POWER_L1 = Measurement("PowerL1")
COSPHI_L1 = Measurement("CosphiL1")
VOLTAGE_L2 = Measurement("VoltageL2")
CURRENT_L2 = Measurement("CurrentL2")
POWER_L2 = Measurement("PowerL2")
COSPHI_L2 = Measurement("CosphiL2")
VOLTAGE_L3 = Measurement("VoltageL3")
CURRENT_L3 = Measurement("CurrentL3")
POWER_L3 = Measurement("PowerL3")
COSPHI_L3 = Measurement("CosphiL3")
FREQUENCY = Measurement("Frequency")


@dataclass(frozen=True)
class QuerySnip:
    """A single measurement result of a device."""

    device: str
    measurement: Measurement
    value: float
    timestamp: datetime = ZERO_TIME

    def __str__(self) -> str:
        return f"Dev: {self.device}, IEC: {self.measurement}, Value: {self.value:.3f}"

    def to_dict(self) -> dict[str, Any]:
        """Export representation with the timestamp in unix milliseconds."""
        return {
            "Device": self.device,
            "Value": self.value,
            "IEC61850": str(self.measurement),
            "Description": self.measurement.description,
            "Timestamp": unix_millis(self.timestamp),
        }

    def to_json(self) -> str:
        """Compact JSON of :meth:`to_dict`."""
        return json.dumps(self.to_dict(), separators=(",", ":"))


@dataclass(frozen=True)
class ControlSnip:
    """Status information of a device."""

    device: str
    status: RuntimeInfo


_T = TypeVar("_T")


def _only(kind: type[_T], items: Iterable[object]) -> Iterator[_T]:
    for item in items:
        if not isinstance(item, kind):
            raise TypeError(f"runner: unexpected type {type(item).__name__}")
        yield item


def snip_runner(run: Callable[[Iterable[QuerySnip]], Any]) -> Callable[[Iterable[object]], None]:
    """Adapt a consumer of query snips to a consumer of arbitrary objects."""

    def adapted(items: Iterable[object]) -> None:
        run(_only(QuerySnip, items))

    return adapted


def control_runner(run: Callable[[Iterable[ControlSnip]], Any]) -> Callable[[Iterable[object]], None]:
    """Adapt a consumer of control snips to a consumer of arbitrary objects."""

    def adapted(items: Iterable[object]) -> None:
        run(_only(ControlSnip, items))

    return adapted