"""Current and historic meter readings per device."""

from __future__ import annotations

import threading
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from .snips import (
    COSPHI_L1,
    COSPHI_L2,
    COSPHI_L3,
    CURRENT_L1,
    CURRENT_L2,
    CURRENT_L3,
    FREQUENCY,
    POWER_L1,
    POWER_L2,
    POWER_L3,
    VOLTAGE_L1,
    VOLTAGE_L2,
    VOLTAGE_L3,
    ZERO_TIME,
    Measurement,
    QuerySnip,
)


@dataclass
class Readings:
    """The latest value of every measurement of a device."""

    timestamp: datetime = ZERO_TIME
    values: dict[Measurement, float] = field(default_factory=dict)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def _f2s(self, key: Measurement, digits: int) -> str:
        if key in self.values:
            return f"{self.values[key]:.{digits}f}"
        return "0.0"

    def __str__(self) -> str:
        phases = [
            (VOLTAGE_L1, CURRENT_L1, POWER_L1, COSPHI_L1),
            (VOLTAGE_L2, CURRENT_L2, POWER_L2, COSPHI_L2),
            (VOLTAGE_L3, CURRENT_L3, POWER_L3, COSPHI_L3),
        ]
        parts = [
            f"L{n}: {self._f2s(u, 0)}V {self._f2s(i, 1)}A "
            f"{self._f2s(p, 0)}W {self._f2s(c, 2)}cos"
            for n, (u, i, p, c) in enumerate(phases, start=1)
        ]
        parts.append(f"{self._f2s(FREQUENCY, 0)}Hz")
        return " | ".join(parts)

    def add(self, snip: QuerySnip) -> None:
        """Store the snip's value and take over its timestamp."""
        with self._lock:
            self.timestamp = snip.timestamp
            self.values[snip.measurement] = float(snip.value)

    def clone(self) -> Readings:
        """Copy of the readings with an independent values dict."""
        with self._lock:
            return Readings(self.timestamp, dict(self.values))


def _housekeeping(ref: weakref.ref, max_age: timedelta) -> None:
    interval = max_age.total_seconds()
    stop = threading.Event()
    while not stop.wait(interval):
        readings = ref()
        if readings is None:
            return
        readings.trim_before(datetime.now(timezone.utc) - max_age)
        del readings


class MeterReadings:
    """Current readings of a device plus a history of snapshots."""

    def __init__(self, max_age: timedelta | None = None) -> None:
        self._lock = threading.Lock()
        self.current = Readings()
        self.historic: list[Readings] = []
        if max_age is not None:
            threading.Thread(
                target=_housekeeping,
                args=(weakref.ref(self), max_age),
                daemon=True,
            ).start()

    def add(self, snip: QuerySnip) -> None:
        """Update the current readings and record a snapshot."""
        with self._lock:
            self.current.add(snip)
            self.historic.append(self.current.clone())

    def average(self, since: datetime) -> Readings:
        """Average every measurement over the snapshots taken at or after ``since``."""
        with self._lock:
            sums: dict[Measurement, tuple[int, float]] = {}
            for readings in self.historic:
                if readings.timestamp < since:
                    continue
                for key, value in readings.values.items():
                    count, total = sums.get(key, (0, 0.0))
                    sums[key] = (count + 1, total + value)
            return Readings(
                self.current.timestamp,
                {key: total / count for key, (count, total) in sums.items()},
            )

    def trim_before(self, timestamp: datetime) -> None:
        """Drop snapshots that precede the first one newer than ``timestamp``.

        The newest snapshot is dropped as well; if no snapshot is newer than
        ``timestamp`` the history is left untouched.
        """
        with self._lock:
            for idx, readings in enumerate(self.historic):
                if readings.timestamp > timestamp:
                    self.historic = self.historic[idx:-1]
                    return

    def purge(self) -> None:
        """Clear current readings and history."""
        with self._lock:
            self.current = Readings()
            self.historic = []