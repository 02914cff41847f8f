"""Cache that collects and aggregates meter readings per device."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

from .readings import MeterReadings, Readings
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
    QuerySnip,
)
from .status import Status

log = logging.getLogger(__name__)

VERBOSE_LOGGABLE = frozenset(
    {
        VOLTAGE_L1, CURRENT_L1, POWER_L1, COSPHI_L1,
        VOLTAGE_L2, CURRENT_L2, POWER_L2, COSPHI_L2,
        VOLTAGE_L3, CURRENT_L3, POWER_L3, COSPHI_L3,
        FREQUENCY,
    }
)
"""Measurements that trigger a log line in verbose mode."""

AVERAGE_WINDOW = timedelta(minutes=1)


class DeviceNotFoundError(LookupError):
    """The device has never delivered readings."""


class DeviceUnavailableError(LookupError):
    """The device is known but currently offline."""


class Cache:
    """Current and averaged readings of every device."""

    def __init__(self, max_age: timedelta | None, status: Status, verbose: bool = False) -> None:
        self._lock = threading.Lock()
        self._readings: dict[str, MeterReadings] = {}
        self._max_age = max_age
        self._status = status
        self._verbose = verbose

    def run(self, snips: Iterable[QuerySnip]) -> None:
        """Consume query snips into the cache."""
        for snip in snips:
            with self._lock:
                readings = self._readings.get(snip.device)
                if readings is None:
                    readings = MeterReadings(self._max_age)
                    self._readings[snip.device] = readings
            readings.add(snip)
            if self._verbose and snip.measurement in VERBOSE_LOGGABLE:
                log.info("device %s %s", snip.device, readings.current)

    def sorted_ids(self) -> list[str]:
        """Ids of all cached devices in sorted order."""
        with self._lock:
            return sorted(self._readings)

    def _online_readings(self, device: str) -> MeterReadings:
        readings = self._readings.get(device)
        if readings is None:
            raise DeviceNotFoundError(f"device {device} does not exist")
        if not self._status.online(device):
            raise DeviceUnavailableError(f"device {device} is not available")
        return readings

    def current(self, device: str) -> Readings:
        """Copy of the latest readings of an online device."""
        with self._lock:
            return self._online_readings(device).current.clone()

    def average(self, device: str) -> Readings:
        """Readings of an online device averaged over the last minute."""
        with self._lock:
            readings = self._online_readings(device)
            return readings.average(datetime.now(timezone.utc) - AVERAGE_WINDOW)

    def purge(self, device: str) -> None:
        """Drop accumulated data of the device."""
        with self._lock:
            readings = self._readings.get(device)
            if readings is None:
                raise DeviceNotFoundError(f"device with id {device} does not exist")
            readings.purge()