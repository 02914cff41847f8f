"""Daemon and device status collected from control snips."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import psutil

from .snips import ControlSnip


class DeviceInfo(Protocol):
    """Anything that can describe a device by its id."""

    def device_descriptor_by_id(self, device_id: str) -> Any:
        """Return the descriptor of the device, or None if it is unknown."""


@dataclass
class MemoryStatus:
    """Memory held by the daemon process."""

    alloc: int = 0
    heap_alloc: int = 0


@dataclass
class ModbusStatus:
    """Request and error counters of a device."""

    requests: int = 0
    requests_per_minute: float = 0.0
    errors: int = 0
    errors_per_minute: float = 0.0


@dataclass
class DeviceStatus:
    """Runtime status of a device."""

    device: str
    type: str
    online: bool
    modbus: ModbusStatus = field(default_factory=ModbusStatus)

    def _to_dict(self) -> dict[str, Any]:
        return {
            "Device": self.device,
            "Type": self.type,
            "Online": self.online,
            "Requests": self.modbus.requests,
            "RequestsPerMinute": self.modbus.requests_per_minute,
            "Errors": self.modbus.errors,
            "ErrorsPerMinute": self.modbus.errors_per_minute,
        }


def _memory_status() -> MemoryStatus:
    info = psutil.Process().memory_info()
    return MemoryStatus(alloc=info.rss, heap_alloc=getattr(info, "data", info.rss))


class Status:
    """Daemon and device status; refreshed whenever it is exported."""

    def __init__(
        self, device_info: DeviceInfo, control: Iterable[ControlSnip] | None = None
    ) -> None:
        self._lock = threading.Lock()
        self._device_info = device_info
        self.start_time = datetime.now(timezone.utc)
        self.uptime = 1.0
        self.threads = threading.active_count()
        self.memory = _memory_status()
        self.meters: list[DeviceStatus] = []
        self._meter_map: dict[str, DeviceStatus] = {}
        if control is not None:
            threading.Thread(target=self.consume, args=(control,), daemon=True).start()

    def consume(self, control: Iterable[ControlSnip]) -> None:
        """Record the device status carried by every control snip."""
        for snip in control:
            with self._lock:
                minutes = self.uptime / 60
                info = snip.status
                modbus = ModbusStatus(
                    requests=info.requests,
                    requests_per_minute=info.requests / minutes,
                    errors=info.errors,
                    errors_per_minute=info.errors / minutes,
                )
                descriptor = self._device_info.device_descriptor_by_id(snip.device)
                self._meter_map[snip.device] = DeviceStatus(
                    device=snip.device,
                    type=getattr(descriptor, "manufacturer", "") or "",
                    online=info.online,
                    modbus=modbus,
                )

    def online(self, device: str) -> bool:
        """Online status of the device; False if it is unknown."""
        with self._lock:
            status = self._meter_map.get(device)
            return status.online if status is not None else False

    def _update(self) -> None:
        self.memory = _memory_status()
        self.threads = threading.active_count()
        self.uptime = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        self.meters = [self._meter_map[key] for key in sorted(self._meter_map)]

    def to_dict(self) -> dict[str, Any]:
        """Refresh the status and return its export representation."""
        with self._lock:
            self._update()
            return {
                "StartTime": self.start_time.isoformat(),
                "UpTime": self.uptime,
                "Threads": self.threads,
                "Memory": {
                    "Alloc": self.memory.alloc,
                    "HeapAlloc": self.memory.heap_alloc,
                },
                "Meters": [meter._to_dict() for meter in self.meters],
            }

    def to_json(self) -> str:
        """JSON of :meth:`to_dict`."""
        return json.dumps(self.to_dict())