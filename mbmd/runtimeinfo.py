"""Per-device runtime status: online state, request and error counters."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

RETRY_TIMEOUT = 1.0
"""Seconds an offline device rests before it is queried again."""


@dataclass
class RuntimeInfo:
    """Status of a single modbus device."""

    online: bool = False
    requests: int = 0
    errors: int = 0
    last_failure: float | None = field(default=None, repr=False, compare=False)

    def available(self, online: bool) -> None:
        """Set the online status, remembering when the device went offline."""
        if not online:
            self.last_failure = time.monotonic()
        self.online = online

    def is_queryable(self) -> tuple[bool, bool]:
        """Return whether the device may be queried and whether its offline timeout elapsed.

        A device is queryable when it is online, or when it is offline and
        the retry timeout since its last failure has passed.
        """
        retry = (
            self.last_failure is None
            or self.last_failure + RETRY_TIMEOUT < time.monotonic()
        )
        return self.online or retry, not self.online and retry