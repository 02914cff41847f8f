"""Hub that replicates every item of a source to all attached recipients."""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable, Iterable, Iterator
from typing import Any

_CLOSED = object()


def _receive(channel: queue.Queue) -> Iterator[Any]:
    while (item := channel.get()) is not _CLOSED:
        yield item


class Broadcaster:
    """Fan out items of a source iterable to every attached recipient."""

    def __init__(self, source: Iterable[Any]) -> None:
        self._source = source
        self._lock = threading.Lock()
        self._recipients: list[queue.Queue] = []
        self._runners: list[threading.Thread] = []
        self._done = threading.Event()

    def run(self) -> None:
        """Forward every item of the source, then close recipients and wait for runners."""
        try:
            for item in self._source:
                with self._lock:
                    for recipient in self._recipients:
                        recipient.put(item)
        finally:
            self._stop()

    def _stop(self) -> None:
        with self._lock:
            for recipient in self._recipients:
                recipient.put(_CLOSED)
            runners = list(self._runners)
        for runner in runners:
            runner.join()
        self._done.set()

    @property
    def done(self) -> bool:
        """Whether broadcasting has stopped."""
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until broadcasting has stopped; return False on timeout."""
        return self._done.wait(timeout)

    def attach(self) -> Iterator[Any]:
        """Attach a recipient and return an iterator over the items it receives."""
        channel: queue.Queue = queue.Queue()
        with self._lock:
            self._recipients.append(channel)
        return _receive(channel)

    def attach_runner(self, runner: Callable[[Iterator[Any]], Any]) -> None:
        """Run ``runner`` in a thread on its own attached recipient."""
        subscription = self.attach()
        thread = threading.Thread(target=runner, args=(subscription,), daemon=True)
        with self._lock:
            self._runners.append(thread)
        thread.start()