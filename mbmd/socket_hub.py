"""Websocket hub distributing query results and status to connected clients."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterable, Iterable
from typing import Any

from aiohttp import web

from .status import Status

log = logging.getLogger(__name__)

SOCKET_WRITE_WAIT = 10.0
"""Seconds allowed to write a message to the peer."""

STATUS_FREQUENCY = 1.0
"""Seconds between status updates."""

SEND_BUFFER = 256

_END = object()


class SocketClient:
    """Connection between a websocket peer and the hub."""

    def __init__(self, hub: SocketHub, ws: Any, buffer: int = SEND_BUFFER) -> None:
        self.hub = hub
        self.ws = ws
        self.send: asyncio.Queue[str] = asyncio.Queue(maxsize=buffer)
        self.closed = False
        self._task: asyncio.Task | None = None

    def close(self) -> None:
        """Stop delivering messages to the peer."""
        self.closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def write_pump(self) -> None:
        """Write queued messages to the websocket until an error or close."""
        if self._task is None:
            self._task = asyncio.current_task()
        try:
            while not self.closed:
                message = await self.send.get()
                try:
                    await asyncio.wait_for(self.ws.send_str(message), SOCKET_WRITE_WAIT)
                except (ConnectionError, RuntimeError, asyncio.TimeoutError):
                    return
        finally:
            await self.ws.close()


def _encode(obj: Any) -> str:
    to_json = getattr(obj, "to_json", None)
    if callable(to_json):
        return to_json()
    return json.dumps(obj)


class SocketHub:
    """Set of active websocket clients receiving every broadcast message."""

    def __init__(
        self, status: Status | None = None, status_frequency: float = STATUS_FREQUENCY
    ) -> None:
        self.clients: set[SocketClient] = set()
        self.status = status
        self._status_frequency = status_frequency

    def register(self, client: SocketClient) -> None:
        """Add a client."""
        self.clients.add(client)

    def unregister(self, client: SocketClient) -> None:
        """Remove and close a registered client."""
        if client in self.clients:
            self.clients.discard(client)
            client.close()

    def broadcast(self, obj: Any) -> None:
        """Send the JSON of ``obj`` to every client; drop clients that lag behind."""
        if not self.clients:
            return
        message = _encode(obj)
        for client in list(self.clients):
            try:
                client.send.put_nowait(message)
            except asyncio.QueueFull:
                client.close()
                self.clients.discard(client)

    async def _push_status(self) -> None:
        while True:
            await asyncio.sleep(self._status_frequency)
            if self.status is not None:
                self.broadcast(self.status)

    async def run(self, snips: AsyncIterable[Any] | Iterable[Any]) -> None:
        """Broadcast every snip and periodic status until the snips end."""
        status_task = asyncio.create_task(self._push_status())
        try:
            if isinstance(snips, AsyncIterable):
                async for snip in snips:
                    self.broadcast(snip)
            else:
                iterator = iter(snips)
                while (snip := await asyncio.to_thread(next, iterator, _END)) is not _END:
                    self.broadcast(snip)
        finally:
            status_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await status_task


async def serve_websocket(hub: SocketHub, request: web.Request) -> web.WebSocketResponse:
    """Upgrade the request to a websocket and attach it to the hub."""
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    client = SocketClient(hub, ws)
    writer = asyncio.create_task(client.write_pump())
    client._task = writer
    hub.register(client)
    try:
        async for _ in ws:
            pass  # incoming messages are ignored
    finally:
        hub.unregister(client)
        writer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await writer
    return ws