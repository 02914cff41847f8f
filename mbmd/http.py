"""HTTP server for the web UI, the JSON API and the websocket feed."""

from __future__ import annotations

import html
import logging
import platform
import re
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from aiohttp import web

from .apidata import api_data
from .cache import Cache
from .readings import Readings
from .socket_hub import SocketHub, serve_websocket
from .status import DeviceInfo, Status

log = logging.getLogger(__name__)

VERSION = "unknown version"
"""Version of the executable."""

COMMIT = "unknown commit"
"""Commit of the executable."""

ASSETS_DIR = "assets"
"""Directory holding the UI assets, relative to the working directory."""

JSON_CONTENT_TYPE = "application/json; charset=UTF-8"

_ID_PATTERN = "{id:[a-zA-Z0-9.]+}"
_FIELD_RE = re.compile(r"\{\{\s*\.(\w+)\s*\}\}")

ReadingsProvider = Callable[[str], Readings]
Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _compile_template(text: str, fields: set[str]) -> Callable[[dict[str, str]], str]:
    unknown = sorted({m.group(1) for m in _FIELD_RE.finditer(text)} - fields)
    if unknown:
        raise ValueError(f"httpd: unknown template fields: {', '.join(unknown)}")

    def render(data: dict[str, str]) -> str:
        return _FIELD_RE.sub(lambda m: html.escape(data[m.group(1)]), text)

    return render


@web.middleware
async def json_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Decorate responses with JSON content type and CORS headers."""
    response = await handler(request)
    response.headers["Content-Type"] = JSON_CONTENT_TYPE
    response.headers["Access-Control-Allow-Origin"] = "*"
    return response


@web.middleware
async def _compress_middleware(
    request: web.Request, handler: Handler
) -> web.StreamResponse:
    response = await handler(request)
    if isinstance(response, web.Response) and not response.prepared:
        response.enable_compression()
    return response


def _encode(text: str) -> str:
    return text + "\n"


class Httpd:
    """Serves the UI, the readings API, the status and the websocket feed."""

    def __init__(
        self,
        device_info: DeviceInfo,
        cache: Cache,
        assets: str | Path | None = None,
    ) -> None:
        self.device_info = device_info
        self.cache = cache
        self.assets = Path(assets) if assets is not None else Path(ASSETS_DIR)

    def _index_handler(self) -> Handler:
        template = (self.assets / "index.html").read_text(encoding="utf-8")
        data = {
            "SoftwareVersion": VERSION,
            "RuntimeVersion": platform.python_version(),
        }
        render = _compile_template(template, set(data))

        async def index(request: web.Request) -> web.Response:
            return web.Response(
                text=render(data), content_type="text/html", charset="UTF-8"
            )

        return index

    def _all_devices_handler(self, provider: ReadingsProvider) -> Handler:
        async def handler(request: web.Request) -> web.Response:
            parts: list[str] = []
            for device in self.cache.sorted_ids():
                try:
                    readings = provider(device)
                except LookupError:
                    continue  # inactive meters are simply not shown
                parts.append(f"{_json_key(device)}:{api_data(readings)}")

            if not parts:
                return web.Response(status=400, text="all meters are inactive")
            return web.Response(text=_encode("{" + ",".join(parts) + "}"))

        return handler

    def _single_device_handler(self, provider: ReadingsProvider) -> Handler:
        async def handler(request: web.Request) -> web.Response:
            device = request.match_info.get("id")
            if device is None:
                return web.Response(status=400)
            try:
                readings = provider(device)
            except LookupError as err:
                return web.Response(status=400, text=str(err.args[0] if err.args else err))
            return web.Response(text=_encode(api_data(readings)))

        return handler

    @staticmethod
    def _status_handler(status: Status) -> Handler:
        async def handler(request: web.Request) -> web.Response:
            return web.Response(text=_encode(status.to_json()))

        return handler

    @staticmethod
    def _socket_handler(hub: SocketHub) -> Handler:
        async def handler(request: web.Request) -> web.StreamResponse:
            return await serve_websocket(hub, request)

        return handler

    def make_app(self, hub: SocketHub, status: Status) -> web.Application:
        """Build the web application with all routes."""
        app = web.Application(
            middlewares=[
                web.normalize_path_middleware(append_slash=False, remove_slash=True),
                _compress_middleware,
            ]
        )
        app.router.add_get("/", self._index_handler())
        for folder in ("css", "js"):
            path = self.assets / folder
            if path.is_dir():
                app.router.add_static(f"/{folder}", path)

        api = web.Application(middlewares=[json_middleware])
        api.router.add_get("/last", self._all_devices_handler(self.cache.current))
        api.router.add_get(
            f"/last/{_ID_PATTERN}", self._single_device_handler(self.cache.current)
        )
        api.router.add_get("/avg", self._all_devices_handler(self.cache.average))
        api.router.add_get(
            f"/avg/{_ID_PATTERN}", self._single_device_handler(self.cache.average)
        )
        api.router.add_get("/status", self._status_handler(status))
        app.add_subapp("/api", api)

        app.router.add_get("/ws", self._socket_handler(hub))
        return app

    def run(self, hub: SocketHub, status: Status, url: str) -> None:
        """Serve the application at ``host:port`` until interrupted."""
        log.info("httpd: starting api at %s", url)
        host, _, port = url.rpartition(":")
        if not port.isdigit():
            raise ValueError(f"httpd: invalid address {url!r}")
        app = self.make_app(hub, status)
        web.run_app(
            app,
            host=host or None,
            port=int(port),
            keepalive_timeout=120.0,
            print=None,
        )


def _json_key(key: Any) -> str:
    import json

    return json.dumps(key)