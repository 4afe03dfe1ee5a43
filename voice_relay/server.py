"""
Relay server - one port for listeners, static assets and monitoring.

WebSocket upgrades on any path become listeners. Plain HTTP requests are
answered before the handshake:

    GET /health    JSON health check
    GET /metrics   Prometheus text
    GET /<path>    file from the static directory (index.html for /)
"""

import asyncio
import json
import logging
import mimetypes
import os
import posixpath
import urllib.parse
from http import HTTPStatus
from pathlib import Path
from typing import Optional

from websockets.asyncio.server import ServerConnection, serve
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from .broadcaster import Listener
from .context import PipelineContext
from .metrics import health_payload, metrics_text

logger = logging.getLogger(__name__)


def _response(status: int, body: bytes, content_type: str) -> Response:
    status = HTTPStatus(status)
    headers = Headers(
        [
            ("Content-Type", content_type),
            ("Content-Length", str(len(body))),
            ("Cache-Control", "no-cache"),
        ]
    )
    return Response(status.value, status.phrase, headers, body)


def _safe_join(base: str, path: str) -> Optional[str]:
    """Resolve a URL path inside ``base``; None if it escapes it."""
    path = posixpath.normpath(urllib.parse.unquote(path.split("?", 1)[0].split("#", 1)[0]))
    parts = [p for p in path.split("/") if p and p not in (".", "..")]
    base_real = os.path.realpath(base)
    full = os.path.realpath(os.path.join(base_real, *parts))
    if full != base_real and not full.startswith(base_real + os.sep):
        return None
    return full


def static_response(static_dir: str, path: str) -> Response:
    """Serve a file from ``static_dir``; 404 for anything missing or outside it."""
    full = _safe_join(static_dir, path)
    if full is not None and os.path.isdir(full):
        full = os.path.join(full, "index.html")
    if full is None or not os.path.isfile(full):
        return _response(404, b"Not Found", "text/plain")
    content_type = mimetypes.guess_type(full)[0] or "application/octet-stream"
    return _response(200, Path(full).read_bytes(), content_type)


class RelayServer:
    """Listener push channel plus HTTP endpoints on a single port."""

    def __init__(self, ctx: PipelineContext):
        self.ctx = ctx
        self.config = ctx.config.server
        self._stop_event = asyncio.Event()

    def is_websocket(self, request: Request) -> bool:
        return "websocket" in request.headers.get("Upgrade", "").lower()

    def process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        """Answer plain HTTP requests; None lets a WebSocket handshake proceed."""
        if self.is_websocket(request):
            return None
        path = request.path.split("?", 1)[0]
        if path == "/health":
            body = json.dumps(health_payload(self.ctx), indent=2).encode("utf-8")
            return _response(200, body, "application/json")
        if path == "/metrics":
            return _response(
                200, metrics_text(self.ctx).encode("utf-8"), "text/plain; version=0.0.4"
            )
        return static_response(self.config.static_dir, path)

    async def handle_listener(self, websocket: ServerConnection) -> None:
        """Lifetime of one listener connection."""
        listener = Listener(websocket)
        await self.ctx.broadcaster.register(listener)
        try:
            # Listeners only receive; incoming messages are read and discarded
            async for _ in websocket:
                pass
        except ConnectionClosed:
            pass
        finally:
            await self.ctx.broadcaster.unregister(listener)

    def stop(self) -> None:
        """Stop the server."""
        self._stop_event.set()

    async def run(self) -> None:
        """Start the pipeline, serve until stopped, then shut everything down."""
        await self.ctx.start()
        try:
            async with serve(
                self.handle_listener,
                self.config.host,
                self.config.port,
                process_request=self.process_request,
                ping_interval=None,
                max_size=65_536,
            ):
                logger.info(f"Relay listening on http://{self.config.host}:{self.config.port}/")
                logger.info(f"Static assets from {os.path.abspath(self.config.static_dir)}")
                await self._stop_event.wait()
        finally:
            await self.ctx.shutdown()
