"""HTTP dev server serving bundler output with hot-reload notifications."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from aiohttp import WSMsgType, web

from gulptasks.bundler import Compiler, Stats, WatchOptions, Watching

logger = logging.getLogger("gulptasks.devserver")

HOT_SOCKET_PATH = "/__hot"


@dataclass
class DevServerOptions:
    content_base: str = "src/"
    public_path: str = "/"
    index: str = "index.html"
    history_api_fallback: bool = True
    compress: bool = True
    ignored: str = "node_modules"


def resolve_static(roots: list[Path], relative: str) -> Path | None:
    """Find relative under one of roots without escaping them."""
    for root in roots:
        root = root.resolve()
        candidate = (root / relative.lstrip("/")).resolve()
        if candidate != root and root not in candidate.parents:
            continue
        if candidate.is_file():
            return candidate
    return None


class DevServer:
    """Aiohttp server that watches through the compiler and serves its output."""

    def __init__(self, compiler: Compiler, options: DevServerOptions | None = None) -> None:
        self.compiler = compiler
        self.options = options or DevServerOptions()
        self.host = "localhost"
        self.port: int | None = None
        self.watching: Watching | None = None
        self.last_error: Exception | None = None
        self._sockets: set[web.WebSocketResponse] = set()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._closing: asyncio.Task | None = None
        self._first_build: asyncio.Future | None = None

    @property
    def roots(self) -> list[Path]:
        return [Path(self.compiler.config.output), Path(self.options.content_base)]

    def _wants_html(self, request: web.Request) -> bool:
        return request.method == "GET" and "text/html" in request.headers.get("Accept", "")

    async def _handle_hot(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self._sockets.add(ws)
        try:
            async for message in ws:
                if message.type == WSMsgType.ERROR:
                    break
        finally:
            self._sockets.discard(ws)
        return ws

    async def _handle_static(self, request: web.Request) -> web.StreamResponse:
        relative = request.match_info.get("tail", "")
        prefix = self.options.public_path.strip("/")
        if prefix and relative.startswith(prefix):
            relative = relative[len(prefix):]
        if not relative or relative.endswith("/"):
            relative = f"{relative}{self.options.index}"
        path = resolve_static(self.roots, relative)
        if path is None and self.options.history_api_fallback and self._wants_html(request):
            path = resolve_static(self.roots, self.options.index)
        if path is None:
            raise web.HTTPNotFound()
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        response = web.Response(body=path.read_bytes(), content_type=content_type)
        if self.options.compress:
            response.enable_compression()
        return response

    def _on_build(self, err: Exception | None, stats: Stats | None) -> None:
        if self._first_build is not None and not self._first_build.done():
            if err is not None:
                self._first_build.set_exception(err)
            else:
                self._first_build.set_result(stats)
        if err is not None:
            self.last_error = err
            logger.error("Dev server build failed: %s", err)
            self._broadcast({"type": "errors", "message": str(err)})
            return
        self.last_error = None
        self._broadcast({"type": "ok", "summary": stats.to_string() if stats else ""})

    def _broadcast(self, payload: dict) -> None:
        for ws in list(self._sockets):
            if ws.closed:
                self._sockets.discard(ws)
                continue
            asyncio.ensure_future(ws.send_json(payload))

    async def listen(self, port: int, host: str = "localhost", callback: Callable[[], None] | None = None) -> None:
        """Start watching through the compiler and serve on host:port."""
        self.host = host
        self.port = port
        self._first_build = asyncio.get_running_loop().create_future()
        self.watching = self.compiler.watch(WatchOptions(ignored=self.options.ignored), self._on_build)
        self._app = web.Application()
        self._app.router.add_get(HOT_SOCKET_PATH, self._handle_hot)
        self._app.router.add_route("*", "/{tail:.*}", self._handle_static)
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host=host, port=port)
        await self._site.start()
        logger.info("Dev server started at http://%s:%s", host, port)
        if callback is not None:
            callback()

    async def first_build(self) -> Stats | None:
        """Wait for the first compilation started by listen(); raises its error."""
        if self._first_build is None:
            return None
        return await self._first_build

    async def stop(self) -> None:
        if self.watching is not None:
            self.watching.close()
            self.watching = None
        for ws in list(self._sockets):
            await ws.close()
        self._sockets.clear()
        if self._site is not None:
            await self._site.stop()
            self._site = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self._app = None
        logger.info("Dev server stopped")

    def close(self, callback: Callable[[], None] | None = None) -> None:
        """Best-effort shutdown; schedules stop() without waiting for it."""
        if self.watching is not None:
            self.watching.close()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if callback:
                callback()
            return
        if self._closing is None:
            self._closing = loop.create_task(self.stop())
        if callback:
            self._closing.add_done_callback(lambda _task: callback())
