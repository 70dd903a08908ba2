"""Live-reload proxy in front of the app plus a small control UI."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import mimetypes
import re
import webbrowser
from pathlib import Path
from typing import Any, Callable, Iterable
from urllib.parse import urljoin

import aiohttp
import uvicorn
from aiohttp import WSMsgType, web
from fastapi import FastAPI

from gulptasks.devserver import resolve_static
from gulptasks.errors import NoFreePortError, ResourceUnavailableError
from gulptasks.ports import is_port_free
from gulptasks.registry import PortSet, RunMode
from gulptasks.settings import Settings
from gulptasks.uri import build_uri

logger = logging.getLogger("gulptasks.livereload")

RELOAD_SOCKET_PATH = "/__livereload"
HOP_HEADERS = {
    "connection",
    "content-encoding",
    "content-length",
    "keep-alive",
    "transfer-encoding",
    "upgrade",
}
UI_STARTUP_TIMEOUT_SECONDS = 10


def build_reload_script(auto_close_tabs: bool = False) -> str:
    on_close = "s.onclose=function(){window.close();};" if auto_close_tabs else ""
    return (
        "<script>(function(){"
        "var s=new WebSocket((location.protocol==='https:'?'wss://':'ws://')"
        f"+location.host+'{RELOAD_SOCKET_PATH}');"
        "s.onmessage=function(e){var m=JSON.parse(e.data);"
        "if(m.type==='reload'){location.reload();}};"
        f"{on_close}"
        "})();</script>"
    )


def inject_script(html: str, script: str) -> str:
    """Insert script before the closing body tag, or append it."""
    matches = list(re.finditer(r"</body\s*>", html, flags=re.IGNORECASE))
    if not matches:
        return html + script
    index = matches[-1].start()
    return html[:index] + script + html[index:]


def strip_unresolved_ports(options: dict[str, Any]) -> dict[str, Any]:
    """Drop port keys that never became numbers so the proxy picks its own."""
    if not isinstance(options.get("port"), int):
        options.pop("port", None)
    ui = options.get("ui")
    if isinstance(ui, dict) and not isinstance(ui.get("port"), int):
        ui.pop("port", None)
    return options


def build_server_options(settings: Settings, mode: RunMode, ports: PortSet) -> dict[str, Any]:
    """Default proxy options overlaid with the configured plugin overrides."""
    browsersync = settings.browsersync
    if browsersync.clear:
        options = dict(browsersync.plugin)
        if not options:
            logger.warning("No options were supplied to the live-reload proxy.")
    else:
        options = {
            "host": browsersync.host,
            "port": ports.local,
            "ui": {"port": ports.ui},
            "open": browsersync.open,
            "notify": browsersync.notify,
            "name": browsersync.name,
            "auto_close_tabs": browsersync.auto_close_tabs,
        }
        if mode is RunMode.SERVER:
            options["proxy"] = f"http://localhost:{ports.webpack}/"
        elif settings.app.appdir:
            options["proxy"] = build_uri(
                settings.app.appdir,
                f"{settings.bundler.output}/{settings.app.index}",
                https=settings.app.https,
            )
        else:
            options["serve_dir"] = str(settings.resolve(settings.bundler.output))
        options["index"] = settings.app.index
        options["port_range"] = [settings.findfreeport.range.start, settings.findfreeport.range.end]
        options.update(browsersync.plugin)
    return strip_unresolved_ports(options)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the task runner."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        return None


def create_ui_app(proxy: "LiveReloadProxy") -> FastAPI:
    app = FastAPI(title="gulptasks control UI")

    @app.get("/health")
    async def health():
        return {"status": "ok", "name": proxy.name, "clients": proxy.client_count}

    @app.get("/ports")
    async def ports():
        local, ui, webpack = proxy.ports
        return {"local": local, "ui": ui, "webpack": webpack}

    @app.post("/reload")
    async def reload():
        proxy.reload()
        return {"status": "reloading"}

    return app


class LiveReloadProxy:
    """Proxies the app, injects a reload client, and reloads browsers after builds."""

    def __init__(self, server_options: dict[str, Any], plugin_options: dict[str, Any] | None = None) -> None:
        plugin_options = plugin_options or {}
        self.server_options = server_options
        self.name = plugin_options.get("name", "BS")
        self.reload_enabled = bool(plugin_options.get("reload", True))
        self.host = server_options.get("host", "localhost")
        # [local, ui, bundler]; filled in from the options and again on start.
        self.ports: list[int | None] = [
            server_options.get("port"),
            (server_options.get("ui") or {}).get("port"),
            None,
        ]
        self._script = build_reload_script(bool(server_options.get("auto_close_tabs")))
        self._sockets: set[web.WebSocketResponse] = set()
        self._session: aiohttp.ClientSession | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._ui_server: _EmbeddedServer | None = None
        self._ui_task: asyncio.Task | None = None
        self._closing: asyncio.Task | None = None

    @property
    def client_count(self) -> int:
        return len(self._sockets)

    @property
    def local_url(self) -> str:
        return f"http://{self.host}:{self.ports[0]}/"

    def _discover_port(self, exclude: Iterable[int | None]) -> int:
        start, end = self.server_options.get("port_range", [3000, 3100])
        for port in range(start, end + 1):
            if port in exclude:
                continue
            if is_port_free("127.0.0.1", port):
                return port
        raise NoFreePortError(f"no free port for the live-reload proxy in {start}-{end}")

    async def _handle_socket(self, request: web.Request) -> web.WebSocketResponse:
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

    def _upstream_url(self, target: str, path_qs: str) -> str:
        if path_qs in ("", "/"):
            return target
        return urljoin(target, path_qs.lstrip("/"))

    async def _handle_proxy(self, request: web.Request) -> web.StreamResponse:
        target = self.server_options.get("proxy")
        if not target:
            return self._serve_directory(request)
        assert self._session is not None
        headers = {k: v for k, v in request.headers.items() if k.lower() not in HOP_HEADERS | {"host"}}
        try:
            async with self._session.request(
                request.method,
                self._upstream_url(target, request.path_qs),
                headers=headers,
                data=await request.read(),
                allow_redirects=False,
            ) as upstream:
                body = await upstream.read()
                response_headers = {
                    k: v for k, v in upstream.headers.items() if k.lower() not in HOP_HEADERS
                }
                if "text/html" in upstream.headers.get("Content-Type", ""):
                    charset = upstream.charset or "utf-8"
                    body = inject_script(body.decode(charset, errors="replace"), self._script).encode(charset)
                return web.Response(body=body, status=upstream.status, headers=response_headers)
        except aiohttp.ClientError as exc:
            logger.warning("Proxy target %s unreachable: %s", target, exc)
            return web.Response(status=502, text=f"Proxy target unreachable: {exc}")

    def _serve_directory(self, request: web.Request) -> web.StreamResponse:
        root = Path(self.server_options.get("serve_dir") or ".")
        relative = request.match_info.get("tail", "")
        if not relative or relative.endswith("/"):
            relative = f"{relative}{self.server_options.get('index', 'index.html')}"
        path = resolve_static([root], relative)
        if path is None:
            raise web.HTTPNotFound()
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        body = path.read_bytes()
        if content_type == "text/html":
            body = inject_script(body.decode("utf-8", errors="replace"), self._script).encode("utf-8")
        return web.Response(body=body, content_type=content_type)

    async def start(self) -> None:
        local, ui, bundler = self.ports
        local = local or self._discover_port([ui, bundler])
        ui = ui or self._discover_port([local, bundler])
        self.ports = [local, ui, bundler]
        for port in (local, ui):
            if not is_port_free(self.host, port):
                raise NoFreePortError(f"port {port} is already in use on {self.host}")

        self._session = aiohttp.ClientSession()
        app = web.Application()
        app.router.add_get(RELOAD_SOCKET_PATH, self._handle_socket)
        app.router.add_route("*", "/{tail:.*}", self._handle_proxy)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host=self.host, port=local)
        try:
            await self._site.start()
        except OSError as exc:
            raise NoFreePortError(f"cannot bind the live-reload proxy to port {local}: {exc}") from exc

        config = uvicorn.Config(create_ui_app(self), host=self.host, port=ui, log_level="warning", lifespan="off")
        self._ui_server = _EmbeddedServer(config)
        self._ui_task = asyncio.create_task(self._serve_ui(ui), name="livereload-ui")
        await self._wait_for_ui()
        logger.info("[%s] Proxy at %s, UI at http://%s:%s", self.name, self.local_url, self.host, ui)
        if self.server_options.get("open"):
            webbrowser.open(self.local_url)

    async def _serve_ui(self, port: int) -> None:
        assert self._ui_server is not None
        try:
            await self._ui_server.serve()
        except (SystemExit, OSError) as exc:
            # uvicorn exits the process when it cannot bind.
            raise NoFreePortError(f"control UI could not start on port {port}") from exc

    async def _wait_for_ui(self) -> None:
        assert self._ui_server is not None and self._ui_task is not None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + UI_STARTUP_TIMEOUT_SECONDS
        while not self._ui_server.started:
            if self._ui_task.done():
                self._ui_task.result()
                raise ResourceUnavailableError("control UI server exited during startup")
            if loop.time() > deadline:
                raise ResourceUnavailableError("control UI server did not start in time")
            await asyncio.sleep(0.05)

    def after_compile(self, stats: Any) -> None:
        """Bundler plugin hook."""
        if self.reload_enabled:
            self.reload()

    def reload(self, paths: Iterable[str] | None = None) -> None:
        payload = {"type": "reload", "paths": list(paths or [])}
        for ws in list(self._sockets):
            if ws.closed:
                self._sockets.discard(ws)
                continue
            asyncio.ensure_future(ws.send_json(payload))

    def stream(self) -> Callable[[Iterable[str] | None], None]:
        """Return a notifier tasks call with changed paths."""
        return self.reload

    async def stop(self) -> None:
        if self._ui_server is not None:
            self._ui_server.should_exit = True
        if self._ui_task is not None:
            with contextlib.suppress(asyncio.CancelledError, NoFreePortError):
                await self._ui_task
            self._ui_task = None
        for ws in list(self._sockets):
            await ws.close()
        self._sockets.clear()
        if self._site is not None:
            await self._site.stop()
            self._site = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        if self._session is not None:
            await self._session.close()
            self._session = None
        logger.info("[%s] Live-reload proxy stopped", self.name)

    def close(self, callback: Callable[[], None] | None = None) -> None:
        """Best-effort shutdown; schedules stop() without waiting for it."""
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

