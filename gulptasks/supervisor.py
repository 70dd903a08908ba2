"""Single-instance dev server supervisor."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable

from gulptasks import output
from gulptasks.branch_watch import BranchWatchdog
from gulptasks.bundler import BundlerConfig, Compiler, Stats, WatchOptions
from gulptasks.collaborators import run_pretty
from gulptasks.context import SupervisorContext, SupervisorState
from gulptasks.devserver import DevServer, DevServerOptions
from gulptasks.git_state import GitReader
from gulptasks.livereload import LiveReloadProxy, build_server_options
from gulptasks.ports import allocate_ports, find_free_ports
from gulptasks.probe import ProcessInfo, ProcessProbe, process_title
from gulptasks.registry import ProcessRecord, Registry, RunMode, resolve_mode
from gulptasks.settings import Settings

logger = logging.getLogger("gulptasks.supervisor")

BUNDLER_CONFIG_NAME = ".__bundler.json"


def find_running_instance(registry: Registry, probe: ProcessProbe) -> ProcessInfo | None:
    """Re-read the registry and return the live instance it records, if any."""
    registry.read()
    return probe.find_instance(registry.process_record())


def stop_instance(
    registry: Registry,
    probe: ProcessProbe,
    kill: Callable[[int, int], None] = os.kill,
) -> bool:
    """Signal the recorded instance to terminate without waiting for it."""
    registry.read()
    record = registry.process_record()
    if record is None:
        output.warn("No Gulp process exists.")
        return False
    if probe.find_instance(record) is None:
        if probe.unverifiable(record):
            output.warn(
                f"Cannot verify Gulp process {output.highlight(record.pid)}",
                "(access denied). Leaving its record in place.",
            )
            return False
        registry.clear_process()
        output.warn("No Gulp process exists.")
        return False
    try:
        kill(record.pid, signal.SIGTERM)
    except ProcessLookupError:
        registry.clear_process()
        output.warn("No Gulp process exists.")
        return False
    output.success(f"Gulp instance {output.highlight(record.pid)} stopped.")
    return True


class Supervisor:
    """Owns the bundler, the dev server and the live-reload proxy for one run."""

    def __init__(
        self,
        context: SupervisorContext,
        *,
        probe: ProcessProbe | None = None,
        git: GitReader | None = None,
        pretty: Callable[[Settings], Awaitable[str]] = run_pretty,
        compiler_factory: Callable[[BundlerConfig], Any] | None = None,
        proxy_factory: Callable[..., Any] = LiveReloadProxy,
        server_factory: Callable[..., Any] = DevServer,
        title: str | None = None,
        argv: list[str] | None = None,
    ) -> None:
        self.context = context
        self.settings = context.settings
        self.registry = context.registry
        self.probe = probe or ProcessProbe(context.settings.process_names)
        self.git = git or GitReader()
        self.pretty = pretty
        self.compiler_factory = compiler_factory or self._default_compiler
        self.proxy_factory = proxy_factory
        self.server_factory = server_factory
        self.title = title if title is not None else process_title()
        self.argv = list(argv if argv is not None else sys.argv)
        self.watchdog: BranchWatchdog | None = None

    def _default_compiler(self, config: BundlerConfig) -> Compiler:
        return Compiler(
            config,
            config_path=self.settings.internal_path.parent / BUNDLER_CONFIG_NAME,
            config_env=self.settings.bundler.config_env,
            cwd=Path(self.settings.paths.basedir),
        )

    def probe_existing(self) -> ProcessInfo | None:
        self.context.state = SupervisorState.PROBING
        existing = find_running_instance(self.registry, self.probe)
        if existing is not None:
            self.context.state = SupervisorState.REFUSED
        return existing

    async def run(self, mode_flag: str | None = None, ports_flag: str | None = None) -> int:
        """Start unless another instance is live; return the exit code."""
        existing = self.probe_existing()
        if existing is not None:
            output.warn(
                f"Gulp process {output.highlight(existing.pid)}",
                "is running. Stop it before starting a new one.",
            )
            output.info("Stop current instance by running: $ gulp --stop")
            return 0

        self.context.pipeline_task = asyncio.create_task(self.start(mode_flag, ports_flag), name="gulp-start")
        try:
            await self.context.pipeline_task
        except asyncio.CancelledError:
            if not self.context.exit_requested:
                raise
            logger.info("Startup interrupted: %s", self.context.exit_reason)
        return await self.context.wait_for_exit()

    async def start(self, mode_flag: str | None, ports_flag: str | None) -> None:
        """Fixed order: ports, save-pid, watch-branch, pre-format, bundler."""
        context = self.context
        context.state = SupervisorState.STARTING
        context.mode = resolve_mode(mode_flag)
        os.environ["NODE_ENV"] = context.mode.value

        context.ports = await asyncio.to_thread(allocate_ports, self.settings.findfreeport, ports_flag)
        if context.mode is RunMode.SERVER:
            await self._ensure_bundler_port()
        self.registry.read()
        self.registry.set("process", {"ports": context.ports.model_dump()})
        self.registry.write()

        await self.save_pid()
        await self.watch_branch()
        await self.pre_format()
        await self.start_bundler()

    async def save_pid(self) -> None:
        self.registry.read()
        record = ProcessRecord(
            pid=self.context.pid,
            title=self.title,
            argv=self.argv,
            mode=self.context.mode,
            ports=self.context.ports,
        )
        self.registry.save_process(record)
        logger.info("Recorded instance pid=%s mode=%s", record.pid, record.mode.value)

    async def watch_branch(self) -> None:
        self.watchdog = BranchWatchdog(self.context, self.git)
        await self.watchdog.start()

    async def pre_format(self) -> None:
        result = await self.pretty(self.settings)
        if result.strip():
            output.info(result.strip())

    def _report(self, stats: Stats | None) -> None:
        if stats is None:
            return
        if stats.has_warnings():
            for line in stats.warnings:
                output.warn(line)
        output.info(stats.to_string())

    async def _ensure_bundler_port(self) -> None:
        ports = self.context.ports
        if ports.webpack is not None:
            return
        config = self.settings.findfreeport
        taken = {ports.local, ports.ui}
        candidates = await asyncio.to_thread(
            find_free_ports, config.range.start, config.range.end, config.ip, len(taken) + 1
        )
        ports.webpack = next(port for port in candidates if port not in taken)

    def _record_proxy_ports(self, proxy: Any) -> None:
        """Persist ports the proxy had to discover for itself."""
        ports = self.context.ports
        local, ui, _bundler = proxy.ports
        if (local, ui) == (ports.local, ports.ui):
            return
        ports.local, ports.ui = local, ui
        self.registry.read()
        self.registry.set("process.ports", ports.model_dump())
        self.registry.write()

    async def start_bundler(self) -> None:
        context = self.context
        mode = context.mode
        output.info(f"Running in {output.highlight(mode.value, 'bright_black')} mode.")
        config = BundlerConfig.from_settings(self.settings, mode)

        proxy = self.proxy_factory(
            build_server_options(self.settings, mode, context.ports),
            {"reload": mode is not RunMode.SERVER, "name": "BS"},
        )
        proxy.ports[2] = context.ports.webpack
        config.plugins.insert(0, proxy)
        context.proxy = proxy
        await proxy.start()
        self._record_proxy_ports(proxy)

        compiler = self.compiler_factory(config)
        if mode is RunMode.PRODUCTION:
            stats = await compiler.run()
            self._report(stats)
            context.complete_once()
            context.state = SupervisorState.RUNNING
            context.request_exit(0, "production build complete")
            return
        if mode is RunMode.DEVELOPMENT:
            await self._start_watching(compiler)
        else:
            await self._start_server(compiler, config)
        context.state = SupervisorState.RUNNING
        output.success(f"Gulp instance {output.highlight(context.pid)} running.")

    async def _start_watching(self, compiler: Any) -> None:
        first_build: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_build(err: Exception | None, stats: Stats | None) -> None:
            if err is not None:
                if not first_build.done():
                    first_build.set_exception(err)
                else:
                    output.error(str(err))
                return
            self._report(stats)
            # Rebuilds call back again; startup completes only once.
            if self.context.complete_once():
                first_build.set_result(stats)

        self.context.watching = compiler.watch(WatchOptions(ignored=self.settings.bundler.ignored), on_build)
        await first_build

    async def _start_server(self, compiler: Any, config: BundlerConfig) -> None:
        port = self.context.ports.webpack
        config.prepend_entries(
            [entry.format(port=port) for entry in self.settings.bundler.hot_client_entries]
        )
        server = self.server_factory(
            compiler,
            DevServerOptions(
                content_base=config.content_base,
                index=self.settings.app.index,
                ignored=self.settings.bundler.ignored,
            ),
        )
        self.context.server = server
        await server.listen(port, "localhost", self.context.complete_once)
        await server.first_build()

    async def stop_services(self) -> None:
        """Gracefully stop everything this run started while the loop is alive."""
        context = self.context
        if self.watchdog is not None:
            self.watchdog.stop()
        if context.watching is not None:
            context.watching.close()
            context.watching = None
        if context.server is not None:
            await context.server.stop()
            context.server = None
        if context.proxy is not None:
            await context.proxy.stop()
            context.proxy = None
