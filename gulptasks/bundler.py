"""Bundler collaborator: runs the configured build command once or on file changes."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import watchfiles

from gulptasks.errors import CompileError
from gulptasks.registry import RunMode
from gulptasks.settings import Settings

logger = logging.getLogger("gulptasks.bundler")

WatchCallback = Callable[[Optional[Exception], Optional["Stats"]], None]


@dataclass
class Stats:
    """Result of one bundler compilation."""

    returncode: int
    output: str = ""
    duration: float = 0.0

    @property
    def errors(self) -> list[str]:
        return [line for line in self.output.splitlines() if "ERROR" in line]

    @property
    def warnings(self) -> list[str]:
        return [line for line in self.output.splitlines() if "WARNING" in line]

    def has_errors(self) -> bool:
        return self.returncode != 0 or bool(self.errors)

    def has_warnings(self) -> bool:
        return bool(self.warnings)

    def to_string(self) -> str:
        status = "failed" if self.has_errors() else "compiled"
        return f"Bundle {status} in {self.duration:.2f}s (exit {self.returncode})"


@dataclass
class BundlerConfig:
    command: list[str]
    entry: dict[str, list[str]]
    output: str
    content_base: str
    watch: list[str]
    mode: RunMode = RunMode.DEVELOPMENT
    plugins: list[Any] = field(default_factory=list)

    @classmethod
    def from_settings(cls, settings: Settings, mode: RunMode) -> "BundlerConfig":
        bundler = settings.bundler
        return cls(
            command=list(bundler.command),
            entry={name: list(files) for name, files in bundler.entry.items()},
            output=str(settings.resolve(bundler.output)),
            content_base=str(settings.resolve(bundler.content_base)),
            watch=[str(settings.resolve(path)) for path in bundler.watch],
            mode=mode,
        )

    def prepend_entries(self, entries: list[str]) -> None:
        """Put client entries in front of every bundle entry."""
        for name, files in self.entry.items():
            self.entry[name] = [*entries, *files]

    def to_document(self) -> dict[str, Any]:
        return {
            "entry": self.entry,
            "output": self.output,
            "contentBase": self.content_base,
            "mode": self.mode.value,
            "plugins": [getattr(plugin, "name", type(plugin).__name__) for plugin in self.plugins],
        }


@dataclass
class WatchOptions:
    ignored: str = "node_modules"
    debounce_ms: int = 300


class Watching:
    """Handle to a running watch loop."""

    def __init__(self, compiler: "Compiler", stop_event: asyncio.Event) -> None:
        self.compiler = compiler
        self._stop_event = stop_event
        self.task: asyncio.Task | None = None

    @property
    def closed(self) -> bool:
        return self._stop_event.is_set()

    def close(self, callback: Callable[[], None] | None = None) -> None:
        """Stop watching; safe to call from signal handlers and more than once."""
        self._stop_event.set()
        self.compiler.terminate()
        if self.task is None or self.task.done():
            if callback:
                callback()
            return
        if callback:
            self.task.add_done_callback(lambda _task: callback())
        self.task.cancel()


class Compiler:
    """Runs the bundler command with the resolved config exported to it."""

    def __init__(
        self,
        config: BundlerConfig,
        *,
        config_path: Path,
        config_env: str = "GULPTASKS_BUNDLER_CONFIG",
        cwd: Path | None = None,
    ) -> None:
        self.config = config
        self.config_path = Path(config_path)
        self.config_env = config_env
        self.cwd = cwd
        self._proc: asyncio.subprocess.Process | None = None

    def _write_config(self) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(json.dumps(self.config.to_document(), indent=2), encoding="utf-8")

    def _environment(self) -> dict[str, str]:
        env = os.environ.copy()
        env[self.config_env] = str(self.config_path)
        env["NODE_ENV"] = self.config.mode.value
        return env

    async def compile(self) -> Stats:
        """Run one compilation; CompileError when the command fails."""
        self._write_config()
        started = time.monotonic()
        logger.info("Running bundler: %s", " ".join(self.config.command))
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.config.command,
                cwd=str(self.cwd) if self.cwd else None,
                env=self._environment(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as exc:
            raise CompileError(f"bundler command not found: {self.config.command[0]}") from exc
        stdout, _ = await self._proc.communicate()
        stats = Stats(
            returncode=self._proc.returncode if self._proc.returncode is not None else -1,
            output=stdout.decode(errors="replace"),
            duration=time.monotonic() - started,
        )
        self._proc = None
        if stats.has_errors():
            raise CompileError(stats.to_string(), returncode=stats.returncode, output=stats.output)
        self._apply_plugins(stats)
        return stats

    def _apply_plugins(self, stats: Stats) -> None:
        for plugin in self.config.plugins:
            hook = getattr(plugin, "after_compile", None)
            if hook is not None:
                hook(stats)

    async def run(self) -> Stats:
        """Single-shot build."""
        return await self.compile()

    def watch(self, options: WatchOptions, callback: WatchCallback) -> Watching:
        """Build now and again on every change under the configured watch paths."""
        watching = Watching(self, asyncio.Event())
        watching.task = asyncio.create_task(
            self._watch_loop(options, callback, watching), name="bundler-watch"
        )
        return watching

    async def _compile_for_callback(self, callback: WatchCallback) -> None:
        try:
            stats = await self.compile()
        except CompileError as exc:
            callback(exc, None)
        else:
            callback(None, stats)

    async def _watch_loop(self, options: WatchOptions, callback: WatchCallback, watching: Watching) -> None:
        await self._compile_for_callback(callback)
        paths = [path for path in self.config.watch if Path(path).exists()]
        if not paths:
            logger.warning("No existing watch paths in %s; rebuilds disabled", self.config.watch)
            return
        watch_filter = watchfiles.DefaultFilter(
            ignore_entity_patterns=(*watchfiles.DefaultFilter.ignore_entity_patterns, options.ignored),
        )
        async for changes in watchfiles.awatch(
            *paths,
            watch_filter=watch_filter,
            debounce=options.debounce_ms,
            stop_event=watching._stop_event,
        ):
            logger.info("Rebuilding after %d change(s)", len(changes))
            await self._compile_for_callback(callback)

    def terminate(self) -> None:
        """Kill an in-flight build process, if any."""
        proc = self._proc
        if proc is not None and proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
