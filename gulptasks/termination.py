"""Single cleanup path run on every way the task runner process can end."""

from __future__ import annotations

import atexit
import logging
import os
import shutil
import signal
import sys
from pathlib import Path
from typing import Any, Callable

from gulptasks import output
from gulptasks.context import SupervisorContext, SupervisorState
from gulptasks.errors import RegistryError

logger = logging.getLogger("gulptasks.termination")

DEFAULT_SIGNALS = tuple(
    sig for sig in (getattr(signal, name, None) for name in ("SIGINT", "SIGTERM", "SIGHUP")) if sig is not None
)


def clear_directory(path: Path) -> int:
    """Delete everything inside path, hidden entries included; keep path itself."""
    if not path.is_dir():
        return 0
    removed = 0
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()
        removed += 1
    return removed


class TerminationHandler:
    """Runs at most once per process, on normal exit, fatal error or signal.

    Only the process whose pid is recorded in the registry cleans up; any
    other task runner invocation leaves the registry alone.
    """

    def __init__(
        self,
        context: SupervisorContext,
        *,
        kill: Callable[[int, int], None] = os.kill,
    ) -> None:
        self.context = context
        self.kill = kill
        self.installed = False
        self._previous_handlers: dict[int, Any] = {}
        self._previous_excepthook = None

    def install(self, signals: tuple[int, ...] = DEFAULT_SIGNALS) -> None:
        if self.installed:
            return
        atexit.register(self._on_exit)
        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._excepthook
        for sig in signals:
            self._previous_handlers[sig] = signal.getsignal(sig)
            signal.signal(sig, self._on_signal)
        self.installed = True

    def uninstall(self) -> None:
        if not self.installed:
            return
        atexit.unregister(self._on_exit)
        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
        for sig, previous in self._previous_handlers.items():
            signal.signal(sig, previous if previous is not None else signal.SIG_DFL)
        self._previous_handlers.clear()
        self.installed = False

    def _excepthook(self, exc_type, exc, tb) -> None:
        self.context.faulted = True
        hook = self._previous_excepthook or sys.__excepthook__
        hook(exc_type, exc, tb)

    def _on_exit(self) -> None:
        self.fire()

    def _on_signal(self, signum: int, _frame) -> None:
        self.fire(signum)

    def _redeliver(self, pid: int, signum: int) -> None:
        signal.signal(signum, signal.SIG_DFL)
        self.kill(pid, signum)

    def fire(self, signum: int | None = None) -> bool:
        """Run cleanup; True only when this process owned the registry record."""
        context = self.context
        if context.terminating:
            return False
        context.terminating = True
        self.uninstall()

        try:
            context.registry.read()
        except RegistryError as exc:
            logger.error("Cannot verify instance ownership: %s", exc)
            if signum is not None:
                self._redeliver(os.getpid(), signum)
            return False

        recorded_pid = context.registry.recorded_pid()
        if recorded_pid is None or recorded_pid != context.pid:
            if signum is not None:
                self._redeliver(os.getpid(), signum)
            return False

        context.state = SupervisorState.STOPPING
        # Old previews embed this instance's proxy ports.
        try:
            clear_directory(context.settings.preview_path)
        except OSError as exc:
            logger.warning("Could not remove markdown previews: %s", exc)

        if context.faulted or (context.exit_code or 0) != 0:
            output.error(f"Error caused instance {output.highlight(context.pid)} to close.")
        else:
            output.success(f"Gulp instance {output.highlight(context.pid)} stopped.")

        try:
            context.registry.clear_process()
        except RegistryError as exc:
            logger.error("Could not clear the process record: %s", exc)

        if context.watchdog is not None:
            context.watchdog.stop()
        context.branch_name = None
        self._close_handles()
        context.state = SupervisorState.IDLE

        if signum is not None:
            self._redeliver(recorded_pid, signum)
        return True

    def _close_handles(self) -> None:
        handles = (
            (self.context.watching, "Closed bundler watcher."),
            (self.context.server, "Closed dev server."),
            (self.context.proxy, "Closed live-reload proxy."),
        )
        for handle, message in handles:
            close = getattr(handle, "close", None)
            if close is None:
                continue
            try:
                close(lambda message=message: output.success(message))
            except Exception as exc:  # pragma: no cover - best effort shutdown
                logger.warning("Error while closing %s: %s", type(handle).__name__, exc)
