"""Run state shared by the supervisor, branch watchdog and termination handler."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from gulptasks.registry import PortSet, Registry, RunMode
from gulptasks.settings import Settings

logger = logging.getLogger("gulptasks.context")


class SupervisorState(str, Enum):
    IDLE = "idle"
    PROBING = "probing"
    REFUSED = "refused"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class SupervisorContext:
    """In-memory handles for one task runner process. Nothing here is persisted."""

    settings: Settings
    registry: Registry
    pid: int = field(default_factory=os.getpid)
    mode: RunMode = RunMode.DEVELOPMENT
    ports: PortSet = field(default_factory=PortSet)
    state: SupervisorState = SupervisorState.IDLE
    branch_name: str | None = None
    watching: Any = None
    server: Any = None
    proxy: Any = None
    watchdog: Any = None
    is_complete: bool = False
    terminating: bool = False
    faulted: bool = False
    exit_code: int | None = None
    exit_reason: str = ""
    pipeline_task: asyncio.Task | None = None
    _exit_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def complete_once(self) -> bool:
        """Latch the startup completion; True only for the first caller."""
        if self.is_complete:
            return False
        self.is_complete = True
        return True

    @property
    def exit_requested(self) -> bool:
        return self.exit_code is not None

    def request_exit(self, code: int = 0, reason: str = "") -> None:
        """Ask the running process to exit voluntarily; the first request wins."""
        if self.exit_code is not None:
            return
        self.exit_code = code
        self.exit_reason = reason
        logger.info("Exit requested (code=%s): %s", code, reason or "no reason given")
        self._exit_event.set()
        task = self.pipeline_task
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    async def wait_for_exit(self) -> int:
        await self._exit_event.wait()
        return self.exit_code or 0
