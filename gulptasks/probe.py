"""Process table lookups for recorded supervisor pids."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Iterable

import psutil

from gulptasks.registry import ProcessRecord

logger = logging.getLogger("gulptasks.probe")


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    name: str
    cmd: str
    cmdline: list[str] = field(default_factory=list)
    accessible: bool = True


def process_title(pid: int | None = None) -> str:
    """Return the command line of a process as one string."""
    proc = psutil.Process(pid or os.getpid())
    try:
        return " ".join(proc.cmdline())
    except (psutil.AccessDenied, psutil.ZombieProcess):
        return proc.name()


def normalize_name(name: str) -> str:
    lowered = (name or "").lower()
    return "python" if lowered.startswith("python") else lowered


class ProcessProbe:
    """Advisory check for whether a recorded pid is still our task runner.

    A match needs both the exact command line and an expected process name.
    Pid reuse by a process with an identical command line is not detected.
    """

    def __init__(self, process_names: Iterable[str] = ("gulp", "python")) -> None:
        self.process_names = {normalize_name(name) for name in process_names}

    def exists(self, pid: int | None) -> ProcessInfo | None:
        """Return process information for pid, or None when no such process exists."""
        if not pid or pid < 0:
            return None
        try:
            proc = psutil.Process(pid)
            name = proc.name()
            accessible = True
            try:
                cmdline = proc.cmdline()
            except psutil.AccessDenied:
                cmdline = []
                accessible = False
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return None
        except psutil.AccessDenied:
            logger.debug("Access denied inspecting pid %s", pid)
            return ProcessInfo(pid=pid, name="", cmd="", accessible=False)
        return ProcessInfo(pid=pid, name=name, cmd=" ".join(cmdline), cmdline=cmdline, accessible=accessible)

    def matches(self, info: ProcessInfo, record: ProcessRecord) -> bool:
        return info.cmd == record.title and normalize_name(info.name) in self.process_names

    def unverifiable(self, record: ProcessRecord | None) -> bool:
        """True when the recorded pid is alive but cannot be inspected."""
        if record is None:
            return False
        info = self.exists(record.pid)
        return info is not None and not info.accessible

    def find_instance(self, record: ProcessRecord | None) -> ProcessInfo | None:
        """Return the live process for record when it is the same task runner instance."""
        if record is None:
            return None
        info = self.exists(record.pid)
        if info is None:
            logger.info("Recorded pid %s is not running; treating record as stale", record.pid)
            return None
        if not self.matches(info, record):
            logger.info(
                "Pid %s belongs to an unrelated process (%s); treating record as stale",
                record.pid,
                info.name or "unknown",
            )
            return None
        return info
