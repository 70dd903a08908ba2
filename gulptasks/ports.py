"""Free port discovery and --ports override parsing."""

from __future__ import annotations

import logging
import re
import socket

from gulptasks.errors import NoFreePortError
from gulptasks.registry import PortSet
from gulptasks.settings import FindFreePortSettings

logger = logging.getLogger("gulptasks.ports")

PORT_SLOTS = ("local", "ui", "webpack")


def is_port_free(host: str, port: int) -> bool:
    """Return True when the port can be bound on host right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_free_ports(start: int, end: int, host: str, count: int) -> list[int]:
    """Return count free ports from the inclusive range [start, end]."""
    found: list[int] = []
    if count <= 0:
        return found
    for port in range(start, end + 1):
        if is_port_free(host, port):
            found.append(port)
            if len(found) == count:
                return found
    raise NoFreePortError(
        f"only {len(found)} of {count} free ports found in range {start}-{end} on {host}"
    )


def parse_port_override(value: str | None) -> list[int | None]:
    """Parse "local:ui" into positional slots; empty slots are None.

    Everything except digits and colons is dropped first, so "3000:",
    ":3001" and "3000" are all accepted.
    """
    if not value:
        return []
    cleaned = re.sub(r"[^\d:]", "", value)
    slots: list[int | None] = []
    for part in cleaned.split(":"):
        slots.append(int(part) if part else None)
    return slots


def apply_overrides(discovered: list[int | None], overrides: list[int | None]) -> list[int | None]:
    """Replace discovered slots with operator-supplied ports positionally."""
    merged = list(discovered)
    for index, port in enumerate(overrides[: len(merged)]):
        if port:
            merged[index] = port
    return merged


def _replace_duplicates(
    config: FindFreePortSettings, merged: list[int | None], overrides: list[int | None]
) -> list[int | None]:
    """Re-discover discovered slots that collide with an override."""
    result = list(merged)
    for index, port in enumerate(result):
        overridden = index < len(overrides) and bool(overrides[index])
        if port is None or overridden or result.count(port) == 1:
            continue
        taken = {slot for slot in result if slot is not None}
        for candidate in range(config.range.start, config.range.end + 1):
            if candidate not in taken and is_port_free(config.ip, candidate):
                result[index] = candidate
                break
        else:
            raise NoFreePortError(
                f"no free port to replace {port} in range {config.range.start}-{config.range.end}"
            )
    return result


def allocate_ports(config: FindFreePortSettings, override: str | None = None) -> PortSet:
    """Discover ports for the local, UI and bundler slots."""
    discovered: list[int | None] = list(
        find_free_ports(config.range.start, config.range.end, config.ip, config.count)
    )
    discovered = (discovered + [None] * len(PORT_SLOTS))[: len(PORT_SLOTS)]
    overrides = parse_port_override(override)
    merged = apply_overrides(discovered, overrides)
    merged = _replace_duplicates(config, merged, overrides)
    ports = PortSet(**dict(zip(PORT_SLOTS, merged)))
    logger.info("Allocated ports local=%s ui=%s webpack=%s", ports.local, ports.ui, ports.webpack)
    return ports
