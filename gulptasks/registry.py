"""Internal registry file tracking the live supervisor instance."""

from __future__ import annotations

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from gulptasks.errors import RegistryError

logger = logging.getLogger("gulptasks.registry")


class RunMode(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    SERVER = "server"


MODE_ALIASES = {
    "d": RunMode.DEVELOPMENT,
    "p": RunMode.PRODUCTION,
    "s": RunMode.SERVER,
}


def resolve_mode(value: str | None) -> RunMode:
    """Map a --mode flag value to a run mode; unknown values fall back to development."""
    return MODE_ALIASES.get((value or "d").strip().lower(), RunMode.DEVELOPMENT)


class PortSet(BaseModel):
    local: Optional[int] = None
    ui: Optional[int] = None
    webpack: Optional[int] = None


class ProcessRecord(BaseModel):
    pid: int
    title: str = ""
    argv: list[str] = Field(default_factory=list)
    mode: RunMode = RunMode.DEVELOPMENT
    ports: PortSet = Field(default_factory=PortSet)


class Registry:
    """JSON document persisted between CLI invocations.

    The document is read fresh before every read-modify-write cycle. There is
    no locking: the last writer wins.
    """

    def __init__(self, path: Path, indent: str | int = "\t") -> None:
        self.path = Path(path)
        self.indent = indent
        self.data: dict[str, Any] = {}

    def read(self) -> dict[str, Any]:
        """Load the document, creating an empty one on disk when missing."""
        if not self.path.exists():
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self.path.write_text("{}", encoding="utf-8")
            except OSError as exc:
                raise RegistryError(f"cannot create {self.path}: {exc}") from exc
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            raise RegistryError(f"cannot read {self.path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise RegistryError(f"{self.path} must contain an object")
        self.data = raw
        return self.data

    def get(self, dotted: str, default: Any = None) -> Any:
        node: Any = self.data
        for key in dotted.split("."):
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return node if node is not None else default

    def set(self, dotted: str, value: Any) -> None:
        """Merge a value into the document at a dotted path."""
        keys = dotted.split(".")
        node = self.data
        for key in keys[:-1]:
            child = node.get(key)
            if not isinstance(child, dict):
                child = {}
                node[key] = child
            node = child
        node[keys[-1]] = value

    def write(self) -> None:
        """Persist the full document with sorted keys."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps(self.data, indent=self.indent, sort_keys=True),
                encoding="utf-8",
            )
        except (OSError, TypeError) as exc:
            raise RegistryError(f"cannot write {self.path}: {exc}") from exc

    def process_record(self) -> ProcessRecord | None:
        """Return the typed process record, or None when absent or incomplete."""
        raw = self.get("process")
        if not isinstance(raw, dict) or not raw.get("pid"):
            return None
        try:
            return ProcessRecord.model_validate(raw)
        except ValidationError:
            logger.warning("Ignoring malformed process record in %s", self.path)
            return None

    def recorded_pid(self) -> int | None:
        pid = self.get("process.pid")
        return pid if isinstance(pid, int) and pid > 0 else None

    def recorded_ports(self) -> PortSet | None:
        raw = self.get("process.ports")
        if not isinstance(raw, dict):
            return None
        try:
            return PortSet.model_validate(raw)
        except ValidationError:
            return None

    def save_process(self, record: ProcessRecord) -> None:
        self.set("process", record.model_dump(mode="json"))
        self.write()

    def clear_process(self) -> None:
        self.set("process", None)
        self.write()
