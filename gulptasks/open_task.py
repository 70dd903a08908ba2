"""Open project files in a browser, an editor or a file manager."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import webbrowser
from dataclasses import dataclass, field
from pathlib import Path

import typer

from gulptasks.errors import ResourceUnavailableError
from gulptasks.registry import Registry, RunMode
from gulptasks.settings import Settings
from gulptasks.uri import build_uri

logger = logging.getLogger("gulptasks.open_task")


@dataclass
class EditorCommand:
    command: str
    flags: list[str] = field(default_factory=list)

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.flags]


def get_editor(
    settings: Settings,
    name: str,
    *,
    line: int | None = None,
    column: int | None = None,
    use: str | None = None,
    flags: list[str] | None = None,
    environ: dict[str, str] | None = None,
    platform: str | None = None,
) -> EditorCommand:
    """Work out the editor command line that opens name at line:column.

    Resolution order: explicit editor, the settings editor when active, then
    $EDITOR / $VISUAL, then notepad or vim.
    """
    environ = os.environ if environ is None else environ
    platform = platform or sys.platform

    editor = use
    if not editor and settings.editor.active and settings.editor.command:
        editor = " ".join([settings.editor.command, *settings.editor.flags])
    if not editor:
        editor = environ.get("EDITOR") or environ.get("VISUAL")
    if not editor:
        editor = "notepad" if platform.startswith("win") else "vim"

    # "subl -w -n" style values carry their own flags.
    parts = editor.lower().split()
    command = parts[0]
    args = list(flags or []) + parts[1:]

    line = line or 1
    column = column or 1

    if command == "code":
        args.append("--goto")
    if command in ("atom", "code") or command.startswith("subl"):
        args.extend(["--new-window", "--wait", f"{name}:{line}:{column}"])
    elif command == "gedit":
        args.extend(["--new-window", "--wait", name, f"+{line}:{column}"])
    elif command in ("webstorm", "intellij"):
        args.append(f"{name}:{line}")
    elif command == "textmate":
        args.extend(["--line", f"{line}:{column}", name])
    elif command in ("vim", "neovim"):
        args.extend([f"+call cursor({line}, {column})", name])
    else:
        args.append(name)

    return EditorCommand(command=command, flags=args)


def directory_target(value: str) -> Path:
    """A path with a file extension opens its parent directory."""
    path = Path(value)
    if path.suffix:
        return path.parent
    return path


def open_directory(value: str, launch=typer.launch) -> Path:
    directory = directory_target(value)
    if not directory.is_dir():
        raise ResourceUnavailableError(f"The directory {directory} does not exist.")
    logger.info("Opening %s in the file manager", directory)
    launch(str(directory))
    return directory


def open_in_editor(
    settings: Settings,
    name: str,
    *,
    wait: bool = False,
    line: int | None = None,
    column: int | None = None,
    use: str | None = None,
    popen=subprocess.Popen,
) -> EditorCommand:
    if not Path(name).is_file():
        raise ResourceUnavailableError(f"The file {name} does not exist.")
    editor = get_editor(settings, name, line=line, column=column, use=use)
    logger.info("Opening %s with %s", name, " ".join(editor.argv))
    try:
        child = popen(editor.argv, start_new_session=True)
    except FileNotFoundError as exc:
        raise ResourceUnavailableError(f"Editor {editor.command} was not found.") from exc
    if wait:
        child.wait()
    return editor


def browser_port(registry: Registry, port: int | None = None) -> int | None:
    """Explicit port, else the instance's local port; none in production."""
    registry.read()
    if port is None:
        ports = registry.recorded_ports()
        port = ports.local if ports else None
    if registry.get("process.mode") == RunMode.PRODUCTION.value:
        return None
    return port


def open_in_browser(
    settings: Settings,
    registry: Registry,
    filepath: str,
    port: int | None = None,
    opener=webbrowser.open,
) -> str:
    if not settings.resolve(filepath).exists():
        raise ResourceUnavailableError(f"The file {filepath} does not exist.")
    url = build_uri(settings.app.appdir, filepath, browser_port(registry, port), settings.app.https)
    logger.info("Opening %s", url)
    opener(url)
    return url

