"""External tools the supervisor invokes but does not implement."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from gulptasks.errors import CollaboratorError
from gulptasks.settings import Settings

logger = logging.getLogger("gulptasks.collaborators")


async def run_command(command: list[str], cwd: Path | None = None) -> str:
    """Run a tool to completion and return its combined output."""
    logger.info("Running command: %s", " ".join(command))
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except FileNotFoundError as exc:
        raise CollaboratorError(f"command not found: {command[0]}", returncode=127) from exc
    stdout, _ = await proc.communicate()
    output = stdout.decode(errors="replace")
    if proc.returncode != 0:
        raise CollaboratorError(
            f"{command[0]} exited with code {proc.returncode}",
            returncode=proc.returncode,
            output=output,
        )
    return output


async def run_pretty(settings: Settings) -> str:
    """Format project files in place with the configured formatter."""
    return await run_command(settings.pretty.command, cwd=Path(settings.paths.basedir))
