"""Version control state reader backed by the git command line."""

from __future__ import annotations

import asyncio
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from gulptasks.errors import CollaboratorError

logger = logging.getLogger("gulptasks.git_state")

GIT_TIMEOUT_SECONDS = 5


@dataclass(frozen=True)
class GitState:
    branch: str


def _branch_command() -> list[str]:
    return ["git", "rev-parse", "--abbrev-ref", "HEAD"]


class GitReader:
    """Reads repository presence and the checked-out branch."""

    async def is_git(self, path: Path) -> bool:
        try:
            proc = await asyncio.create_subprocess_exec(
                "git",
                "rev-parse",
                "--is-inside-work-tree",
                cwd=str(path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            logger.info("git executable not found; branch watching disabled")
            return False
        stdout, _ = await proc.communicate()
        return proc.returncode == 0 and stdout.decode().strip() == "true"

    async def check(self, path: Path) -> GitState:
        proc = await asyncio.create_subprocess_exec(
            *_branch_command(),
            cwd=str(path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise CollaboratorError(
                "git branch lookup failed",
                returncode=proc.returncode,
                output=stderr.decode(errors="replace"),
            )
        return GitState(branch=stdout.decode().strip())

    def check_sync(self, path: Path) -> GitState:
        result = subprocess.run(
            _branch_command(),
            cwd=str(path),
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_SECONDS,
        )
        if result.returncode != 0:
            raise CollaboratorError(
                "git branch lookup failed",
                returncode=result.returncode,
                output=result.stderr,
            )
        return GitState(branch=result.stdout.strip())
