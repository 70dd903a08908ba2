"""Stops the running instance when the checked-out git branch changes."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import watchfiles

from gulptasks import output
from gulptasks.context import SupervisorContext
from gulptasks.errors import CollaboratorError
from gulptasks.git_state import GitReader

logger = logging.getLogger("gulptasks.branch_watch")


class BranchWatchdog:
    """Watch the git HEAD file and request an exit on a branch switch.

    File layout can differ between branches, so building against the new
    checkout with the old instance is not allowed; the operator restarts.
    """

    def __init__(
        self,
        context: SupervisorContext,
        git: GitReader | None = None,
        *,
        repo_path: Path | None = None,
        head_path: Path | None = None,
    ) -> None:
        self.context = context
        self.git = git or GitReader()
        self.repo_path = Path(repo_path or context.settings.paths.basedir)
        self.head_path = Path(head_path or context.settings.githead_path)
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    async def start(self) -> bool:
        """Capture the branch and begin watching; False when not a git checkout."""
        if not await self.git.is_git(self.repo_path):
            logger.info("%s is not a git repository; branch watch skipped", self.repo_path)
            return False
        state = await self.git.check(self.repo_path)
        self.context.branch_name = state.branch
        self.context.watchdog = self
        self._task = asyncio.create_task(self._watch(), name="branch-watch")
        logger.info("Watching %s for branch switches (branch=%s)", self.head_path, state.branch)
        return True

    def _is_head(self, _change: watchfiles.Change, path: str) -> bool:
        return Path(path).name == self.head_path.name

    async def _watch(self) -> None:
        # git rewrites HEAD through a lock file rename, so watch the directory.
        async for _changes in watchfiles.awatch(
            self.head_path.parent,
            watch_filter=self._is_head,
            recursive=False,
            stop_event=self._stop_event,
        ):
            try:
                switched = self.handle_head_change()
            except CollaboratorError as exc:
                logger.warning("Branch lookup failed: %s", exc)
                continue
            if switched:
                return

    def handle_head_change(self) -> bool:
        """Compare the live branch with the captured one; True when it switched."""
        previous = self.context.branch_name
        current = self.git.check_sync(self.repo_path).branch
        if previous:
            output.info("Gulp is monitoring branch:", output.highlight(previous, "magenta"))
        if current == previous:
            return False
        output.warn(
            "Gulp stopped due to a branch switch.",
            f"({previous} => {output.highlight(current, 'magenta')})",
        )
        output.info("Restart Gulp to monitor", output.highlight(current, "magenta"), "branch.")
        self.context.request_exit(0, f"branch switch {previous} -> {current}")
        return True

    def stop(self) -> None:
        self.context.branch_name = None
        self._stop_event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
