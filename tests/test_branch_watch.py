"""Tests for the branch switch watchdog."""

import tempfile
import unittest
from pathlib import Path
from unittest import mock

from gulptasks.branch_watch import BranchWatchdog
from gulptasks.context import SupervisorContext
from gulptasks.git_state import GitState
from gulptasks.registry import Registry
from gulptasks.settings import Settings


class FakeGit:
    def __init__(self, branch: str = "main", is_repo: bool = True) -> None:
        self.branch = branch
        self.is_repo = is_repo

    async def is_git(self, path: Path) -> bool:
        return self.is_repo

    async def check(self, path: Path) -> GitState:
        return GitState(self.branch)

    def check_sync(self, path: Path) -> GitState:
        return GitState(self.branch)


async def idle_awatch(*_paths, stop_event=None, **_kwargs):
    await stop_event.wait()
    return
    yield


class BranchWatchdogTests(unittest.IsolatedAsyncioTestCase):
    """Branch capture and exit request on a switch."""

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        settings = Settings.model_validate({"paths": {"basedir": str(root)}})
        self.context = SupervisorContext(settings=settings, registry=Registry(settings.internal_path))
        self.git = FakeGit()
        self.watchdog = BranchWatchdog(self.context, self.git)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def test_not_a_repository_is_a_noop(self) -> None:
        self.git.is_repo = False
        self.assertFalse(await self.watchdog.start())
        self.assertIsNone(self.context.branch_name)

    async def test_start_captures_branch_and_stop_forgets_it(self) -> None:
        with mock.patch("gulptasks.branch_watch.watchfiles.awatch", idle_awatch):
            self.assertTrue(await self.watchdog.start())
            self.assertEqual(self.context.branch_name, "main")
            self.assertIs(self.context.watchdog, self.watchdog)
            self.watchdog.stop()
        self.assertIsNone(self.context.branch_name)

    async def test_same_branch_keeps_running(self) -> None:
        self.context.branch_name = "main"
        self.assertFalse(self.watchdog.handle_head_change())
        self.assertFalse(self.context.exit_requested)

    async def test_branch_switch_requests_clean_exit(self) -> None:
        self.context.branch_name = "main"
        self.git.branch = "feature-x"
        self.assertTrue(self.watchdog.handle_head_change())
        self.assertTrue(self.context.exit_requested)
        self.assertEqual(self.context.exit_code, 0)
        self.assertIn("feature-x", self.context.exit_reason)
        self.assertEqual(await self.context.wait_for_exit(), 0)


if __name__ == "__main__":
    unittest.main()
