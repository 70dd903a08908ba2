"""Tests for the one-shot termination handler."""

import signal
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from gulptasks.context import SupervisorContext, SupervisorState
from gulptasks.registry import PortSet, ProcessRecord, Registry
from gulptasks.settings import Settings
from gulptasks.termination import TerminationHandler, clear_directory


class FakeHandle:
    def __init__(self) -> None:
        self.closed = False

    def close(self, callback=None) -> None:
        self.closed = True
        if callback:
            callback()


class FakeWatchdog:
    def __init__(self) -> None:
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class TerminationHandlerTests(unittest.TestCase):
    """Only the recorded owner cleans up, and only once."""

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.settings = Settings.model_validate({"paths": {"basedir": str(root)}})
        self.registry = Registry(self.settings.internal_path)
        self.registry.read()
        self.context = SupervisorContext(settings=self.settings, registry=self.registry, pid=4242)
        self.kill = mock.Mock()
        self.handler = TerminationHandler(self.context, kill=self.kill)

        previews = self.settings.preview_path
        previews.mkdir(parents=True)
        (previews / "readme.html").write_text("<p>preview</p>", encoding="utf-8")
        (previews / ".hidden").write_text("x", encoding="utf-8")
        (previews / "nested").mkdir()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _record(self, pid: int) -> None:
        self.registry.save_process(ProcessRecord(pid=pid, title="gulp", ports=PortSet(local=3000, ui=3001)))

    def test_owner_clears_record_previews_and_handles(self) -> None:
        self._record(4242)
        watching, server, proxy = FakeHandle(), FakeHandle(), FakeHandle()
        watchdog = FakeWatchdog()
        self.context.watching = watching
        self.context.server = server
        self.context.proxy = proxy
        self.context.watchdog = watchdog
        self.context.branch_name = "main"

        self.assertTrue(self.handler.fire())

        fresh = Registry(self.settings.internal_path)
        fresh.read()
        self.assertIn("process", fresh.data)
        self.assertIsNone(fresh.data["process"])
        self.assertEqual(list(self.settings.preview_path.iterdir()), [])
        self.assertTrue(self.settings.preview_path.is_dir())
        self.assertTrue(watching.closed and server.closed and proxy.closed)
        self.assertTrue(watchdog.stopped)
        self.assertIsNone(self.context.branch_name)
        self.assertIs(self.context.state, SupervisorState.IDLE)
        self.kill.assert_not_called()

    def test_non_owner_leaves_registry_untouched(self) -> None:
        self._record(9999)
        self.assertFalse(self.handler.fire())

        fresh = Registry(self.settings.internal_path)
        fresh.read()
        self.assertEqual(fresh.recorded_pid(), 9999)
        self.assertEqual(len(list(self.settings.preview_path.iterdir())), 3)

    def test_fires_at_most_once(self) -> None:
        self._record(4242)
        self.assertTrue(self.handler.fire())
        self._record(4242)
        self.assertFalse(self.handler.fire())
        self.assertEqual(self.registry.recorded_pid(), 4242)

    def test_signal_is_redelivered_to_recorded_pid(self) -> None:
        self._record(4242)
        with mock.patch("gulptasks.termination.signal.signal") as set_handler:
            self.assertTrue(self.handler.fire(signal.SIGTERM))
        set_handler.assert_called_with(signal.SIGTERM, signal.SIG_DFL)
        self.kill.assert_called_once_with(4242, signal.SIGTERM)

    def test_fault_is_reported_as_error(self) -> None:
        self._record(4242)
        self.context.faulted = True
        with mock.patch("gulptasks.termination.output") as output:
            self.handler.fire()
        output.error.assert_called_once()
        output.success.assert_not_called()


class ClearDirectoryTests(unittest.TestCase):
    """Preview directory cleanup."""

    def test_missing_directory(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            self.assertEqual(clear_directory(Path(tmpdir) / "absent"), 0)


if __name__ == "__main__":
    unittest.main()
