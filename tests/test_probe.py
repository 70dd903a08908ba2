"""Tests for the process probe identity check."""

import unittest
from unittest import mock

import psutil

from gulptasks.probe import ProcessProbe, normalize_name
from gulptasks.registry import ProcessRecord

TITLE = "/usr/bin/python3 /usr/local/bin/gulp --mode d"


def _process(name: str = "python3.12", cmdline=None) -> mock.Mock:
    proc = mock.Mock()
    proc.name.return_value = name
    proc.cmdline.return_value = cmdline if cmdline is not None else TITLE.split()
    return proc


class ProcessProbeTests(unittest.TestCase):
    """A recorded pid counts as live only for the same task runner."""

    def setUp(self) -> None:
        self.probe = ProcessProbe(["gulp", "python"])
        self.record = ProcessRecord(pid=1234, title=TITLE)

    def test_normalize_name(self) -> None:
        self.assertEqual(normalize_name("Python3.11"), "python")
        self.assertEqual(normalize_name("gulp"), "gulp")

    def test_matching_instance_is_found(self) -> None:
        with mock.patch("gulptasks.probe.psutil.Process", return_value=_process()):
            info = self.probe.find_instance(self.record)
        self.assertIsNotNone(info)
        self.assertEqual(info.pid, 1234)

    def test_missing_pid_is_stale(self) -> None:
        with mock.patch("gulptasks.probe.psutil.Process", side_effect=psutil.NoSuchProcess(1234)):
            self.assertIsNone(self.probe.find_instance(self.record))

    def test_reused_pid_with_other_title_is_stale(self) -> None:
        proc = _process(cmdline=["/usr/bin/python3", "other.py"])
        with mock.patch("gulptasks.probe.psutil.Process", return_value=proc):
            self.assertIsNone(self.probe.find_instance(self.record))

    def test_reused_pid_with_other_name_is_stale(self) -> None:
        with mock.patch("gulptasks.probe.psutil.Process", return_value=_process(name="node")):
            self.assertIsNone(self.probe.find_instance(self.record))

    def test_access_denied_is_unverifiable_not_live(self) -> None:
        with mock.patch("gulptasks.probe.psutil.Process", side_effect=psutil.AccessDenied(1234)):
            self.assertIsNone(self.probe.find_instance(self.record))
            self.assertTrue(self.probe.unverifiable(self.record))

    def test_missing_pid_is_not_unverifiable(self) -> None:
        with mock.patch("gulptasks.probe.psutil.Process", side_effect=psutil.NoSuchProcess(1234)):
            self.assertFalse(self.probe.unverifiable(self.record))

    def test_no_record(self) -> None:
        self.assertIsNone(self.probe.find_instance(None))


if __name__ == "__main__":
    unittest.main()
