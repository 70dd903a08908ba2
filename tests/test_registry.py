"""Tests for the internal registry document."""

import json
import tempfile
import unittest
from pathlib import Path

from gulptasks.errors import RegistryError
from gulptasks.registry import PortSet, ProcessRecord, Registry, RunMode, resolve_mode


class RegistryTests(unittest.TestCase):
    """Registry file creation, dotted access and process record helpers."""

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "configs" / ".__internal.json"
        self.registry = Registry(self.path, indent="\t")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_read_creates_empty_document(self) -> None:
        self.assertEqual(self.registry.read(), {})
        self.assertEqual(self.path.read_text(encoding="utf-8"), "{}")

    def test_set_creates_intermediate_objects_and_write_sorts_keys(self) -> None:
        self.registry.read()
        self.registry.set("zeta", 1)
        self.registry.set("alpha.beta.gamma", "x")
        self.registry.write()

        text = self.path.read_text(encoding="utf-8")
        self.assertLess(text.index('"alpha"'), text.index('"zeta"'))
        self.assertIn("\t", text)
        self.assertEqual(json.loads(text)["alpha"]["beta"]["gamma"], "x")

    def test_get_returns_default_for_missing_or_null(self) -> None:
        self.registry.read()
        self.registry.set("process", None)
        self.assertEqual(self.registry.get("process.pid", "none"), "none")
        self.assertIsNone(self.registry.get("missing.key"))

    def test_unknown_keys_survive_round_trip(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text(json.dumps({"custom": {"keep": True}}), encoding="utf-8")
        self.registry.read()
        self.registry.clear_process()

        reloaded = Registry(self.path).read()
        self.assertEqual(reloaded["custom"], {"keep": True})
        self.assertIsNone(reloaded["process"])

    def test_save_and_read_process_record(self) -> None:
        self.registry.read()
        record = ProcessRecord(
            pid=4321,
            title="python -m gulptasks",
            argv=["gulp", "--mode", "s"],
            mode=RunMode.SERVER,
            ports=PortSet(local=3000, ui=3001, webpack=3002),
        )
        self.registry.save_process(record)

        fresh = Registry(self.path)
        fresh.read()
        self.assertEqual(fresh.process_record(), record)
        self.assertEqual(fresh.recorded_pid(), 4321)
        self.assertEqual(fresh.recorded_ports(), PortSet(local=3000, ui=3001, webpack=3002))
        self.assertEqual(fresh.get("process.mode"), "server")

    def test_ports_only_record_has_no_process_record(self) -> None:
        self.registry.read()
        self.registry.set("process", {"ports": {"local": 3000, "ui": 3001, "webpack": None}})
        self.assertIsNone(self.registry.process_record())
        self.assertIsNone(self.registry.recorded_pid())
        self.assertEqual(self.registry.recorded_ports().ui, 3001)

    def test_corrupt_document_raises_registry_error(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json", encoding="utf-8")
        with self.assertRaises(RegistryError):
            self.registry.read()

    def test_non_object_document_raises_registry_error(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text("[1, 2]", encoding="utf-8")
        with self.assertRaises(RegistryError):
            self.registry.read()


class ResolveModeTests(unittest.TestCase):
    """--mode flag values."""

    def test_aliases_are_case_insensitive(self) -> None:
        self.assertIs(resolve_mode("p"), RunMode.PRODUCTION)
        self.assertIs(resolve_mode("S"), RunMode.SERVER)
        self.assertIs(resolve_mode("d"), RunMode.DEVELOPMENT)

    def test_default_and_unknown_fall_back_to_development(self) -> None:
        self.assertIs(resolve_mode(None), RunMode.DEVELOPMENT)
        self.assertIs(resolve_mode("turbo"), RunMode.DEVELOPMENT)


if __name__ == "__main__":
    unittest.main()
