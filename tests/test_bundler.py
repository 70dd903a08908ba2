"""Tests for bundler collaborator helpers."""

import asyncio
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from gulptasks.bundler import BundlerConfig, Compiler, Stats, Watching
from gulptasks.devserver import resolve_static
from gulptasks.registry import RunMode
from gulptasks.settings import Settings


class StatsTests(unittest.TestCase):
    """Compilation result classification."""

    def test_clean_build(self) -> None:
        stats = Stats(returncode=0, output="asset main.js 1 KiB", duration=1.234)
        self.assertFalse(stats.has_errors())
        self.assertFalse(stats.has_warnings())
        self.assertEqual(stats.to_string(), "Bundle compiled in 1.23s (exit 0)")

    def test_error_lines_and_exit_code(self) -> None:
        self.assertTrue(Stats(returncode=0, output="ERROR in ./src/a.js").has_errors())
        self.assertTrue(Stats(returncode=2).has_errors())
        warned = Stats(returncode=0, output="WARNING in asset size limit")
        self.assertEqual(warned.warnings, ["WARNING in asset size limit"])


class BundlerConfigTests(unittest.TestCase):
    """Config built from settings."""

    def test_from_settings_and_prepend_entries(self) -> None:
        settings = Settings.model_validate(
            {"paths": {"basedir": "/project"}, "bundler": {"entry": {"app": ["./a.js"], "vendor": ["./v.js"]}}}
        )
        config = BundlerConfig.from_settings(settings, RunMode.SERVER)
        config.prepend_entries(["hot-client"])

        self.assertEqual(config.entry, {"app": ["hot-client", "./a.js"], "vendor": ["hot-client", "./v.js"]})
        self.assertEqual(config.output, "/project/dist")
        document = config.to_document()
        self.assertEqual(document["mode"], "server")
        self.assertEqual(document["contentBase"], "/project/src")

    def test_compiler_exports_config_to_command(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config_path = Path(tmpdir) / ".__bundler.json"
            config = BundlerConfig.from_settings(Settings(), RunMode.PRODUCTION)
            plugin = mock.Mock(name="plugin")
            plugin.name = "BS"
            config.plugins.append(plugin)
            compiler = Compiler(config, config_path=config_path, config_env="BUNDLER_CONFIG")

            compiler._write_config()
            env = compiler._environment()

            self.assertEqual(env["BUNDLER_CONFIG"], str(config_path))
            self.assertEqual(env["NODE_ENV"], "production")
            self.assertEqual(json.loads(config_path.read_text(encoding="utf-8"))["plugins"], ["BS"])


class WatchingTests(unittest.IsolatedAsyncioTestCase):
    """Watch handle shutdown."""

    async def test_close_is_idempotent_and_calls_back(self) -> None:
        compiler = mock.Mock()
        watching = Watching(compiler, asyncio.Event())
        watching.task = asyncio.create_task(asyncio.sleep(60))
        closed = []

        watching.close(lambda: closed.append(True))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        watching.close()

        self.assertTrue(watching.closed)
        self.assertEqual(closed, [True])
        self.assertTrue(watching.task.cancelled())
        self.assertEqual(compiler.terminate.call_count, 2)


class ResolveStaticTests(unittest.TestCase):
    """Dev server static lookup."""

    def test_finds_file_in_later_root_and_blocks_traversal(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            (root / "dist").mkdir()
            (root / "src").mkdir()
            (root / "src" / "index.html").write_text("<html></html>", encoding="utf-8")
            (root / "secret.txt").write_text("x", encoding="utf-8")

            roots = [root / "dist", root / "src"]
            self.assertEqual(resolve_static(roots, "/index.html"), (root / "src" / "index.html").resolve())
            self.assertIsNone(resolve_static(roots, "../secret.txt"))


if __name__ == "__main__":
    unittest.main()
