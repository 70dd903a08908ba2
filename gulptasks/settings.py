"""Project settings file loading, validation and rebuild helpers."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from gulptasks.errors import SettingsInvalidError, SettingsMissingError

logger = logging.getLogger("gulptasks.settings")

SETTINGS_ENV = "GULPTASKS_SETTINGS"
SETTINGS_PATH = Path("configs") / ".__settings.json"


class PathSettings(BaseModel):
    basedir: str = "."
    configs: str = "configs"
    internal: str = "configs/.__internal.json"
    markdown_preview: str = "markdown/previews"
    githead: str = ".git/HEAD"


class PortRange(BaseModel):
    start: int = 3000
    end: int = 3100


class FindFreePortSettings(BaseModel):
    range: PortRange = Field(default_factory=PortRange)
    ip: str = "127.0.0.1"
    count: int = 3


class BrowserSyncSettings(BaseModel):
    host: str = "localhost"
    open: bool = True
    notify: bool = False
    clear: bool = False
    auto_close_tabs: bool = False
    name: str = ""
    plugin: dict[str, Any] = Field(default_factory=dict)


class BundlerSettings(BaseModel):
    command: list[str] = Field(default_factory=lambda: ["npx", "webpack"])
    entry: dict[str, list[str]] = Field(default_factory=lambda: {"app": ["./src/index.js"]})
    output: str = "dist"
    content_base: str = "src/"
    watch: list[str] = Field(default_factory=lambda: ["src"])
    ignored: str = "node_modules"
    hot_client_entries: list[str] = Field(
        default_factory=lambda: [
            "webpack-dev-server/client?http://localhost:{port}/",
            "webpack/hot/dev-server",
        ]
    )
    config_env: str = "GULPTASKS_BUNDLER_CONFIG"


class PrettySettings(BaseModel):
    command: list[str] = Field(default_factory=lambda: ["npx", "prettier", "--write", "."])


class EditorSettings(BaseModel):
    active: bool = False
    command: str = ""
    flags: list[str] = Field(default_factory=list)


class AppSettings(BaseModel):
    appdir: str = ""
    index: str = "index.html"
    https: bool = False


class Settings(BaseModel):
    """Validated project settings."""

    paths: PathSettings = Field(default_factory=PathSettings)
    indent: str = "\t"
    findfreeport: FindFreePortSettings = Field(default_factory=FindFreePortSettings)
    browsersync: BrowserSyncSettings = Field(default_factory=BrowserSyncSettings)
    bundler: BundlerSettings = Field(default_factory=BundlerSettings)
    pretty: PrettySettings = Field(default_factory=PrettySettings)
    editor: EditorSettings = Field(default_factory=EditorSettings)
    app: AppSettings = Field(default_factory=AppSettings)
    process_names: list[str] = Field(default_factory=lambda: ["gulp", "python"])

    def resolve(self, relative: str) -> Path:
        """Resolve a settings path against the project base directory."""
        path = Path(relative)
        if path.is_absolute():
            return path
        return Path(self.paths.basedir) / path

    @property
    def internal_path(self) -> Path:
        return self.resolve(self.paths.internal)

    @property
    def preview_path(self) -> Path:
        return self.resolve(self.paths.markdown_preview)

    @property
    def githead_path(self) -> Path:
        return self.resolve(self.paths.githead)


def settings_path() -> Path:
    return Path(os.environ.get(SETTINGS_ENV, str(SETTINGS_PATH)))


def load_settings(path: Path | None = None) -> Settings:
    """Load settings from disk; a missing file is fatal."""
    path = path or settings_path()
    if not path.exists():
        raise SettingsMissingError(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SettingsInvalidError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise SettingsInvalidError(f"{path} must contain an object")
    try:
        return Settings.model_validate(raw)
    except ValidationError as exc:
        raise SettingsInvalidError(f"{path} failed validation: {exc}") from exc


def collect_fragments(configs_dir: Path) -> dict[str, Any]:
    """Combine configs/*.json fragments into one document keyed by file stem."""
    combined: dict[str, Any] = {}
    if not configs_dir.is_dir():
        return combined
    for fragment in sorted(configs_dir.glob("*.json")):
        if fragment.name.startswith("."):
            continue
        try:
            payload = json.loads(fragment.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Skipping unreadable settings fragment %s", fragment)
            continue
        # "csslint.cm.json" -> "csslint"
        combined[fragment.name.split(".")[0]] = payload
    return combined


def rebuild_settings(path: Path | None = None, configs_dir: Path | None = None) -> Settings:
    """Rebuild the settings file from defaults and config fragments."""
    path = path or settings_path()
    defaults = Settings()
    configs_dir = configs_dir or defaults.resolve(defaults.paths.configs)
    document: dict[str, Any] = defaults.model_dump()
    document.update(collect_fragments(configs_dir))
    try:
        validated = Settings.model_validate(document)
    except ValidationError as exc:
        raise SettingsInvalidError(f"config fragments failed validation: {exc}") from exc
    path.parent.mkdir(parents=True, exist_ok=True)
    output = validated.model_dump()
    # Keep fragments that have no settings section (linters etc.).
    for key, value in document.items():
        output.setdefault(key, value)
    path.write_text(json.dumps(output, indent=validated.indent, sort_keys=True), encoding="utf-8")
    logger.info("Rebuilt settings file at %s", path)
    return validated
