import asyncio
import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import httpx
import typer
from platformdirs import user_log_dir

from gulptasks import output
from gulptasks.collaborators import run_pretty
from gulptasks.context import SupervisorContext
from gulptasks.errors import (
    GulpTaskError,
    NoFreePortError,
    ResourceUnavailableError,
    SettingsMissingError,
)
from gulptasks.open_task import open_directory, open_in_browser, open_in_editor
from gulptasks.probe import ProcessProbe
from gulptasks.registry import Registry
from gulptasks.settings import Settings, load_settings, rebuild_settings, settings_path
from gulptasks.supervisor import Supervisor, find_running_instance, stop_instance
from gulptasks.termination import TerminationHandler

app = typer.Typer(help="Front-end project task runner.")

LOG_DIR = Path(user_log_dir("gulptasks"))
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
HEALTH_TIMEOUT = 2.0

logger = logging.getLogger("gulptasks.cli")


def configure_logging(verbose: bool = False) -> None:
    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    handlers: list[logging.Handler] = [console]
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(LOG_DIR / "gulp.log"))
    except OSError:
        # Read-only home directories still get console logging.
        pass
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT, handlers=handlers)


def _load_settings() -> Settings:
    try:
        return load_settings()
    except SettingsMissingError as exc:
        output.error(str(exc))
        output.info("Rebuild file by running: $ gulp settings --rebuild")
        raise typer.Exit(code=1)
    except GulpTaskError as exc:
        output.error(str(exc))
        raise typer.Exit(code=1)


def _registry(settings: Settings) -> Registry:
    return Registry(settings.internal_path, settings.indent)


@contextmanager
def task_errors():
    """Warn about missing resources; turn any other task error into exit 1."""
    try:
        yield
    except (ResourceUnavailableError, NoFreePortError) as exc:
        output.warn(str(exc))
    except GulpTaskError as exc:
        logger.error("Task failed: %s", exc)
        output.error(str(exc))
        raise typer.Exit(code=1)


async def _serve(supervisor: Supervisor, mode: str, ports: Optional[str]) -> int:
    try:
        return await supervisor.run(mode, ports)
    finally:
        await supervisor.stop_services()


def run_instance(settings: Settings, mode: str, ports: Optional[str]) -> int:
    """Start the dev server instance in the foreground; returns its exit code."""
    context = SupervisorContext(settings=settings, registry=_registry(settings))
    handler = TerminationHandler(context)
    handler.install()
    try:
        code = asyncio.run(_serve(Supervisor(context), mode, ports))
    except GulpTaskError as exc:
        context.faulted = True
        logger.error("Instance failed: %s", exc)
        output.error(str(exc))
        handler.fire()
        return 1
    handler.fire()
    return code


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    stop: bool = typer.Option(False, "--stop", "-s", help="Stop the running instance"),
    ports: Optional[str] = typer.Option(None, "--ports", "-p", help='Port overrides, "<local>:<ui>"'),
    mode: str = typer.Option("d", "--mode", "-m", help="d(evelopment), p(roduction) or s(erver)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log to the console too"),
):
    """Start the dev server instance, or stop it with --stop."""
    configure_logging(verbose)
    if ctx.invoked_subcommand is not None:
        return
    settings = _load_settings()
    if stop:
        with task_errors():
            stop_instance(_registry(settings), ProcessProbe(settings.process_names))
        return
    code = run_instance(settings, mode, ports)
    if code:
        raise typer.Exit(code=code)


@app.command()
def status():
    """Report whether an instance is running."""
    settings = _load_settings()
    registry = _registry(settings)
    with task_errors():
        instance = find_running_instance(registry, ProcessProbe(settings.process_names))
        if instance is None:
            output.info("Gulp is not running.")
            return
        output.info(f"Gulp instance running. Process {output.highlight(instance.pid)}.")
        recorded = registry.recorded_ports()
        if recorded is None or recorded.ui is None:
            return
        url = f"http://{settings.browsersync.host}:{recorded.ui}/health"
        try:
            response = httpx.get(url, timeout=HEALTH_TIMEOUT)
        except (httpx.ConnectError, httpx.TimeoutException):
            output.warn(f"Control UI not responding at {url}")
            return
        if response.status_code == 200:
            output.info(f"Control UI healthy at {output.highlight(url)}")
        else:
            output.warn(f"Control UI returned {response.status_code} at {url}")


@app.command()
def ports():
    """Print the ports the running instance uses."""
    settings = _load_settings()
    registry = _registry(settings)
    with task_errors():
        registry.read()
        recorded = registry.recorded_ports()
        if recorded is None or all(port is None for port in (recorded.local, recorded.ui, recorded.webpack)):
            output.info("No ports are in use.")
            return
        output.info(
            f"Local: {output.highlight(recorded.local)},",
            f"UI: {output.highlight(recorded.ui)},",
            f"Webpack: {output.highlight(recorded.webpack)}",
        )


@app.command("open")
def open_command(
    file: Optional[str] = typer.Option(None, "--file", "-F", help="File to open in the browser"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to open the file on"),
    directory: Optional[str] = typer.Option(None, "--directory", "-d", help="Directory to open in a file manager"),
    editor: Optional[str] = typer.Option(None, "--editor", "-e", help="File to open in a text editor"),
    wait: bool = typer.Option(False, "--wait", "-w", help="Wait for the editor to close"),
    line: Optional[int] = typer.Option(None, "--line", "-l"),
    column: Optional[int] = typer.Option(None, "--column", "-c"),
    use: Optional[str] = typer.Option(None, "--use", "-u", help="Editor command to use"),
):
    """Open a file in the browser, a text editor or a file manager."""
    settings = _load_settings()
    with task_errors():
        if directory:
            opened = open_directory(directory)
            output.success(f"Opened {output.highlight(opened, 'magenta')}.")
        elif editor:
            open_in_editor(settings, editor, wait=wait, line=line, column=column, use=use)
            output.success(f"Opened {output.highlight(editor, 'magenta')} in editor.")
        elif file:
            url = open_in_browser(settings, _registry(settings), file, port)
            output.success(f"File opened! {output.highlight(url)}")
        else:
            output.error("Provide --file, --directory or --editor.")
            raise typer.Exit(code=1)


@app.command("settings")
def settings_command(
    rebuild: bool = typer.Option(False, "--rebuild", help="Rebuild the settings file from configs/*.json"),
):
    """Show or rebuild the project settings file."""
    path = settings_path()
    with task_errors():
        if rebuild:
            rebuild_settings(path)
            output.success(f"Rebuilt {output.highlight(path, 'magenta')}.")
            return
        settings = _load_settings()
        typer.echo(json.dumps(settings.model_dump(), indent=2, sort_keys=True))


@app.command()
def pretty(
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Do not print formatter output"),
):
    """Run the configured formatter over the project."""
    settings = _load_settings()
    with task_errors():
        result = asyncio.run(run_pretty(settings))
        if result.strip() and not quiet:
            typer.echo(result.rstrip())
        output.success("Pretty complete.")


if __name__ == "__main__":
    app()
