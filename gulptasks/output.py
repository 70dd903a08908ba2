"""Operator-facing status lines."""

from __future__ import annotations

import typer

PREFIX = "[gulp]"


def _emit(label: str, color: str, parts: tuple[object, ...], err: bool = False) -> None:
    prefix = typer.style(PREFIX, fg=typer.colors.BRIGHT_BLACK)
    tag = typer.style(label, fg=color, bold=True)
    message = " ".join(str(part) for part in parts)
    typer.echo(f"{prefix} {tag} {message}", err=err)


def info(*parts: object) -> None:
    _emit("info", typer.colors.BLUE, parts)


def success(*parts: object) -> None:
    _emit("success", typer.colors.GREEN, parts)


def warn(*parts: object) -> None:
    _emit("warn", typer.colors.YELLOW, parts)


def error(*parts: object) -> None:
    _emit("error", typer.colors.RED, parts, err=True)


def highlight(value: object, color: str = typer.colors.GREEN) -> str:
    """Colour a single value inside a status line."""
    return typer.style(str(value), fg=color)
