"""CLI — Helpers shared by the commands."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from sqlite_gateway.config import Settings, parse_connection_string
from sqlite_gateway.exceptions import ConfigurationError
from sqlite_gateway.logging import configure_logging

err_console = Console(stderr=True)


def load_settings(
    connection: str,
    config_file: Path | None = None,
    log_level: str | None = None,
    read_only: bool | None = None,
    max_connections: int | None = None,
) -> Settings:
    """Load settings, apply command-line overrides and configure logging.

    Exits with status 1 on a configuration error.
    """
    try:
        settings = Settings.load(config_file=config_file)
        settings.database.path = parse_connection_string(connection)
    except ConfigurationError as exc:
        err_console.print(f"[red]Configuration error: {exc.message}[/red]")
        raise typer.Exit(1) from exc

    if read_only is not None:
        settings.database.read_only = read_only
    if max_connections is not None:
        settings.database.max_connections = max_connections
    if log_level is not None:
        settings.logging.level = log_level.lower()

    configure_logging(
        level=settings.logging.level,
        format=settings.logging.format,
        log_file=str(settings.logging.file) if settings.logging.file else None,
    )
    return settings
