"""CLI — Database backup command."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from sqlite_gateway.cli.common import err_console, load_settings
from sqlite_gateway.exceptions import GatewayError
from sqlite_gateway.server import GatewayServer

console = Console()


def create_backup(
    connection: str = typer.Argument(help="SQLite connection string."),
    backup_path: Path = typer.Argument(help="Backup file path."),
    config: Annotated[
        Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")
    ] = None,
) -> None:
    """Create an online backup of the database."""
    settings = load_settings(connection, config_file=config, log_level="warning")
    server = GatewayServer(settings)
    server.start()
    try:
        result = server.executor.backup(backup_path)
    except GatewayError as exc:
        err_console.print(f"[red]Backup failed: {exc.message}[/red]")
        raise typer.Exit(1) from exc
    finally:
        server.close()

    console.print(
        f"[green]Database backed up to {result['backup_path']} "
        f"({result['size_bytes']} bytes)[/green]"
    )
