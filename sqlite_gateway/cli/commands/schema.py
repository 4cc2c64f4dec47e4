"""CLI — Schema display command."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from sqlite_gateway.cli.common import err_console, load_settings
from sqlite_gateway.exceptions import GatewayError
from sqlite_gateway.server import GatewayServer

console = Console()


def show_schema(
    connection: str = typer.Argument(help="SQLite connection string."),
    table: str | None = typer.Option(None, "--table", "-t", help="Show one table or view."),
    format: str = typer.Option("table", "--format", "-f", help="Output format: table or json."),
    config: Annotated[
        Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")
    ] = None,
) -> None:
    """Display database schema information."""
    if format not in ("table", "json"):
        err_console.print(f"[red]Unknown format: {format} (expected table or json)[/red]")
        raise typer.Exit(2)

    settings = load_settings(connection, config_file=config, log_level="warning")
    server = GatewayServer(settings)
    server.start()
    try:
        info = server.introspector.schema_info(table)
    except GatewayError as exc:
        err_console.print(f"[red]Error: {exc.message}[/red]")
        raise typer.Exit(1) from exc
    finally:
        server.close()

    if format == "json":
        console.print(Syntax(json.dumps(info, indent=2, default=str), "json"))
        return

    entries = [info] if table else info["tables"] + info["views"]
    if not entries:
        console.print("[yellow]No tables found.[/yellow]")
        return
    for entry in entries:
        console.print(_render(entry))


def _render(entry: dict[str, Any]) -> Table:
    title = f"{entry['name']} ({entry['type']})"
    grid = Table(title=title, title_justify="left")
    grid.add_column("Column", style="cyan")
    grid.add_column("Type")
    if entry["type"] == "view":
        for column in entry["columns"]:
            grid.add_row(column["name"], column["type"])
        return grid

    grid.add_column("Nullable")
    grid.add_column("PK", style="green")
    grid.add_column("Default")
    grid.add_column("References")
    references = {
        column: f"{fk['referred_table']}({referred})"
        for fk in entry["foreign_keys"]
        for column, referred in zip(fk["columns"], fk["referred_columns"])
    }
    for column in entry["columns"]:
        grid.add_row(
            column["name"],
            column["type"],
            "yes" if column["nullable"] else "no",
            "yes" if column["primary_key"] else "",
            column["default"] or "",
            references.get(column["name"], ""),
        )
    return grid
