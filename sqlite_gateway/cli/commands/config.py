"""CLI — Configuration template command."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from sqlite_gateway.config import Settings

console = Console()


def generate_config(
    output: Path = typer.Option(
        Path("sqlite-gateway.yaml"), "--output", "-o", help="Output file path."
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file."),
) -> None:
    """Write a YAML configuration template with every default spelled out."""
    if output.exists() and not force:
        console.print(f"[red]{output} already exists (use --force to overwrite)[/red]")
        raise typer.Exit(1)

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(Settings().to_yaml())
    console.print(f"[green]Configuration template written to {output}[/green]")
