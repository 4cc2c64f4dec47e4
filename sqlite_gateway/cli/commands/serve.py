"""CLI — Gateway server over newline-delimited JSON on stdin/stdout.

Each input line is one request::

    {"id": 1, "tool": "sqlite_query", "arguments": {"query": "SELECT 1"}, "client_id": "default"}
    {"id": 2, "tool": "list_tools"}

Each request gets exactly one JSON line back on stdout, echoing ``id``.
Logs go to stderr.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Annotated, Any, TextIO

import typer

from sqlite_gateway.cli.common import err_console, load_settings
from sqlite_gateway.exceptions import ConfigurationError
from sqlite_gateway.logging import get_logger
from sqlite_gateway.security.permissions import parse_scopes
from sqlite_gateway.server import DEFAULT_CLIENT_ID, GatewayServer

log = get_logger(__name__)

LIST_TOOLS = "list_tools"


async def handle_request(server: GatewayServer, request: Any) -> dict[str, Any]:
    """Turn one decoded request into one response object."""
    if not isinstance(request, dict):
        return _protocol_error(None, "Request must be a JSON object")

    request_id = request.get("id")
    tool = request.get("tool")
    if tool == LIST_TOOLS:
        return {"id": request_id, "tools": server.list_tools()}
    if not isinstance(tool, str) or not tool:
        return _protocol_error(request_id, "Request is missing 'tool'")

    arguments = request.get("arguments") or {}
    if not isinstance(arguments, dict):
        return _protocol_error(request_id, "'arguments' must be a JSON object")
    client_id = str(request.get("client_id") or DEFAULT_CLIENT_ID)

    result = await server.call_tool(tool, arguments, client_id)
    return {"id": request_id, **result.to_dict()}


async def run_stdio(server: GatewayServer, reader: TextIO, writer: TextIO) -> int:
    """Answer requests from *reader* until EOF; return the number handled."""
    handled = 0
    while True:
        line = await asyncio.to_thread(reader.readline)
        if not line:
            break
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError as exc:
            response = _protocol_error(None, f"Invalid JSON: {exc.msg}")
        else:
            response = await handle_request(server, request)
        writer.write(json.dumps(response, default=str) + "\n")
        writer.flush()
        handled += 1
    return handled


async def _serve(server: GatewayServer, reader: TextIO, writer: TextIO) -> None:
    async with server:
        handled = await run_stdio(server, reader, writer)
    log.info("stdio_session_closed", requests=handled)


def _protocol_error(request_id: Any, message: str) -> dict[str, Any]:
    return {
        "id": request_id,
        "content": {"error": "ProtocolError", "message": message, "details": {}},
        "is_error": True,
    }


def serve(
    connection: str = typer.Argument(
        help="SQLite connection string (e.g. sqlite:////path/to/db.sqlite)."
    ),
    scopes: str = typer.Argument(
        "read", help="Comma-separated scopes for the default client (e.g. list,read,utility)."
    ),
    config: Annotated[
        Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")
    ] = None,
    log_level: str = typer.Option("info", "--log-level", "-l", help="Log level."),
    read_only: bool = typer.Option(False, "--read-only", help="Open the database read-only."),
    max_connections: int | None = typer.Option(
        None, "--max-connections", help="Maximum pooled connections."
    ),
) -> None:
    """Start the gateway and answer JSON-lines tool calls on stdin."""
    settings = load_settings(
        connection,
        config_file=config,
        log_level=log_level,
        read_only=read_only or None,
        max_connections=max_connections,
    )
    try:
        settings.security.default_scopes = sorted(parse_scopes(scopes), key=lambda s: s.value)
    except ConfigurationError as exc:
        err_console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(1) from exc

    err_console.print(
        f"[bold green]SQLite Gateway serving {settings.database.path}[/bold green] "
        f"scopes={','.join(s.value for s in settings.security.default_scopes)}"
    )
    server = GatewayServer(settings)
    asyncio.run(_serve(server, sys.stdin, sys.stdout))
