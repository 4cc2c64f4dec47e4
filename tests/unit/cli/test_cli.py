"""Unit tests — CLI commands and the JSON-lines request loop."""

from __future__ import annotations

import io
import json
import sqlite3
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from sqlite_gateway.cli.commands.serve import handle_request, run_stdio
from sqlite_gateway.cli.main import app
from sqlite_gateway.server import GatewayServer

pytestmark = pytest.mark.unit

runner = CliRunner()


@pytest.fixture(autouse=True)
def no_logging_setup(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("sqlite_gateway.cli.common.configure_logging", lambda **kwargs: None)


@pytest.fixture
def database(tmp_path: Path) -> Path:
    path = tmp_path / "cli.db"
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL);
        CREATE TABLE posts (id INTEGER PRIMARY KEY, user_id INTEGER REFERENCES users(id));
        INSERT INTO users (name) VALUES ('Alice');
        """
    )
    conn.close()
    return path


def _json_lines(output: str) -> list[dict]:
    return [json.loads(line) for line in output.splitlines() if line.startswith('{"id"')]


class TestSchemaCommand:
    def test_table_format(self, database: Path) -> None:
        result = runner.invoke(app, ["schema", str(database)])
        assert result.exit_code == 0, result.output
        assert "users" in result.stdout
        assert "posts" in result.stdout

    def test_json_format(self, database: Path) -> None:
        result = runner.invoke(app, ["schema", f"sqlite:///{database}", "--format", "json"])
        assert result.exit_code == 0, result.output
        assert '"table_count": 2' in result.stdout

    def test_single_table(self, database: Path) -> None:
        result = runner.invoke(app, ["schema", str(database), "--table", "posts", "-f", "json"])
        assert result.exit_code == 0, result.output
        assert '"name": "posts"' in result.stdout
        assert '"name": "users"' not in result.stdout

    def test_missing_table(self, database: Path) -> None:
        result = runner.invoke(app, ["schema", str(database), "--table", "nope"])
        assert result.exit_code == 1

    def test_unknown_format(self, database: Path) -> None:
        result = runner.invoke(app, ["schema", str(database), "--format", "xml"])
        assert result.exit_code == 2

    def test_missing_config_file(self, database: Path, tmp_path: Path) -> None:
        result = runner.invoke(
            app, ["schema", str(database), "--config", str(tmp_path / "missing.yaml")]
        )
        assert result.exit_code == 1

    def test_empty_connection_string(self) -> None:
        result = runner.invoke(app, ["schema", ""])
        assert result.exit_code == 1


class TestBackupCommand:
    def test_backup(self, database: Path, tmp_path: Path) -> None:
        target = tmp_path / "out" / "copy.db"
        result = runner.invoke(app, ["backup", str(database), str(target)])
        assert result.exit_code == 0, result.output
        assert "Database backed up to" in result.stdout
        conn = sqlite3.connect(target)
        try:
            assert conn.execute("SELECT name FROM users").fetchall() == [("Alice",)]
        finally:
            conn.close()


class TestConfigCommand:
    def test_writes_template(self, tmp_path: Path) -> None:
        output = tmp_path / "gateway.yaml"
        result = runner.invoke(app, ["config", "--output", str(output)])
        assert result.exit_code == 0, result.output
        data = yaml.safe_load(output.read_text())
        assert data["database"]["max_connections"] == 10
        assert data["security"]["default_scopes"] == ["read"]

    def test_refuses_to_overwrite(self, tmp_path: Path) -> None:
        output = tmp_path / "gateway.yaml"
        output.write_text("keep: me\n")
        result = runner.invoke(app, ["config", "-o", str(output)])
        assert result.exit_code == 1
        assert output.read_text() == "keep: me\n"

        forced = runner.invoke(app, ["config", "-o", str(output), "--force"])
        assert forced.exit_code == 0
        assert "database" in yaml.safe_load(output.read_text())


class TestServeCommand:
    def test_answers_requests_from_stdin(self, database: Path) -> None:
        requests = "\n".join(
            [
                json.dumps({"id": 1, "tool": "sqlite_query", "arguments": {"query": "SELECT name FROM users"}}),
                json.dumps({"id": 2, "tool": "sqlite_insert", "arguments": {"table": "users", "data": {"name": "x"}}}),
            ]
        ) + "\n"
        result = runner.invoke(app, ["serve", str(database), "read,list"], input=requests)
        assert result.exit_code == 0, result.output

        responses = {r["id"]: r for r in _json_lines(result.stdout)}
        assert responses[1]["is_error"] is False
        assert responses[1]["content"]["rows"] == [{"name": "Alice"}]
        assert responses[2]["is_error"] is True
        assert responses[2]["content"]["details"]["missing_scopes"] == ["create"]

    def test_invalid_scopes(self, database: Path) -> None:
        result = runner.invoke(app, ["serve", str(database), "admin,root"], input="")
        assert result.exit_code == 1


class TestRequestLoop:
    @pytest.fixture
    def gateway(self, test_settings) -> GatewayServer:
        server = GatewayServer(test_settings)
        server.start()
        yield server
        server.close()

    @pytest.mark.asyncio
    async def test_list_tools(self, gateway: GatewayServer) -> None:
        response = await handle_request(gateway, {"id": "a", "tool": "list_tools"})
        assert response["id"] == "a"
        assert len(response["tools"]) == 11

    @pytest.mark.asyncio
    async def test_protocol_errors(self, gateway: GatewayServer) -> None:
        not_object = await handle_request(gateway, [1, 2])
        assert not_object["content"]["error"] == "ProtocolError"

        missing_tool = await handle_request(gateway, {"id": 5})
        assert missing_tool["id"] == 5
        assert missing_tool["is_error"] is True

        bad_arguments = await handle_request(gateway, {"id": 6, "tool": "sqlite_query", "arguments": [1]})
        assert bad_arguments["content"]["message"] == "'arguments' must be a JSON object"

    @pytest.mark.asyncio
    async def test_client_id_routed(self, gateway: GatewayServer) -> None:
        response = await handle_request(
            gateway, {"id": 1, "tool": "sqlite_tables", "client_id": "stranger"}
        )
        assert response["content"]["details"]["client_id"] == "stranger"

    @pytest.mark.asyncio
    async def test_run_stdio(self, gateway: GatewayServer) -> None:
        reader = io.StringIO(
            '{"id": 1, "tool": "sqlite_tables"}\n'
            "\n"
            "not json\n"
            '{"id": 2, "tool": "sqlite_query", "arguments": {"query": "SELECT 1 AS one"}}\n'
        )
        writer = io.StringIO()
        handled = await run_stdio(gateway, reader, writer)

        assert handled == 3
        lines = [json.loads(line) for line in writer.getvalue().splitlines()]
        assert lines[0] == {"id": 1, "content": {"tables": [], "count": 0}, "is_error": False}
        assert lines[1]["content"]["error"] == "ProtocolError"
        assert lines[1]["content"]["message"].startswith("Invalid JSON")
        assert lines[2]["content"]["rows"] == [{"one": 1}]
