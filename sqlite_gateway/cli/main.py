"""SQLite Gateway CLI — Entry point.

Usage:
    sqlite-gateway serve sqlite:////path/to/db.sqlite list,read,utility
    sqlite-gateway schema sqlite:////path/to/db.sqlite [--table users] [--format json]
    sqlite-gateway backup sqlite:////path/to/db.sqlite /backups/db.sqlite
    sqlite-gateway config [--output sqlite-gateway.yaml]
"""

from __future__ import annotations

import typer

from sqlite_gateway.cli.commands import backup, config, schema, serve

app = typer.Typer(
    name="sqlite-gateway",
    help="SQLite Gateway — permission-gated access to a local SQLite database.",
    no_args_is_help=True,
    pretty_exceptions_enable=False,
)

app.command("serve")(serve.serve)
app.command("schema")(schema.show_schema)
app.command("backup")(backup.create_backup)
app.command("config")(config.generate_config)


@app.callback()
def main_callback() -> None:
    pass


if __name__ == "__main__":
    app()
