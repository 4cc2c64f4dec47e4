"""SQLite Gateway — Configuration.

Configuration is loaded from (in order of increasing priority):
    1. Built-in defaults (this file)
    2. User config:   ~/.sqlite-gateway/config.yaml
    3. An explicit config file passed to ``Settings.load()``
    4. Environment variables prefixed with SQLITE_GATEWAY_

Call ``Settings.load()`` once at startup and hand the instance to
``GatewayServer``; nothing in the gateway reads settings implicitly.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from sqlite_gateway.exceptions import ConfigurationError
from sqlite_gateway.security.models import PermissionScope
from sqlite_gateway.security.permissions import parse_scopes

MEMORY_DATABASE = ":memory:"


# ---------------------------------------------------------------------------
# Sub-configuration blocks
# ---------------------------------------------------------------------------


class DatabaseConfig(BaseModel):
    path: str = Field(
        default=MEMORY_DATABASE,
        description="SQLite file path, or ':memory:' for a private in-memory database.",
    )
    max_connections: Annotated[int, Field(ge=1, le=100)] = 10
    idle_target: Annotated[int, Field(ge=0, le=20)] = Field(
        default=3,
        description="Returned handles are kept open while fewer than this many are idle.",
    )
    busy_timeout_ms: Annotated[int, Field(ge=0, le=600_000)] = Field(
        default=5000,
        description="Engine-level lock wait ceiling (PRAGMA busy_timeout).",
    )
    read_only: bool = False
    enable_wal: bool = True


class SecurityConfig(BaseModel):
    max_statement_length: Annotated[int, Field(ge=1, le=1_000_000)] = 10_000
    rate_limit_per_minute: Annotated[int, Field(ge=1, le=100_000)] = 100
    rate_limit_window_seconds: Annotated[float, Field(gt=0, le=3600)] = 60.0
    enable_audit_logging: bool = True
    audit_capacity: Annotated[int, Field(ge=10, le=1_000_000)] = Field(
        default=10_000,
        description="Audit entries kept in memory; trimmed to the newest half when exceeded.",
    )
    default_scopes: list[PermissionScope] = Field(
        default_factory=lambda: [PermissionScope.READ],
        description="Scopes granted to the 'default' client at startup.",
    )

    @field_validator("default_scopes", mode="before")
    @classmethod
    def split_scope_string(cls, v: object) -> object:
        if isinstance(v, str):
            return sorted(parse_scopes(v), key=lambda s: s.value)
        return v


class BulkConfig(BaseModel):
    default_batch_size: Annotated[int, Field(ge=1, le=100_000)] = 1000


class LoggingConfig(BaseModel):
    level: Literal["debug", "info", "warning", "error", "critical"] = "info"
    format: Literal["json", "console"] = "console"
    file: Path | None = None
    audit_file: Path | None = Field(
        default=None,
        description="When set, every audit record is appended as one JSON line.",
    )


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SQLITE_GATEWAY_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    bulk: BulkConfig = Field(default_factory=BulkConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment overrides YAML values passed in as init kwargs.
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @field_validator("logging", mode="before")
    @classmethod
    def expand_logging_paths(cls, v: object) -> object:
        if isinstance(v, dict):
            for key in ("file", "audit_file"):
                if key in v and isinstance(v[key], str):
                    v[key] = Path(v[key]).expanduser()
        return v

    @classmethod
    def load(cls, config_file: Path | None = None) -> "Settings":
        """Load settings from YAML files + environment variables."""
        data: dict[str, Any] = {}

        candidates = [Path.home() / ".sqlite-gateway" / "config.yaml"]
        if config_file:
            if not config_file.exists():
                raise ConfigurationError(
                    f"Configuration file not found: {config_file}",
                    context={"path": str(config_file)},
                )
            candidates.append(config_file)

        for path in candidates:
            if path.exists():
                with path.open() as f:
                    try:
                        loaded = yaml.safe_load(f) or {}
                    except yaml.YAMLError as exc:
                        raise ConfigurationError(
                            f"Failed to load configuration from {path}: {exc}",
                            context={"path": str(path)},
                        ) from exc
                for section, values in loaded.items():
                    if isinstance(values, dict) and isinstance(data.get(section), dict):
                        data[section].update(values)
                    else:
                        data[section] = values

        return cls(**data)

    def to_yaml(self) -> str:
        """Render the settings as a YAML document (used by ``config`` CLI)."""
        return yaml.safe_dump(self.model_dump(mode="json"), sort_keys=False)


# ---------------------------------------------------------------------------
# Startup argument parsing
# ---------------------------------------------------------------------------

_WINDOWS_DRIVE = re.compile(r"^/[a-zA-Z]:")


def parse_connection_string(connection_string: str) -> str:
    """Return the database path named by *connection_string*.

    Accepted forms::

        sqlite:////absolute/path/to/db.sqlite
        sqlite:///relative/path/to/db.sqlite
        sqlite://:memory:
        /path/to/db.sqlite            (bare path)
    """
    target = connection_string.strip()
    if not target:
        raise ConfigurationError("Connection string must not be empty")

    if target.startswith("sqlite://"):
        target = target[len("sqlite://"):]
        if target in (MEMORY_DATABASE, "/" + MEMORY_DATABASE):
            return MEMORY_DATABASE
        if target.startswith("//"):
            # sqlite:////abs → /abs
            target = "/" + target.lstrip("/")
            if _WINDOWS_DRIVE.match(target):
                target = target[1:]
            return target
        target = target.lstrip("/")
        if not target:
            raise ConfigurationError(
                f"Invalid SQLite connection string: {connection_string}",
                context={"connection_string": connection_string},
            )
        return str(Path(target).resolve())

    if target == MEMORY_DATABASE:
        return MEMORY_DATABASE
    return str(Path(target).resolve())

