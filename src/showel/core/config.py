"""Configuration management for showel.

Handles TOML config files, environment variables, named connection
profiles, and configuration precedence resolution.

Precedence order (highest to lowest):
1. CLI flags (--host, --port, etc.)
2. --dsn flag (parsed into components)
3. Environment variables (PGHOST, PGPORT, PGDATABASE, PGUSER, PGPASSWORD)
4. Named profile (--profile or SHOWEL_PROFILE env var)
5. Built-in defaults

Profiles are read-only here; nothing in showel writes the config file.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from showel.core.exceptions import ConfigError

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "showel" / "config.toml"

DEFAULT_PAGE_SIZE = 100

_PG_ENV_VARS: dict[str, str] = {
    "PGHOST": "host",
    "PGPORT": "port",
    "PGDATABASE": "database",
    "PGUSER": "user",
    "PGPASSWORD": "password",  # pragma: allowlist secret
}


def parse_dsn(dsn: str) -> dict[str, Any]:
    """Supports postgresql:// and postgres:// schemes with query params."""
    parsed = urlparse(dsn)
    if parsed.scheme not in ("postgresql", "postgres"):
        msg = f"Invalid DSN scheme: '{parsed.scheme}'. Expected 'postgresql' or 'postgres'"
        raise ConfigError(msg)

    result: dict[str, Any] = {}
    if parsed.hostname:
        result["host"] = parsed.hostname
    if parsed.port:
        result["port"] = parsed.port
    if parsed.path and parsed.path.strip("/"):
        result["database"] = parsed.path.strip("/")
    if parsed.username:
        result["user"] = parsed.username
    if parsed.password:
        result["password"] = parsed.password
    query_params = parse_qs(parsed.query)
    if "connect_timeout" in query_params:
        result["connect_timeout"] = int(query_params["connect_timeout"][0])
    if "application_name" in query_params:
        result["application_name"] = query_params["application_name"][0]
    return result


def _check_port(v: int) -> int:
    if not (1 <= v <= 65535):
        msg = f"Invalid port: {v}. Must be 1-65535"
        raise ValueError(msg)
    return v


class ConnectionConfig(BaseModel):
    """Credentials for a single database session.

    Immutable once built; switching servers means building a new one and
    connecting again. Equality is structural.
    """

    model_config = ConfigDict(frozen=True)

    host: str = "localhost"
    port: int = 5432
    database: str = "postgres"
    user: str = "postgres"
    password: str = Field(default="", repr=False)

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        return _check_port(v)

    @property
    def display_name(self) -> str:
        return f"{self.user}@{self.host}:{self.port}/{self.database}"


class ConnectionProfile(BaseModel):
    dsn: str | None = None
    host: str = "localhost"
    port: int = 5432
    database: str = "postgres"
    user: str = "postgres"
    password: str = Field(default="", repr=False)

    @model_validator(mode="before")
    @classmethod
    def parse_dsn_into_components(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("dsn"):
            dsn_fields = parse_dsn(data["dsn"])
            for key, value in dsn_fields.items():
                if key in ("connect_timeout", "application_name"):
                    continue
                if key not in data:
                    data[key] = value
        return data

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        return _check_port(v)

    def to_connection_config(self) -> ConnectionConfig:
        return ConnectionConfig(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
        )


class AppConfig(BaseModel):
    page_size: int = DEFAULT_PAGE_SIZE
    connect_timeout: int = 10
    application_name: str = "showel"
    history_limit: int = 50
    default_profile: str | None = None
    profiles: dict[str, ConnectionProfile] = {}

    @field_validator("page_size", "history_limit")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            msg = f"Must be a positive integer, got {v}"
            raise ValueError(msg)
        return v


class ResolvedConfig(BaseModel):
    connection: ConnectionConfig = ConnectionConfig()
    connect_timeout: int = 10
    application_name: str = "showel"
    page_size: int = DEFAULT_PAGE_SIZE
    history_limit: int = 50
    active_profile: str | None = None
    sources: dict[str, str] = {}


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load configuration from TOML file.

    Returns default AppConfig if file doesn't exist.
    Raises ConfigError on malformed TOML or invalid config.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    if not config_path.exists():
        return AppConfig()

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        msg = f"Malformed TOML in {config_path}: {e}"
        raise ConfigError(msg) from e

    try:
        return AppConfig.model_validate(data)
    except Exception as e:
        msg = f"Invalid configuration in {config_path}: {e}"
        raise ConfigError(msg) from e


def resolve_config(
    config: AppConfig,
    profile_name: str | None = None,
    dsn: str | None = None,
    **cli_overrides: Any,
) -> ResolvedConfig:
    """Resolve configuration using precedence chain.

    CLI > DSN > env > profile > built-in defaults.
    """
    sources: dict[str, str] = {}
    resolved: dict[str, Any] = ConnectionConfig().model_dump()
    settings: dict[str, Any] = {
        "connect_timeout": config.connect_timeout,
        "application_name": config.application_name,
    }
    for key in resolved:
        sources[key] = "default"

    # Named profile
    effective_profile = profile_name
    if not effective_profile:
        effective_profile = os.environ.get("SHOWEL_PROFILE")
    if not effective_profile:
        effective_profile = config.default_profile

    if effective_profile:
        if effective_profile not in config.profiles:
            available = (
                ", ".join(sorted(config.profiles.keys())) if config.profiles else "none"
            )
            msg = f"Unknown profile: '{effective_profile}'. Available profiles: {available}"
            raise ConfigError(msg)
        profile = config.profiles[effective_profile]
        for key in resolved:
            resolved[key] = getattr(profile, key)
            if key in profile.model_fields_set or profile.dsn:
                sources[key] = f"profile: {effective_profile}"

    # Environment variables
    for env_var, field_name in _PG_ENV_VARS.items():
        value = os.environ.get(env_var)
        if value is not None:
            if field_name == "port":
                try:
                    resolved[field_name] = int(value)
                except ValueError:
                    msg = f"Invalid {env_var} value: '{value}'. Must be an integer"
                    raise ConfigError(msg) from None
            else:
                resolved[field_name] = value
            sources[field_name] = f"env: {env_var}"

    # DSN flag
    if dsn:
        for key, value in parse_dsn(dsn).items():
            if key in resolved:
                resolved[key] = value
                sources[key] = "dsn"
            else:
                settings[key] = value

    # CLI flags (highest priority)
    for cli_name in ("host", "port", "database", "user", "password"):
        value = cli_overrides.get(cli_name)
        if value is not None:
            resolved[cli_name] = value
            sources[cli_name] = f"cli: --{cli_name}"

    page_size = cli_overrides.get("page_size") or config.page_size

    try:
        connection = ConnectionConfig(**resolved)
    except ValueError as e:
        raise ConfigError(f"Invalid connection settings: {e}") from e

    return ResolvedConfig(
        connection=connection,
        page_size=page_size,
        history_limit=config.history_limit,
        active_profile=effective_profile,
        sources=sources,
        **settings,
    )
