"""Service configuration from a YAML file, the environment and CLI flags.

Sources are merged in increasing precedence: config file, environment
(``RUUVIAPI_`` + the dotted key upper-cased with dots as underscores, e.g.
``RUUVIAPI_POSTGRES_HOST``), then explicit overrides such as CLI flags.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml
from dotenv import load_dotenv
from psycopg.conninfo import make_conninfo

from ruuviapi.columns import DEFAULT_COLUMN_MAP, ColumnMap
from ruuviapi.connection import BackoffPolicy
from ruuviapi.errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "RUUVIAPI_"
APP_DIR_NAME = "ruuvitag-measurement-api"

CONFIG_KEYS: Tuple[str, ...] = (
    "postgres.host",
    "postgres.port",
    "postgres.username",
    "postgres.password",
    "postgres.database",
    "postgres.sslmode",
    "postgres.table",
    "postgres.name_table",
    "server.port",
    "server.token",
    "columns",
    "backoff.base",
    "backoff.max",
    "backoff.attempts",
    "loglevel",
)

# Names understood by both logging and uvicorn.
LOG_LEVELS: Tuple[str, ...] = ("critical", "error", "warning", "info", "debug")
LOG_LEVEL_ALIASES: Dict[str, str] = {"warn": "warning", "fatal": "critical"}

DEFAULTS: Dict[str, Any] = {
    "postgres.host": "localhost",
    "postgres.port": 5432,
    "postgres.sslmode": "disable",
    "server.port": 8080,
    "backoff.base": 0.5,
    "backoff.max": 10.0,
    "backoff.attempts": 5,
    "loglevel": "info",
}


def default_config_paths() -> List[Path]:
    return [
        Path("config.yaml"),
        Path.home() / f".{APP_DIR_NAME}" / "config.yaml",
        Path("/etc") / APP_DIR_NAME / "config.yaml",
    ]


def env_name(key: str) -> str:
    return ENV_PREFIX + key.upper().replace(".", "_")


@dataclass(slots=True)
class ServiceConfig:
    table: str
    name_table: str
    columns: ColumnMap = field(default_factory=ColumnMap.default)
    host: str = "localhost"
    port: int = 5432
    username: str = ""
    password: str = ""
    database: str = ""
    sslmode: str = "disable"
    server_port: int = 8080
    tokens: Tuple[str, ...] = ()
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    loglevel: str = "info"
    source: Optional[Path] = None

    def conninfo(self) -> str:
        params = {
            "host": self.host,
            "port": self.port,
            "user": self.username,
            "password": self.password,
            "dbname": self.database,
            "sslmode": self.sslmode,
        }
        return make_conninfo(**{key: value for key, value in params.items() if value not in ("", None)})

    def describe(self) -> Dict[str, Any]:
        """Loggable summary without credentials."""
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "table": self.table,
            "name_table": self.name_table,
            "columns": dict(self.columns),
        }


def _flatten(data: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, Mapping) and dotted != "columns":
            flat.update(_flatten(value, f"{dotted}."))
        else:
            flat[dotted] = value
    return flat


def read_config_file(path: Optional[str | Path]) -> Tuple[Dict[str, Any], Optional[Path]]:
    """Load the explicit ``path`` or the first default config file that exists."""
    if path is not None:
        candidates = [Path(path)]
        if not candidates[0].exists():
            raise ConfigError(f"config file not found: {path}")
    else:
        candidates = [candidate for candidate in default_config_paths() if candidate.exists()]
    for candidate in candidates:
        try:
            with candidate.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"cannot read config file {candidate}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise ConfigError(f"config file {candidate} must contain a mapping")
        return _flatten(data), candidate
    return {}, None


def _parse_columns(value: Any) -> Dict[str, str]:
    if isinstance(value, Mapping):
        return {str(key): str(column) for key, column in value.items()}
    if isinstance(value, str):
        columns: Dict[str, str] = {}
        for pair in filter(None, (part.strip() for part in value.split(","))):
            key, sep, column = pair.partition("=")
            if not sep or not key.strip() or not column.strip():
                raise ConfigError(f"invalid column mapping entry: {pair!r}")
            columns[key.strip()] = column.strip()
        return columns
    raise ConfigError(f"columns must be a mapping, got {type(value).__name__}")


def _parse_tokens(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        items: Sequence[Any] = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        raise ConfigError("server.token must be a string or a list of strings")
    return tuple(str(item).strip() for item in items if str(item).strip())


def _as_int(key: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from exc


def _as_float(key: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}") from exc


def build_config(values: Mapping[str, Any], *, source: Optional[Path] = None) -> ServiceConfig:
    """Turn merged dotted-key values into a validated :class:`ServiceConfig`."""
    merged = {**DEFAULTS, **{key: value for key, value in values.items() if value is not None}}

    table = str(merged.get("postgres.table") or "").strip()
    name_table = str(merged.get("postgres.name_table") or "").strip()
    if not table:
        raise ConfigError("postgres.table is required")
    if not name_table:
        raise ConfigError("postgres.name_table is required")

    raw_columns = merged.get("columns")
    columns = _parse_columns(raw_columns) if raw_columns else {}
    column_map = ColumnMap(columns or DEFAULT_COLUMN_MAP)

    port = _as_int("postgres.port", merged["postgres.port"])
    server_port = _as_int("server.port", merged["server.port"])
    for key, number in (("postgres.port", port), ("server.port", server_port)):
        if not 0 < number < 65536:
            raise ConfigError(f"{key} out of range: {number}")

    try:
        backoff = BackoffPolicy(
            base=_as_float("backoff.base", merged["backoff.base"]),
            maximum=_as_float("backoff.max", merged["backoff.max"]),
            attempts=_as_int("backoff.attempts", merged["backoff.attempts"]),
        )
    except ValueError as exc:
        raise ConfigError(f"invalid backoff settings: {exc}") from exc

    loglevel = str(merged["loglevel"]).strip().lower()
    loglevel = LOG_LEVEL_ALIASES.get(loglevel, loglevel)
    if loglevel not in LOG_LEVELS:
        raise ConfigError(f"unknown log level: {loglevel} (expected one of {', '.join(LOG_LEVELS)})")

    return ServiceConfig(
        table=table,
        name_table=name_table,
        columns=column_map,
        host=str(merged["postgres.host"]),
        port=port,
        username=str(merged.get("postgres.username") or ""),
        password=str(merged.get("postgres.password") or ""),
        database=str(merged.get("postgres.database") or ""),
        sslmode=str(merged["postgres.sslmode"]),
        server_port=server_port,
        tokens=_parse_tokens(merged.get("server.token")),
        backoff=backoff,
        loglevel=loglevel,
        source=source,
    )


def load_config(
    path: Optional[str | Path] = None,
    *,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ServiceConfig:
    if environ is None:
        load_dotenv()
        environ = os.environ
    values, source = read_config_file(path)
    for key in CONFIG_KEYS:
        env_value = environ.get(env_name(key))
        if env_value is not None and env_value != "":
            values[key] = env_value
    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value
    config = build_config(values, source=source)
    if source is not None:
        logger.info("Using config file %s", source)
    return config


__all__ = [
    "ServiceConfig",
    "load_config",
    "build_config",
    "read_config_file",
    "default_config_paths",
    "env_name",
    "CONFIG_KEYS",
    "LOG_LEVELS",
]
