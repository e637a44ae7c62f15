from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from meterboard.api.errors import ConfigError

BACKENDS = ("influx", "sql")
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    backend: str = "influx"
    influx_host: str = "localhost"
    influx_org: str = ""
    influx_bucket: str = "readings"
    influx_token: str = ""
    influx_use_ssl: bool = True
    sql_server: str = "localhost"
    sql_port: int = 5432
    sql_database: str = ""
    sql_username: str = ""
    sql_password: str = ""
    sql_driver: str = "PostgreSQL Unicode"
    cache_dir: Path = Path("tmp/cache")
    log_dir: Path = Path("logs")
    timezone: str = "Europe/Amsterdam"
    backend_timeout_seconds: float = 30.0

    @property
    def influx_url(self) -> str:
        scheme = "https" if self.influx_use_ssl else "http"
        host = self.influx_host if ":" in self.influx_host else f"{self.influx_host}:8086"
        return f"{scheme}://{host}"

    @property
    def sql_connection_string(self) -> str:
        return (
            f"DRIVER={{{self.sql_driver}}};"
            f"SERVER={self.sql_server};"
            f"PORT={self.sql_port};"
            f"DATABASE={self.sql_database};"
            f"UID={self.sql_username};"
            f"PWD={self.sql_password};"
        )

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def get_env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {name}: {raw}") from exc


def get_env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid float for {name}: {raw}") from exc


def get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean for {name}: {raw}")


def load_settings() -> Settings:
    load_dotenv()

    settings = Settings(
        backend=get_env_str("BACKEND", "influx").lower(),
        influx_host=get_env_str("INFLUXDB_HOST", "localhost"),
        influx_org=os.getenv("INFLUXDB_ORG", ""),
        influx_bucket=get_env_str("INFLUXDB_BUCKET", "readings"),
        influx_token=os.getenv("INFLUXDB_TOKEN", ""),
        influx_use_ssl=get_env_bool("INFLUXDB_USE_SSL", True),
        sql_server=get_env_str("SQL_SERVER", "localhost"),
        sql_port=get_env_int("SQL_PORT", 5432),
        sql_database=os.getenv("SQL_DATABASE", ""),
        sql_username=os.getenv("SQL_USERNAME", ""),
        sql_password=os.getenv("SQL_PASSWORD", ""),
        sql_driver=get_env_str("SQL_DRIVER", "PostgreSQL Unicode"),
        cache_dir=Path(get_env_str("CACHE_DIR", "tmp/cache")),
        log_dir=Path(get_env_str("LOG_DIR", "logs")),
        timezone=get_env_str("TIMEZONE", "Europe/Amsterdam"),
        backend_timeout_seconds=get_env_float("BACKEND_TIMEOUT_SECONDS", 30.0),
    )

    if settings.backend not in BACKENDS:
        raise ConfigError(f"BACKEND must be one of {', '.join(BACKENDS)}, got {settings.backend!r}")
    if settings.backend_timeout_seconds <= 0:
        raise ConfigError("BACKEND_TIMEOUT_SECONDS must be positive")
    try:
        ZoneInfo(settings.timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown TIMEZONE: {settings.timezone}") from exc
    return settings
