"""Configuration management for the log source retirement service."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

_config_logger = logging.getLogger(__name__)


class ServerSettings(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=1, le=65535)
    enable_cors: bool = Field(default=False)
    allowed_origins: tuple[str, ...] = Field(default=())


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class SiemSettings(BaseModel):
    hostname: str = Field(default="")
    port: int = Field(default=8501, ge=1, le=65535)
    api_key: str = Field(default="", repr=False)
    verify_tls: bool = Field(
        default=False,
        description="The admin API usually serves a self-signed certificate.",
    )
    timeout_seconds: float = Field(default=30.0, ge=0.1, le=600.0)
    page_size: int = Field(default=1000, ge=1, le=10_000)
    retired_suffix: str = Field(default=" Retired by LRCleaner")

    @property
    def base_url(self) -> str:
        return f"https://{self.hostname}:{self.port}/lr-admin-api"

    @property
    def configured(self) -> bool:
        return bool(self.hostname and self.api_key)


class AnalysisSettings(BaseModel):
    excluded_types: tuple[str, ...] = Field(
        default=("Open Collector", "Echo", "AI Engine", "LogRhythm System")
    )
    excluded_type_prefixes: tuple[str, ...] = Field(default=("LogRhythm",))
    excluded_name_markers: tuple[str, ...] = Field(default=("echo",))
    max_concurrent_pings: int = Field(default=50, ge=1, le=1000)
    probe_ports: tuple[int, ...] = Field(default=(443, 80, 22, 3389))
    probe_timeout_seconds: float = Field(default=0.5, gt=0.0, le=30.0)

    @field_validator("probe_ports")
    @classmethod
    def _validate_ports(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        if not value:
            raise ValueError("at least one probe port is required")
        for port in value:
            if not 1 <= port <= 65535:
                raise ValueError(f"probe port out of range: {port}")
        return value


class RollbackSettings(BaseModel):
    retention_days: int = Field(default=30, ge=0, le=3650)
    max_points: int = Field(default=10, ge=1, le=10_000)
    auto_cleanup: bool = Field(default=True)
    sqlite_path: str = Field(default="./data/rollback.sqlite")
    sqlite_wal: bool = Field(default=True)


class JobSettings(BaseModel):
    max_retained: int = Field(default=100, ge=1, le=100_000)
    event_queue_size: int = Field(default=64, ge=1, le=10_000)
    default_actor: str = Field(default="system")


class BackupSettings(BaseModel):
    sqlcmd_path: str = Field(default="sqlcmd")
    server: str = Field(default="localhost")
    user: str = Field(default="logrhythmadmin")
    database: str = Field(default="LogRhythmEMDB")
    timeout_seconds: int = Field(default=3600, ge=1)


class Settings(BaseModel):
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    siem: SiemSettings = Field(default_factory=SiemSettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    rollback: RollbackSettings = Field(default_factory=RollbackSettings)
    jobs: JobSettings = Field(default_factory=JobSettings)
    backup: BackupSettings = Field(default_factory=BackupSettings)


ENV_KEYS = {
    "config_path": "RETIRE_CONFIG_PATH",
    "host": "RETIRE_HOST",
    "port": "RETIRE_PORT",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "siem_hostname": "SIEM_HOSTNAME",
    "siem_port": "SIEM_PORT",
    "siem_api_key": "SIEM_API_KEY",
    "sqlite_path": "ROLLBACK_SQLITE_PATH",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _split_csv_preserve_case(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    candidate = Path(path).expanduser()
    if candidate.is_absolute():
        return str(candidate.resolve())
    return str((_project_root() / candidate).resolve())


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def _env_csv(key: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(key)
    if value is None:
        return default
    return tuple(_split_csv_preserve_case(value))


def _env_ports(key: str, default: tuple[int, ...]) -> tuple[int, ...]:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return tuple(int(item) for item in _split_csv_preserve_case(value))
    except ValueError:
        _config_logger.warning(
            "Invalid port list for %s: %r, using default %s", key, value, default
        )
        return default


def _load_config_file(path: str | None) -> dict[str, Any]:
    """Read the optional YAML settings file. Missing files are an error."""
    if not path:
        return {}
    config_path = Path(_resolve_path(path))
    if not config_path.exists():
        raise RuntimeError(f"Invalid configuration: config file not found: {config_path}")
    with config_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise RuntimeError(f"Invalid configuration: {config_path} must contain a mapping")
    return data


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")

    try:
        base = Settings.model_validate(_load_config_file(os.getenv(ENV_KEYS["config_path"])))
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    log_file_env = os.getenv(ENV_KEYS["log_file"]) or base.logging.file

    settings_data: dict[str, object] = {
        "server": {
            "host": os.getenv(ENV_KEYS["host"], base.server.host),
            "port": _env_int(ENV_KEYS["port"], base.server.port),
            "enable_cors": _env_bool("RETIRE_ENABLE_CORS", base.server.enable_cors),
            "allowed_origins": _env_csv("RETIRE_ALLOWED_ORIGINS", base.server.allowed_origins),
        },
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], base.logging.level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "siem": {
            "hostname": os.getenv(ENV_KEYS["siem_hostname"], base.siem.hostname).strip(),
            "port": _env_int(ENV_KEYS["siem_port"], base.siem.port),
            "api_key": os.getenv(ENV_KEYS["siem_api_key"], base.siem.api_key).strip(),
            "verify_tls": _env_bool("SIEM_VERIFY_TLS", base.siem.verify_tls),
            "timeout_seconds": _env_float("SIEM_TIMEOUT_SECONDS", base.siem.timeout_seconds),
            "page_size": _env_int("SIEM_PAGE_SIZE", base.siem.page_size),
            "retired_suffix": os.getenv("SIEM_RETIRED_SUFFIX", base.siem.retired_suffix),
        },
        "analysis": {
            "excluded_types": _env_csv(
                "ANALYSIS_EXCLUDED_TYPES", base.analysis.excluded_types
            ),
            "excluded_type_prefixes": _env_csv(
                "ANALYSIS_EXCLUDED_TYPE_PREFIXES", base.analysis.excluded_type_prefixes
            ),
            "excluded_name_markers": _env_csv(
                "ANALYSIS_EXCLUDED_NAME_MARKERS", base.analysis.excluded_name_markers
            ),
            "max_concurrent_pings": _env_int(
                "ANALYSIS_MAX_CONCURRENT_PINGS", base.analysis.max_concurrent_pings
            ),
            "probe_ports": _env_ports("ANALYSIS_PROBE_PORTS", base.analysis.probe_ports),
            "probe_timeout_seconds": _env_float(
                "ANALYSIS_PROBE_TIMEOUT_SECONDS", base.analysis.probe_timeout_seconds
            ),
        },
        "rollback": {
            "retention_days": _env_int("ROLLBACK_RETENTION_DAYS", base.rollback.retention_days),
            "max_points": _env_int("ROLLBACK_MAX_POINTS", base.rollback.max_points),
            "auto_cleanup": _env_bool("ROLLBACK_AUTO_CLEANUP", base.rollback.auto_cleanup),
            "sqlite_path": _resolve_path(
                os.getenv(ENV_KEYS["sqlite_path"], base.rollback.sqlite_path)
            ),
            "sqlite_wal": _env_bool("ROLLBACK_SQLITE_WAL", base.rollback.sqlite_wal),
        },
        "jobs": {
            "max_retained": _env_int("JOBS_MAX_RETAINED", base.jobs.max_retained),
            "event_queue_size": _env_int("JOBS_EVENT_QUEUE_SIZE", base.jobs.event_queue_size),
            "default_actor": os.getenv("JOBS_DEFAULT_ACTOR", base.jobs.default_actor),
        },
        "backup": {
            "sqlcmd_path": os.getenv("BACKUP_SQLCMD_PATH", base.backup.sqlcmd_path),
            "server": os.getenv("BACKUP_SERVER", base.backup.server),
            "user": os.getenv("BACKUP_USER", base.backup.user),
            "database": os.getenv("BACKUP_DATABASE", base.backup.database),
            "timeout_seconds": _env_int("BACKUP_TIMEOUT_SECONDS", base.backup.timeout_seconds),
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    Path(settings.rollback.sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    return settings
