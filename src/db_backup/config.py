from __future__ import annotations

import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import CroniterBadCronError, croniter
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

PIPE_SEPARATOR = "|"


class ConfigurationError(Exception):
    """Raised when the backup configuration is invalid."""


# --- Storage -----------------------------------------------------------------


class StorageConfig(BaseModel):
    """Destination bucket for uploaded archives."""

    bucket: str
    region: str
    endpoint: Optional[str] = Field(default=None, description="Custom S3-compatible endpoint URL.")

    @field_validator("bucket", "region")
    @classmethod
    def _require_value(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("endpoint")
    @classmethod
    def _drop_blank_endpoint(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


# --- Scheduling & logging ----------------------------------------------------


class SchedulerConfig(BaseModel):
    cron: str
    timezone: str = "UTC"
    run_on_startup: bool = True

    @field_validator("cron")
    @classmethod
    def _validate_cron(cls, value: str) -> str:
        try:
            croniter(value, datetime.utcnow())
        except (CroniterBadCronError, ValueError) as exc:  # pragma: no cover - library errors
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc
        return value

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value


class LoggingConfig(BaseModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def _normalise_level(cls, value: str) -> str:
        return value.upper()


# --- Backup run configuration ------------------------------------------------


class BackupConfig(BaseModel):
    """Projects to back up and where their archives go.

    ``project_names`` and ``database_urls`` are positionally aligned: the URL at
    index ``i`` belongs to the project at index ``i``. Missing or blank URLs mark
    a project to be skipped rather than an error. A blank project name (for
    example from a trailing separator) is allowed as long as no URL sits at
    its position; such entries are ignored.
    """

    project_names: List[str]
    database_urls: List[str] = Field(default_factory=list)
    storage: StorageConfig
    max_concurrency: Optional[int] = Field(default=None, description="Worker pool size; unlimited when unset.")
    temp_dir: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()))
    pg_dump_path: str = "pg_dump"
    scheduler: Optional[SchedulerConfig] = None
    logging: LoggingConfig = LoggingConfig()

    @field_validator("project_names")
    @classmethod
    def _validate_projects(cls, value: List[str]) -> List[str]:
        names = [name.strip() for name in value]
        if not any(names):
            raise ValueError("At least one project name must be configured.")
        duplicates = sorted({name for name in names if name and names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate project name(s): {', '.join(duplicates)}")
        return names

    @field_validator("database_urls")
    @classmethod
    def _strip_urls(cls, value: List[str]) -> List[str]:
        return [url.strip() for url in value]

    @field_validator("max_concurrency")
    @classmethod
    def _validate_concurrency(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError("max_concurrency must be positive")
        return value

    @field_validator("temp_dir")
    @classmethod
    def _expand_temp_dir(cls, value: Path) -> Path:
        return value.expanduser()

    @model_validator(mode="after")
    def _require_names_for_urls(self) -> "BackupConfig":
        # A blank name is only harmless when no URL sits at its position.
        for index, name in enumerate(self.project_names):
            if not name and self.database_url_for(index):
                raise ValueError(f"Database URL at position {index + 1} has no project name.")
        return self

    @property
    def named_projects(self) -> List[str]:
        return [name for name in self.project_names if name]

    def database_url_for(self, index: int) -> Optional[str]:
        if index >= len(self.database_urls):
            return None
        return self.database_urls[index] or None


def load_config(path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> BackupConfig:
    """Build the configuration from an optional YAML file plus environment overrides."""
    environ = os.environ if environ is None else environ
    raw: Dict[str, Any] = {}

    if path is not None:
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")
        with path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {path}")

    _apply_environment(raw, environ)

    if "project_names" not in raw:
        raise ConfigurationError("No project names configured (set PROJECT_NAMES).")
    if "storage" not in raw:
        raise ConfigurationError("No storage configured (set AWS_S3_BUCKET and AWS_S3_REGION).")

    try:
        return BackupConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc


def split_pipe_list(value: str) -> List[str]:
    return value.split(PIPE_SEPARATOR)


def _env(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(name)
    if value is None or not value.strip():
        return None
    return value


def _apply_environment(raw: Dict[str, Any], environ: Mapping[str, str]) -> None:
    urls = _env(environ, "BACKUP_DATABASE_URLS")
    if urls is not None:
        raw["database_urls"] = split_pipe_list(urls)

    projects = _env(environ, "PROJECT_NAMES")
    if projects is not None:
        raw["project_names"] = split_pipe_list(projects)

    for env_name, key in (
        ("BACKUP_MAX_CONCURRENCY", "max_concurrency"),
        ("BACKUP_TEMP_DIR", "temp_dir"),
        ("PG_DUMP_PATH", "pg_dump_path"),
    ):
        value = _env(environ, env_name)
        if value is not None:
            raw[key] = value

    storage_overrides = {
        key: value
        for key, value in (
            ("bucket", _env(environ, "AWS_S3_BUCKET")),
            ("region", _env(environ, "AWS_S3_REGION")),
            ("endpoint", _env(environ, "AWS_S3_ENDPOINT")),
        )
        if value is not None
    }
    if storage_overrides:
        raw["storage"] = {**(raw.get("storage") or {}), **storage_overrides}

    cron = _env(environ, "BACKUP_CRON_SCHEDULE")
    if cron is not None:
        raw["scheduler"] = {**(raw.get("scheduler") or {}), "cron": cron}
    if raw.get("scheduler"):
        for env_name, key in (("BACKUP_TIMEZONE", "timezone"), ("RUN_ON_STARTUP", "run_on_startup")):
            value = _env(environ, env_name)
            if value is not None:
                raw["scheduler"][key] = value

    level = _env(environ, "LOG_LEVEL")
    if level is not None:
        raw["logging"] = {**(raw.get("logging") or {}), "level": level}
