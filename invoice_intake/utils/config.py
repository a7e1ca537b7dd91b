"""Configuration management for the intake worker.

Loads and validates YAML configuration with sensible defaults for the
watcher, uploader, OCR processor, storage and database settings, then
applies environment variable overrides so container deployments can be
tuned without shipping a config file.
"""

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from invoice_intake.exceptions import ConfigInvalid

logger = logging.getLogger(__name__)

WORKER_MODES = ("watcher", "processor")


class WatcherConfig(BaseModel):
    """Configuration for the scanner folder watcher."""

    watch_dir: str = "/srv/webdav/data"
    processed_dir: str = "/srv/webdav/processed"
    poll_interval_seconds: float = 2.0
    stable_checks: int = Field(default=3, ge=1)
    stable_interval_seconds: float = 0.5
    stability_max_retries: int = Field(default=30, ge=1)
    max_concurrent_files: int = Field(default=4, ge=1)


class UploaderConfig(BaseModel):
    """Configuration for the ingest queue consumer."""

    poll_interval_seconds: float = 5.0
    max_concurrent_jobs: int = Field(default=5, ge=1)
    max_attempts: int = Field(default=5, ge=1)
    retry_base_delay_seconds: float = 120.0
    retry_max_delay_seconds: float = 3600.0
    min_file_bytes: int = 1000
    delete_after_upload: bool = True
    stuck_after_seconds: float = 900.0


class OCRConfig(BaseModel):
    """Configuration for the OCR processor and the expense analysis service."""

    poll_interval_seconds: float = 30.0
    max_concurrent_jobs: int = Field(default=1, ge=1)
    textract_region: str = "us-east-1"
    max_attempts: int = Field(default=3, ge=1)
    retry_delay_seconds: float = 300.0
    default_currency: str = "ARS"
    required_fields: list[str] = Field(
        default_factory=lambda: ["issueDate", "total", "vendorName"]
    )


class StorageConfig(BaseModel):
    """Configuration for the S3-compatible object store."""

    endpoint_url: str | None = None
    region: str = "auto"
    access_key_id: str | None = None
    secret_access_key: str | None = None
    inbox_prefix: str = "inbox/"
    error_prefix: str = "error/"
    auto_create_bucket: bool = True


class DatabaseConfig(BaseModel):
    """Configuration for the relational database."""

    url: str = "sqlite:///invoice_intake.db"
    echo: bool = False
    pool_pre_ping: bool = True


class ObservabilityConfig(BaseModel):
    """Configuration for the processing log sink."""

    flush_size: int = Field(default=50, ge=1)
    flush_interval_seconds: float = 5.0


class AppConfig(BaseModel):
    """Top-level application configuration."""

    worker_mode: str = "watcher"
    prefix_map_path: str = "/etc/invoice-intake/prefix-map.json"
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    uploader: UploaderConfig = Field(default_factory=UploaderConfig)
    ocr: OCRConfig = Field(default_factory=OCRConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    log_level: str = "INFO"


def _millis(value: str) -> float:
    return float(value) / 1000.0


# env var -> (section or None for top level, field, converter)
_ENV_OVERRIDES: dict[str, tuple[str | None, str, Any]] = {
    "WORKER_MODE": (None, "worker_mode", str),
    "PREFIX_MAP_PATH": (None, "prefix_map_path", str),
    "LOG_LEVEL": (None, "log_level", str),
    "WEBDAV_DIR": ("watcher", "watch_dir", str),
    "PROCESSED_DIR": ("watcher", "processed_dir", str),
    "WATCHER_POLL_INTERVAL": ("watcher", "poll_interval_seconds", _millis),
    "FILE_STABLE_CHECKS": ("watcher", "stable_checks", int),
    "FILE_STABLE_INTERVAL_MS": ("watcher", "stable_interval_seconds", _millis),
    "STABILITY_MAX_RETRIES": ("watcher", "stability_max_retries", int),
    "PROCESSOR_POLL_INTERVAL": ("uploader", "poll_interval_seconds", _millis),
    "MAX_CONCURRENT_JOBS": ("uploader", "max_concurrent_jobs", int),
    "MAX_RETRY_ATTEMPTS": ("uploader", "max_attempts", int),
    "RETRY_BASE_DELAY_MS": ("uploader", "retry_base_delay_seconds", _millis),
    "RETRY_MAX_DELAY_MS": ("uploader", "retry_max_delay_seconds", _millis),
    "OCR_POLL_INTERVAL": ("ocr", "poll_interval_seconds", _millis),
    "OCR_MAX_CONCURRENT_JOBS": ("ocr", "max_concurrent_jobs", int),
    "OCR_MAX_ATTEMPTS": ("ocr", "max_attempts", int),
    "TEXTRACT_REGION": ("ocr", "textract_region", str),
    "S3_ENDPOINT_URL": ("storage", "endpoint_url", str),
    "S3_REGION": ("storage", "region", str),
    "S3_ACCESS_KEY_ID": ("storage", "access_key_id", str),
    "S3_SECRET_ACCESS_KEY": ("storage", "secret_access_key", str),
    "DATABASE_URL": ("database", "url", str),
}


def _apply_env_overrides(
    raw: dict[str, Any], environ: Mapping[str, str]
) -> dict[str, Any]:
    """Merge environment variable overrides into raw config data.

    Args:
        raw: Parsed YAML data (modified copy is returned).
        environ: Environment mapping to read overrides from.

    Returns:
        Config data with overrides applied.

    Raises:
        ConfigInvalid: If an override cannot be converted.
    """
    merged = {k: (dict(v) if isinstance(v, dict) else v) for k, v in raw.items()}
    for env_name, (section, field_name, convert) in _ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None or value == "":
            continue
        try:
            converted = convert(value)
        except ValueError as exc:
            raise ConfigInvalid(f"Invalid value for {env_name}: {value!r}") from exc
        if section is None:
            merged[field_name] = converted
        else:
            merged.setdefault(section, {})[field_name] = converted
        logger.debug("Config override from %s", env_name)
    return merged


def load_config(
    path: Path | None = None, environ: Mapping[str, str] | None = None
) -> AppConfig:
    """Load configuration from a YAML file and the environment.

    Args:
        path: Path to the YAML configuration file.
            Defaults to ``INTAKE_CONFIG`` or configs/config.yaml.
        environ: Environment used for overrides. Defaults to ``os.environ``.

    Returns:
        Validated application configuration.

    Raises:
        ConfigInvalid: If the YAML or an override fails validation.
    """
    environ = os.environ if environ is None else environ
    if path is None:
        path = Path(environ.get("INTAKE_CONFIG", "configs/config.yaml"))

    raw: dict[str, Any] = {}
    if path.exists():
        logger.info("Loading configuration from %s", path)
        with open(path) as f:
            try:
                raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigInvalid(f"Cannot parse {path}: {exc}") from exc
    else:
        logger.info("No config file found at %s, using defaults", path)

    raw = _apply_env_overrides(raw, environ)
    try:
        return AppConfig(**raw)
    except ValidationError as exc:
        raise ConfigInvalid(f"Invalid configuration: {exc}") from exc
