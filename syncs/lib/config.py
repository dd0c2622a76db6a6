"""Sync configuration.

A sync is described by a YAML file (or a dict) validated with pydantic.
Strings may reference environment variables as ${VAR_NAME}; a .env file
next to the process is loaded first. Process-wide defaults come from
``SYNC_*`` environment variables through pydantic-settings.

Example YAML (github_issues.yaml):
    source: github_issues
    partitions: ["acme/widgets", "acme/gadgets"]
    start_date: "2024-01-01T00:00:00Z"
    concurrency: 4
    auth:
      auth_type: bearer
      token: ${GITHUB_TOKEN}
    rate_limit:
      requests_per_second: 5
    retry:
      max_retries: 5
    state:
      backend: json
      state_dir: ./.state

Usage:
    from syncs.lib.config import load_sync_config
    config = load_sync_config("./github_issues.yaml")
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from syncs.lib.env import expand_options, load_env_file
from syncs.lib.errors import ConfigurationError
from syncs.lib.http import AuthConfig, AuthType
from syncs.lib.jobs import ExportWindowPolicy
from syncs.lib.logging import setup_logging
from syncs.lib.models import StateBackend, SyncMode, parse_timestamp
from syncs.lib.rate_limiter import RateLimiter
from syncs.lib.resilience import RetryPolicy
from syncs.lib.watermark import InMemoryStateBackend, JsonFileStateBackend

logger = logging.getLogger(__name__)

__all__ = [
    "AuthSettings",
    "ExportJobConfig",
    "LoggingConfig",
    "RateLimitConfig",
    "RetryConfig",
    "StateConfig",
    "SyncConfig",
    "SyncSettings",
    "config_from_dict",
    "load_sync_config",
]


class SyncSettings(BaseSettings):
    """Environment-based defaults using pydantic-settings.

    Automatically loads from environment variables with SYNC_ prefix.

    Example:
        >>> # SYNC_STATE_DIR=/var/lib/syncs
        >>> # SYNC_CONCURRENCY=8
        >>> settings = SyncSettings()
        >>> settings.state_dir
        '/var/lib/syncs'
    """

    state_dir: str = Field(default=".state", description="Directory for JSON state files")
    concurrency: int = Field(default=1, ge=1, le=64, description="Partitions synced in parallel")
    max_retries: int = Field(default=3, ge=0, le=10, description="Retries per failure kind")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="Log format: 'json' or 'console'")
    log_file: Optional[str] = Field(default=None, description="Optional log file path")

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class RetryConfig(BaseModel):
    """Retry ladder settings; ``max_retries`` counts per failure kind."""

    max_retries: int = Field(default=3, ge=0, le=10)
    base_delay: float = Field(default=1.0, gt=0)
    max_delay: float = Field(default=60.0, gt=0)

    @model_validator(mode="after")
    def check_delays(self) -> "RetryConfig":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be at least base_delay")
        return self

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )


class RateLimitConfig(BaseModel):
    """Client-side throttle shared by every partition of the run."""

    requests_per_second: Optional[float] = Field(default=None, gt=0)
    burst_size: Optional[int] = Field(default=None, ge=1)
    min_interval: float = Field(default=0.0, ge=0, description="Minimum seconds between requests")

    def build(self) -> Optional[RateLimiter]:
        if self.requests_per_second is None and not self.min_interval:
            return None
        return RateLimiter(
            self.requests_per_second or 1000.0,
            burst_size=self.burst_size,
            min_interval=self.min_interval,
        )


class ExportJobConfig(BaseModel):
    """Timing rules for async export job streams."""

    max_window_days: float = Field(default=32, gt=0)
    min_gap_hours: float = Field(default=24, ge=0)
    staleness_days: float = Field(default=7, gt=0)
    lookback_days: float = Field(default=32, gt=0)

    def to_policy(self) -> ExportWindowPolicy:
        return ExportWindowPolicy(
            max_window=timedelta(days=self.max_window_days),
            min_gap=timedelta(hours=self.min_gap_hours),
            staleness=timedelta(days=self.staleness_days),
            lookback=timedelta(days=self.lookback_days),
        )


class StateConfig(BaseModel):
    backend: str = Field(default="json", description="'json' or 'memory'")
    state_dir: Optional[str] = Field(default=None, description="Defaults to SYNC_STATE_DIR")
    name: Optional[str] = Field(default=None, description="State file name; defaults to the source name")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        valid = ["json", "memory"]
        if v.lower() not in valid:
            raise ValueError(f"backend must be one of: {valid}")
        return v.lower()

    def build(self, default_name: str) -> StateBackend:
        if self.backend == "memory":
            return InMemoryStateBackend()
        return JsonFileStateBackend(name=self.name or default_name, state_dir=self.state_dir)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    format: str = Field(default="console", description="'json' for log aggregation, 'console' for humans")
    file: Optional[str] = Field(default=None, description="Optional log file path")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        valid_formats = ["json", "console", "text"]
        if v.lower() not in valid_formats:
            raise ValueError(f"format must be one of: {valid_formats}")
        return v.lower()

    def apply(self) -> None:
        setup_logging(
            verbose=self.level == "DEBUG",
            json_format=self.format == "json",
            log_file=self.file,
        )


class AuthSettings(BaseModel):
    auth_type: str = "none"
    token: Optional[str] = None
    api_key: Optional[str] = None
    api_key_header: str = "X-API-Key"
    username: Optional[str] = None
    password: Optional[str] = None

    @field_validator("auth_type")
    @classmethod
    def validate_auth_type(cls, v: str) -> str:
        valid = [t.value for t in AuthType]
        if v.lower() not in valid:
            raise ValueError(f"auth_type must be one of: {valid}")
        return v.lower()

    def to_auth_config(self) -> AuthConfig:
        return AuthConfig(
            auth_type=AuthType(self.auth_type),
            token=self.token,
            api_key=self.api_key,
            api_key_header=self.api_key_header,
            username=self.username,
            password=self.password,
        )


class SyncConfig(BaseModel):
    """One configured stream sync."""

    source: str = Field(..., min_length=1, description="Connector name, e.g. github_issues")
    stream: Optional[str] = Field(default=None, description="Sub-stream discriminator")
    base_url: Optional[str] = Field(default=None, description="Overrides the connector's API root")
    partitions: List[str] = Field(default_factory=list, description="Partitions to sync")
    sync_mode: str = Field(default="incremental")
    concurrency: int = Field(default=1, ge=1, le=64)
    start_date: Optional[datetime] = None
    cutoff_lag_days: float = Field(default=0, ge=0)
    timeout: float = Field(default=30.0, gt=0)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    export_jobs: ExportJobConfig = Field(default_factory=ExportJobConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    options: Dict[str, Any] = Field(default_factory=dict, description="Connector-specific options")

    @field_validator("sync_mode")
    @classmethod
    def validate_sync_mode(cls, v: str) -> str:
        valid = [m.value for m in SyncMode]
        if v.lower() not in valid:
            raise ValueError(f"sync_mode must be one of: {valid}")
        return v.lower()

    @field_validator("start_date", mode="before")
    @classmethod
    def parse_start_date(cls, v: Any) -> Any:
        if v is None or v == "":
            return None
        return parse_timestamp(v)

    @field_validator("partitions")
    @classmethod
    def validate_partitions(cls, v: List[str]) -> List[str]:
        if any(not p.strip() for p in v):
            raise ValueError("partitions must not contain empty names")
        if len(set(v)) != len(v):
            raise ValueError("partitions must be unique")
        return v

    @property
    def mode(self) -> SyncMode:
        return SyncMode(self.sync_mode)

    @property
    def cutoff_lag(self) -> timedelta:
        return timedelta(days=self.cutoff_lag_days)


def _format_validation_error(error: ValidationError) -> Dict[str, str]:
    return {".".join(str(part) for part in e["loc"]) or "config": e["msg"] for e in error.errors()}


def config_from_dict(
    data: Dict[str, Any],
    *,
    settings: Optional[SyncSettings] = None,
    strict_env: bool = True,
) -> SyncConfig:
    """Validate a configuration dict, filling gaps from ``SyncSettings``.

    Raises:
        ConfigurationError: invalid values or unset environment variables
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Sync configuration must be a mapping", value=type(data).__name__)

    settings = settings or SyncSettings()
    expanded = expand_options(data, strict=strict_env)

    expanded.setdefault("concurrency", settings.concurrency)
    state = dict(expanded.get("state") or {})
    state.setdefault("state_dir", settings.state_dir)
    expanded["state"] = state
    retry = dict(expanded.get("retry") or {})
    retry.setdefault("max_retries", settings.max_retries)
    expanded["retry"] = retry
    log_config = dict(expanded.get("logging") or {})
    log_config.setdefault("level", settings.log_level)
    log_config.setdefault("format", settings.log_format)
    log_config.setdefault("file", settings.log_file)
    expanded["logging"] = log_config

    try:
        return SyncConfig.model_validate(expanded)
    except ValidationError as e:
        problems = _format_validation_error(e)
        first = next(iter(problems))
        raise ConfigurationError(
            f"Invalid sync configuration ({len(problems)} problem(s))",
            field=first,
            details=problems,
        ) from e


def load_sync_config(
    path: Union[str, Path],
    *,
    env_file: Optional[Union[str, Path]] = None,
    settings: Optional[SyncSettings] = None,
) -> SyncConfig:
    """Load and validate a YAML sync configuration.

    Args:
        path: YAML file
        env_file: .env file to load first (default: search upwards from cwd)
        settings: Process defaults (default: read from SYNC_* variables)

    Raises:
        ConfigurationError: missing file, bad YAML or invalid values
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}", field="path", value=str(config_path))

    load_env_file(env_file)

    with config_path.open(encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

    if not raw:
        raise ConfigurationError(f"Empty configuration file: {config_path}")

    config = config_from_dict(raw, settings=settings)
    logger.debug("Loaded sync configuration for %s from %s", config.source, config_path)
    return config
