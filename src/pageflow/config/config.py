"""
Configuration management for PageFlow using Pydantic.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Setup Logging ---
log = logging.getLogger(__name__)

# --- Nested Configuration Models ---


class StorageConfig(BaseModel):
    """Configuration for the SQLite resource store."""

    db_path: Path = Field(
        default_factory=lambda: Path.cwd() / "data" / "pageflow.db",
        description="SQLite database file path",
    )
    wal_mode: bool = Field(default=True, description="Enable Write-Ahead Logging for concurrent workers.")
    busy_timeout_ms: int = Field(default=5000, ge=0, description="How long a writer waits on a locked database.")
    assets_dir: Optional[Path] = Field(default=None, description="Base directory for relative screenshot paths.")

    @field_validator("db_path", mode="before")
    @classmethod
    def ensure_db_directory(cls, v: Any) -> Path:
        """Ensure database directory exists."""
        path = Path(v) if not isinstance(v, Path) else v
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


class LockConfig(BaseModel):
    """Configuration for per-stage page locks."""

    backend: Literal["redis", "sqlite", "memory"] = Field(
        default="sqlite", description="Where lock claims are stored."
    )
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL for the redis backend.")
    ttl_seconds: float = Field(default=10.0, gt=0, description="Lock lifetime without an explicit release.")
    key_prefix: str = Field(default="page:lock", description="Prefix of lock keys.")


class RecrawlConfig(BaseModel):
    """Constants of the recrawl priority formula."""

    min_interval_minutes: float = Field(default=20, ge=0, description="Never recrawl more often than this.")
    max_interval_hours: float = Field(default=20 * 24, ge=0, description="Effective age that makes a page due.")
    hours_per_link: float = Field(default=1, ge=0, description="Age discount per inbound link.")
    max_pages_per_run: int = Field(default=100, gt=0, description="Default batch size of a recrawl run.")


class GeneratorConfig(BaseModel):
    """OpenAI-compatible generation service."""

    base_url: str = Field(default="http://127.0.0.1:1234/v1", description="Base URL of the chat completions API.")
    model: str = Field(default="", description="Default model for text stages.")
    vision_model: Optional[str] = Field(default=None, description="Model for stages that send a screenshot.")
    api_key: Optional[str] = Field(default=None, description="Bearer token, if the service requires one.")
    timeout: float = Field(default=120.0, gt=0, description="Request timeout in seconds.")
    max_tokens: int = Field(default=2048, gt=0)
    temperature: float = Field(default=0.2, ge=0, le=2)
    log_requests: bool = Field(default=True, description="Record every call in ai_request_logs.")

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class StageSettings(BaseModel):
    """Per-stage run defaults."""

    max_attempts: int = Field(default=3, ge=1, description="Generator calls per candidate.")
    sleep_ms: int = Field(default=500, ge=0, description="Pause between retries.")
    limit: int = Field(default=50, gt=0, description="Candidates per batch run.")
    model: Optional[str] = Field(default=None, description="Model override for this stage.")


class StagesConfig(BaseModel):
    product_type: StageSettings = Field(default_factory=StageSettings)
    recap: StageSettings = Field(default_factory=StageSettings)
    attributes: StageSettings = Field(default_factory=StageSettings)
    crawl: StageSettings = Field(default_factory=lambda: StageSettings(max_attempts=1, sleep_ms=0, limit=100))

    def for_stage(self, name: str) -> StageSettings:
        value = getattr(self, name, None)
        return value if isinstance(value, StageSettings) else StageSettings()


class CrawlerConfig(BaseModel):
    """Crawler configuration."""

    timeout: float = Field(default=30.0, description="HTTP request timeout in seconds.")
    retries: int = Field(default=3, ge=1, description="Number of attempts for a failed fetch.")
    backoff_multiplier: float = Field(default=0.5, ge=0, description="Exponential backoff base between fetch attempts.")
    user_agent: str = Field(default="PageFlowBot/0.1", description="User-Agent string for HTTP requests.")
    max_content_chars: int = Field(default=200_000, description="Stored text is truncated to this length.")


class MonitoringConfig(BaseModel):
    """Configuration for logging and metrics."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: Optional[str] = Field(default=None, description="Path to log file. If None, logs to console.")
    prometheus_port: Optional[int] = Field(default=None, description="Port for the Prometheus exporter.")

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)

    @field_validator("log_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "PageFlow"
    version: str = "0.1.0"
    storage: StorageConfig = Field(default_factory=StorageConfig)
    locks: LockConfig = Field(default_factory=LockConfig)
    recrawl: RecrawlConfig = Field(default_factory=RecrawlConfig)
    generator: GeneratorConfig = Field(default_factory=GeneratorConfig)
    stages: StagesConfig = Field(default_factory=StagesConfig)
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="PAGEFLOW_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    for name in ("pageflow.yaml", "pageflow.yml", "config.yaml", "config.yml"):
        path = current_dir / name
        if path.exists():
            return path
    return None

