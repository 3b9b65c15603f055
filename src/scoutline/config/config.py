"""
Configuration management for Scoutline using Pydantic.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, ClassVar, Literal, Optional, cast

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Setup Logging ---
log = logging.getLogger(__name__)

SCRAPING_QUEUE = "scraping"
ANALYSIS_QUEUE = "analysis"
AI_QUEUE = "ai-analysis"

# --- Nested Configuration Models ---


class QueueConfig(BaseModel):
    """Defaults applied to every job of one work queue."""

    concurrency: int = Field(default=1, ge=1, description="Maximum jobs of this queue active at once.")
    max_attempts: int = Field(default=3, ge=1, description="Attempts before a job fails terminally.")
    backoff_base_seconds: float = Field(default=2.0, ge=0, description="First retry delay; doubles per attempt.")
    backoff_max_seconds: float = Field(default=300.0, ge=0, description="Upper bound for a single retry delay.")
    keep_completed: int = Field(default=10, ge=0, description="Completed jobs retained for inspection.")
    keep_failed: int = Field(default=5, ge=0, description="Terminally failed jobs retained for inspection.")
    idle_poll_seconds: float = Field(default=0.5, gt=0, description="How often idle workers re-check the store.")
    stall_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Active jobs without a worker heartbeat for this long are returned to waiting.",
    )


class QueuesConfig(BaseModel):
    """Per-queue settings for the three pipeline stages."""

    scraping: QueueConfig = Field(
        default_factory=lambda: QueueConfig(concurrency=3, max_attempts=3, backoff_base_seconds=2.0)
    )
    analysis: QueueConfig = Field(
        default_factory=lambda: QueueConfig(concurrency=2, max_attempts=2, backoff_base_seconds=2.0)
    )
    ai_analysis: QueueConfig = Field(
        default_factory=lambda: QueueConfig(concurrency=1, max_attempts=2, backoff_base_seconds=3.0)
    )

    def for_queue(self, name: str) -> QueueConfig:
        mapping = {SCRAPING_QUEUE: self.scraping, ANALYSIS_QUEUE: self.analysis, AI_QUEUE: self.ai_analysis}
        if name not in mapping:
            raise KeyError(f"Unknown queue: {name}")
        return mapping[name]


class PipelineConfig(BaseModel):
    """Orchestration settings."""

    poll_interval_seconds: float = Field(default=5.0, gt=0, description="Fan-in poll interval.")
    max_wait_seconds: float = Field(default=300.0, gt=0, description="Fan-in deadline from processing start.")
    scrape_jitter_seconds: float = Field(default=2.0, ge=0, description="Random delay spread for scraping jobs.")
    max_targets: int = Field(default=10, ge=1, description="Maximum competitor domains per analysis.")
    scrape_timeout_seconds: float = Field(default=60.0, gt=0, description="Bound on one scraping call.")
    ai_timeout_seconds: float = Field(default=120.0, gt=0, description="Bound on one AI call.")
    scraping_priority: int = Field(default=10, description="Queue priority of scraping jobs (lower runs first).")
    analysis_priority: int = Field(default=5, description="Queue priority of coordination jobs.")

    @model_validator(mode="after")
    def check_wait_window(self) -> PipelineConfig:
        if self.poll_interval_seconds > self.max_wait_seconds:
            raise ValueError("poll_interval_seconds must not exceed max_wait_seconds")
        return self


class StorageConfig(BaseModel):
    """Where analysis records and queued jobs are kept."""

    backend: Literal["memory", "sqlite"] = Field(default="sqlite", description="Storage backend.")
    db_path: Path = Field(
        default_factory=lambda: Path.home() / ".scoutline" / "scoutline.db",
        description="SQLite database file shared by the status store and the job store.",
    )
    pool_size: int = Field(default=4, ge=1, description="Size of the connection pool.")
    wal_mode: bool = Field(default=True, description="Enable Write-Ahead Logging for higher concurrency.")
    busy_timeout_ms: int = Field(default=5000, ge=0, description="SQLite busy timeout.")

    @field_validator("db_path", mode="before")
    @classmethod
    def ensure_db_directory(cls, v: Any) -> Path:
        """Ensure database directory exists."""
        path = Path(v) if not isinstance(v, Path) else v
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


class ScraperConfig(BaseModel):
    """Settings for the built-in SEO scraper."""

    timeout_seconds: float = Field(default=30.0, gt=0, description="HTTP request timeout in seconds.")
    user_agent: str = Field(
        default="ScoutlineBot/1.0 (+https://scoutline.dev/bot)",
        description="User-Agent string for HTTP requests.",
    )
    check_robots: bool = Field(default=True, description="Probe /robots.txt as part of technical checks.")
    check_sitemap: bool = Field(default=True, description="Probe /sitemap.xml as part of technical checks.")
    max_headings: int = Field(default=20, ge=0, description="Headings kept per level.")


class AIConfig(BaseModel):
    """Settings for the built-in insight generator."""

    api_key: Optional[str] = Field(default=None, description="API key; heuristic insights are used when unset.")
    base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI-compatible endpoint.")
    model: str = Field(default="gpt-4o-mini", description="Chat model name.")
    temperature: float = Field(default=0.2, ge=0, le=2)
    max_tokens: int = Field(default=1200, ge=1)
    timeout_seconds: float = Field(default=60.0, gt=0)


class WebUIConfig(BaseModel):
    """Configuration for the HTTP API server."""

    enabled: bool = Field(default=True, description="Enable the FastAPI web server.")
    host: str = Field(default="127.0.0.1", description="Host for the web server.")
    port: int = Field(default=8000, description="Port for the web server.")


class MonitoringConfig(BaseModel):
    """Configuration for the observability and monitoring system."""

    enabled: bool = True
    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(default=None, description="Path to log file. If None, logs to console.")
    prometheus_port: int | None = Field(
        default=None,
        description="Port for a standalone Prometheus exporter. None to rely on the /metrics route.",
    )
    web_ui: WebUIConfig = Field(default_factory=WebUIConfig)

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "Scoutline"
    version: str = "0.1.0"
    queues: QueuesConfig = Field(default_factory=QueuesConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    scraper: ScraperConfig = Field(default_factory=ScraperConfig)
    ai: AIConfig = Field(default_factory=AIConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="SCOUTLINE_", env_nested_delimiter="__", case_sensitive=False)

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


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    for path in (current_dir / "scoutline.yaml", current_dir / "config.yaml", current_dir / "config.yml"):
        if path.exists():
            return path
    return None


# --- Lazy Configuration Loader ---


class LazyConfig:
    """
    A proxy for the Config object that delays its loading and validation
    until an attribute is first accessed. This prevents configuration errors
    from crashing the application on import.
    """

    _config: ClassVar[Config | None] = None
    _lock: ClassVar[threading.Lock] = threading.Lock()

    def __getattr__(self, name: str) -> Any:
        if self.__class__._config is None:
            with self.__class__._lock:
                if self.__class__._config is None:
                    self.__class__._config = self._load_config_with_fallback()
        return getattr(self.__class__._config, name)

    def _load_config_with_fallback(self) -> Config:
        """Load configuration from file or fall back to defaults."""
        config_path = find_config_file()
        if config_path:
            try:
                log.info("Lazy loading configuration from: %s", config_path)
                return Config.from_yaml(config_path)
            except (ValidationError, OSError, yaml.YAMLError) as e:
                log.error(
                    "Failed to load or validate configuration from '%s': %s. "
                    "Falling back to default settings. Please check your config file.",
                    config_path,
                    e,
                    exc_info=log.getEffectiveLevel() <= logging.DEBUG,
                )
        else:
            log.info("No config file found. Using default settings for lazy load.")

        try:
            return Config()
        except ValidationError as e:
            log.critical("FATAL: Default configuration is invalid: %s", e, exc_info=True)
            raise RuntimeError(f"Default configuration is invalid, cannot start: {e}") from e


# --- Global Settings Instance ---
settings: "Config" = cast("Config", LazyConfig())
