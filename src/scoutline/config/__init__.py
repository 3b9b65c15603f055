"""Configuration models and loaders."""

from __future__ import annotations

from .config import (
    AI_QUEUE,
    ANALYSIS_QUEUE,
    SCRAPING_QUEUE,
    AIConfig,
    Config,
    MonitoringConfig,
    PipelineConfig,
    QueueConfig,
    QueuesConfig,
    ScraperConfig,
    StorageConfig,
    WebUIConfig,
    find_config_file,
    settings,
)

__all__ = [
    "AI_QUEUE",
    "ANALYSIS_QUEUE",
    "SCRAPING_QUEUE",
    "AIConfig",
    "Config",
    "MonitoringConfig",
    "PipelineConfig",
    "QueueConfig",
    "QueuesConfig",
    "ScraperConfig",
    "StorageConfig",
    "WebUIConfig",
    "find_config_file",
    "settings",
]
