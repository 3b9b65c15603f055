"""
Central manager for logging and metrics.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict

import structlog

from .logging import configure_logging
from .metrics import MetricsManager

if TYPE_CHECKING:
    from scoutline.config.config import MonitoringConfig


class ObservabilityManager:
    """
    Configures logging and starts metric exporting for the application.

    Managed by the dependency container: ``initialize`` runs on first use.
    """

    def __init__(self, config: MonitoringConfig) -> None:
        self.config = config
        self.logger = structlog.get_logger(self.__class__.__name__)
        self.metrics_manager = MetricsManager(config)
        self._is_running = False

    async def initialize(self) -> None:
        if not self.config.enabled or self._is_running:
            return
        configure_logging(self.config)
        self.metrics_manager.start()
        self._is_running = True
        self.logger.info("Observability manager started")

    async def close(self) -> None:
        if self._is_running:
            self._is_running = False
            self.logger.info("Observability manager stopped")

    def system_metrics(self) -> Dict[str, float]:
        return self.metrics_manager.update_system_metrics()
