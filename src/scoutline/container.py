"""
Dependency injection container for the Scoutline pipeline.
"""

from __future__ import annotations

import asyncio
import signal
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, Generic, List, Optional, TypeVar
from uuid import uuid4

import structlog

from scoutline.config import Config

if TYPE_CHECKING:
    from scoutline.observability import ObservabilityManager
    from scoutline.pipeline import PipelineOrchestrator
    from scoutline.protocols import StatusStore
    from scoutline.queue import JobStore

T = TypeVar("T")


class LazyInstance(Generic[T]):
    """Lazy-loaded instance with lifecycle management."""

    def __init__(self, factory: Callable[..., T], *args: Any, **kwargs: Any) -> None:
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._instance: Optional[T] = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def get(self) -> T:
        """Get or create the instance."""
        if not self._initialized:
            self._instance = self._factory(*self._args, **self._kwargs)
            if hasattr(self._instance, "initialize") and callable(getattr(self._instance, "initialize", None)):
                await self._instance.initialize()  # type: ignore
            self._initialized = True
        assert self._instance is not None
        return self._instance

    async def cleanup(self) -> None:
        """Clean up the instance."""
        if self._instance and hasattr(self._instance, "close") and callable(getattr(self._instance, "close", None)):
            await self._instance.close()  # type: ignore
        self._instance = None
        self._initialized = False


class DependencyContainer:
    """
    Builds and owns every long-lived pipeline component.

    Components are created on first use and closed in reverse creation order
    on shutdown, so the orchestrator's workers stop before the stores and the
    database they write to.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[Config] = None,
        install_signal_handlers: bool = False,
    ) -> None:
        self.config_path = config_path
        self.config: Optional[Config] = config
        self.install_signal_handlers = install_signal_handlers
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._created: List[str] = []
        self._instances_lock = asyncio.Lock()
        self._shutdown_handlers: List[Callable[[], Any]] = []

        self.pipeline_id = str(uuid4())
        self.is_running = False

    async def initialize(self) -> None:
        """Initialize the container and load configuration."""
        if self.config is None:
            self.load_config()
        self._create_instances()

        if self.install_signal_handlers:
            self._setup_signal_handlers()

        self.is_running = True
        self.logger.info(
            "Dependency container initialized",
            pipeline_id=self.pipeline_id,
            config_path=str(self.config_path) if self.config_path else "default",
            storage_backend=self.config.storage.backend if self.config else None,
        )

    def load_config(self) -> Config:
        if self.config_path and self.config_path.exists():
            self.config = Config.from_yaml(self.config_path)
        else:
            self.config = Config()
        return self.config

    def _create_instances(self) -> None:
        """Register lazy factories for the current configuration."""
        if self.config is None:
            raise RuntimeError("Configuration must be loaded before creating instances")

        from scoutline.collaborators import InsightGenerator, SeoScraper
        from scoutline.observability import ObservabilityManager
        from scoutline.queue import MemoryJobStore, SQLiteJobStore
        from scoutline.storage import MemoryStatusStore, SQLiteDatabase, SQLiteStatusStore

        self._instances = {
            "observability": LazyInstance(ObservabilityManager, self.config.monitoring),
            "scraper": LazyInstance(SeoScraper, self.config.scraper),
            "ai": LazyInstance(InsightGenerator, self.config.ai),
        }
        if self.config.storage.backend == "sqlite":
            database = SQLiteDatabase(self.config.storage)
            self._instances["database"] = LazyInstance(lambda: database)
            self._instances["status_store"] = LazyInstance(SQLiteStatusStore, database)
            self._instances["job_store"] = LazyInstance(SQLiteJobStore, database)
        else:
            self._instances["status_store"] = LazyInstance(MemoryStatusStore)
            self._instances["job_store"] = LazyInstance(MemoryJobStore)
        self._created = []

    async def _resolve(self, name: str) -> Any:
        if name not in self._instances:
            raise KeyError(f"Unknown component: {name}")
        if name in ("status_store", "job_store") and "database" in self._instances:
            # Stores share the database; it must be created first so it is closed last.
            await self._resolve("database")
        lazy = self._instances[name]
        if not lazy.initialized:
            self._created.append(name)
        return await lazy.get()

    async def get_observability(self) -> ObservabilityManager:
        async with self._instances_lock:
            return await self._resolve("observability")  # type: ignore

    async def get_status_store(self) -> StatusStore:
        async with self._instances_lock:
            return await self._resolve("status_store")  # type: ignore

    async def get_job_store(self) -> JobStore:
        async with self._instances_lock:
            return await self._resolve("job_store")  # type: ignore

    async def get_orchestrator(self) -> PipelineOrchestrator:
        """Get the pipeline orchestrator, starting its stage workers on first use."""
        from scoutline.pipeline import PipelineOrchestrator

        async with self._instances_lock:
            if "orchestrator" not in self._instances:
                assert self.config is not None
                await self._resolve("observability")
                self._instances["orchestrator"] = LazyInstance(
                    PipelineOrchestrator,
                    self.config,
                    await self._resolve("status_store"),
                    await self._resolve("job_store"),
                    await self._resolve("scraper"),
                    await self._resolve("ai"),
                )
            return await self._resolve("orchestrator")  # type: ignore

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[DependencyContainer]:
        """Context manager for proper lifecycle management."""
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Graceful shutdown of all managed instances."""
        if not self.is_running:
            return

        self.logger.info("Shutting down dependency container", pipeline_id=self.pipeline_id)

        for handler in self._shutdown_handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler()
                else:
                    handler()
            except Exception as e:
                self.logger.error("Error in shutdown handler", error=str(e))

        await self._cleanup_instances()

        self.is_running = False
        self.logger.info("Dependency container shutdown complete")

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""

        def signal_handler(signum: int, frame: Any) -> None:
            self.logger.info(f"Received signal {signum}, initiating shutdown")
            asyncio.create_task(self.shutdown())

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)

    async def _cleanup_instances(self) -> None:
        for name in reversed(self._created):
            try:
                await self._instances[name].cleanup()
            except Exception as e:
                self.logger.error(f"Error cleaning up {name}", error=str(e))
        self._created = []
        self._instances.pop("orchestrator", None)

    def add_shutdown_handler(self, handler: Callable[[], Any]) -> None:
        """Add a custom shutdown handler."""
        self._shutdown_handlers.append(handler)

    def get_health_status(self) -> Dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "is_running": self.is_running,
            "config_loaded": self.config is not None,
            "instances_count": len(self._instances),
            "active_components": list(self._created),
            "config_path": str(self.config_path) if self.config_path else None,
        }
