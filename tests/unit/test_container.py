"""
Tests for the dependency container: backend selection, lazy creation and
ordered shutdown.
"""

import pytest
from scoutline.container import DependencyContainer, LazyInstance
from scoutline.pipeline import PipelineOrchestrator
from scoutline.queue import MemoryJobStore, SQLiteJobStore
from scoutline.storage import MemoryStatusStore, SQLiteStatusStore

from tests.helpers.pipeline import make_fast_config


class Closable:
    def __init__(self):
        self.initialized = False
        self.closed = False

    async def initialize(self):
        self.initialized = True

    async def close(self):
        self.closed = True


class TestLazyInstance:
    @pytest.mark.asyncio
    async def test_creates_once_and_initializes(self):
        created = []

        def factory():
            created.append(Closable())
            return created[-1]

        lazy = LazyInstance(factory)
        first = await lazy.get()
        second = await lazy.get()

        assert first is second
        assert len(created) == 1
        assert first.initialized

    @pytest.mark.asyncio
    async def test_cleanup_closes_and_resets(self):
        lazy = LazyInstance(Closable)
        instance = await lazy.get()

        await lazy.cleanup()

        assert instance.closed
        assert not lazy.initialized


class TestMemoryBackend:
    @pytest.mark.asyncio
    async def test_builds_memory_stores(self, temp_dir):
        async with DependencyContainer(config=make_fast_config(temp_dir)).lifecycle() as container:
            assert isinstance(await container.get_status_store(), MemoryStatusStore)
            assert isinstance(await container.get_job_store(), MemoryJobStore)
            assert await container.get_status_store() is await container.get_status_store()

    @pytest.mark.asyncio
    async def test_orchestrator_is_started_and_shared(self, temp_dir):
        container = DependencyContainer(config=make_fast_config(temp_dir))
        await container.initialize()

        orchestrator = await container.get_orchestrator()
        assert isinstance(orchestrator, PipelineOrchestrator)
        assert orchestrator is await container.get_orchestrator()
        assert orchestrator.store is await container.get_status_store()
        assert all(queue.workers for queue in orchestrator.queues.values())

        await container.shutdown()
        assert not any(queue.workers for queue in orchestrator.queues.values())
        assert container.is_running is False

    @pytest.mark.asyncio
    async def test_shutdown_handlers_run(self, temp_dir):
        calls = []

        async def async_handler():
            calls.append("async")

        container = DependencyContainer(config=make_fast_config(temp_dir))
        container.add_shutdown_handler(lambda: calls.append("sync"))
        container.add_shutdown_handler(async_handler)
        await container.initialize()
        await container.shutdown()

        assert calls == ["sync", "async"]

    @pytest.mark.asyncio
    async def test_health_status(self, temp_dir):
        container = DependencyContainer(config=make_fast_config(temp_dir))
        await container.initialize()
        await container.get_job_store()

        status = container.get_health_status()

        assert status["is_running"] is True
        assert status["config_loaded"] is True
        assert status["active_components"] == ["job_store"]
        await container.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_component(self, temp_dir):
        container = DependencyContainer(config=make_fast_config(temp_dir))
        await container.initialize()
        with pytest.raises(KeyError):
            await container._resolve("cache")
        await container.shutdown()


class TestSQLiteBackend:
    @pytest.mark.asyncio
    async def test_stores_share_one_database(self, temp_dir):
        config = make_fast_config(temp_dir)
        config.storage.backend = "sqlite"
        container = DependencyContainer(config=config)
        await container.initialize()

        status_store = await container.get_status_store()
        job_store = await container.get_job_store()

        assert isinstance(status_store, SQLiteStatusStore)
        assert isinstance(job_store, SQLiteJobStore)
        assert status_store.database is job_store.database
        assert container.get_health_status()["active_components"][0] == "database"
        assert (temp_dir / "scoutline.db").exists()

        await container.shutdown()
        assert not status_store.database.is_open

    @pytest.mark.asyncio
    async def test_config_file_is_loaded(self, temp_dir):
        path = temp_dir / "scoutline.yaml"
        path.write_text(
            "storage:\n"
            "  backend: memory\n"
            f"  db_path: {temp_dir / 'from-file.db'}\n"
            "pipeline:\n"
            "  max_targets: 3\n"
            "monitoring:\n"
            "  enabled: false\n"
        )
        container = DependencyContainer(config_path=path)
        await container.initialize()

        assert container.config.pipeline.max_targets == 3
        assert isinstance(await container.get_status_store(), MemoryStatusStore)
        await container.shutdown()
