"""
Test configuration for Scoutline.

Provides fast pipeline configurations, scriptable fake collaborators, and
store fixtures for both backends.
"""

# Standard library imports
import asyncio
import os
import tempfile
from pathlib import Path
from typing import Any, AsyncGenerator, Generator

# Third-party imports
import pytest
import pytest_asyncio

# Local imports
from scoutline.config import Config
from scoutline.queue import MemoryJobStore, SQLiteJobStore
from scoutline.storage import MemoryStatusStore, SQLiteDatabase, SQLiteStatusStore
from tests.helpers.pipeline import FakeAI, FakeScraper, make_fast_config

os.environ["SCOUTLINE_TEST_MODE"] = "1"

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    os.environ["SCOUTLINE_TEST_MODE"] = "1"
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: End-to-end pipeline tests")
    config.addinivalue_line("markers", "slow: Tests that take >10 seconds")


# ============================================================================
# Core Test Fixtures
# ============================================================================


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """Cancel any task a test left running so workers never leak between tests."""
    tasks_before = asyncio.all_tasks()
    yield
    new_tasks = asyncio.all_tasks() - tasks_before

    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Unexpected error during task cleanup: {e}")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide temporary directory for test data."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# ============================================================================
# Configuration and Collaborator Fixtures
# ============================================================================


@pytest.fixture
def fast_config(temp_dir) -> Config:
    return make_fast_config(temp_dir)


@pytest.fixture
def fake_scraper() -> FakeScraper:
    return FakeScraper()


@pytest.fixture
def fake_ai() -> FakeAI:
    return FakeAI()


# ============================================================================
# Store Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_database(temp_dir) -> AsyncGenerator[SQLiteDatabase, None]:
    config = make_fast_config(temp_dir)
    database = SQLiteDatabase(config.storage)
    await database.initialize()
    yield database
    await database.close()


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def status_store(request, temp_dir) -> AsyncGenerator[Any, None]:
    """Status store of each backend."""
    if request.param == "memory":
        store = MemoryStatusStore()
        await store.initialize()
        yield store
        await store.close()
        return
    database = SQLiteDatabase(make_fast_config(temp_dir).storage)
    store = SQLiteStatusStore(database)
    await store.initialize()
    yield store
    await store.close()
    await database.close()


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def job_store(request, temp_dir) -> AsyncGenerator[Any, None]:
    """Job store of each backend."""
    if request.param == "memory":
        store = MemoryJobStore()
        await store.initialize()
        yield store
        await store.close()
        return
    database = SQLiteDatabase(make_fast_config(temp_dir).storage)
    store = SQLiteJobStore(database)
    await store.initialize()
    yield store
    await store.close()
    await database.close()
