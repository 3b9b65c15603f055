"""
Connection pool for the shared SQLite database.
"""

from __future__ import annotations

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List

import aiosqlite
import structlog
from sqlalchemy import create_engine
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from scoutline.config.config import StorageConfig

from .schema import metadata as db_metadata

logger = structlog.get_logger(__name__)

# Increment whenever schema.py changes.
CURRENT_SCHEMA_VERSION = 2

# Columns added after a table was first created: (table, column, DDL type).
_ADDED_COLUMNS = [("queue_jobs", "heartbeat_at", "FLOAT")]


def _is_locked_error(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc).lower()


# Writers from other processes can hold the database past busy_timeout.
retry_on_locked = retry(
    retry=retry_if_exception(_is_locked_error),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=0.05, max=1.0),
    reraise=True,
)


class SQLiteDatabase:
    """
    Pool of aiosqlite connections in autocommit mode.

    Single statements commit on their own; multi-statement work goes through
    ``transaction()`` which takes the write lock up front.
    """

    def __init__(self, config: StorageConfig) -> None:
        self.config = config
        self.db_path = Path(config.db_path)
        self._pool: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize=config.pool_size)
        self._connections: List[aiosqlite.Connection] = []
        self._initialized = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._initialized and not self._closed

    async def initialize(self) -> None:
        """Creates the schema and fills the connection pool."""
        if self._initialized:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(self._create_schema)
        for _ in range(self.config.pool_size):
            conn = await self._create_connection()
            self._connections.append(conn)
            await self._pool.put(conn)
        self._initialized = True
        logger.info("SQLite database ready", path=str(self.db_path), pool_size=self.config.pool_size)

    def _create_schema(self) -> None:
        engine = create_engine(f"sqlite:///{self.db_path}")
        try:
            db_metadata.create_all(engine)
            with engine.begin() as conn:
                for table, column, ddl_type in _ADDED_COLUMNS:
                    existing = {row[1] for row in conn.exec_driver_sql(f"PRAGMA table_info({table})")}
                    if column not in existing:
                        conn.exec_driver_sql(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}")
                conn.exec_driver_sql(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION}")
        finally:
            engine.dispose()

    async def _create_connection(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(self.db_path, isolation_level=None)
        if self.config.wal_mode:
            await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA foreign_keys=ON;")
        await conn.execute(f"PRAGMA busy_timeout = {self.config.busy_timeout_ms};")
        conn.row_factory = aiosqlite.Row
        return conn

    @asynccontextmanager
    async def get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Gets a connection from the pool."""
        if not self.is_open:
            raise sqlite3.ProgrammingError(f"Database is not open: {self.db_path}")
        conn = await self._pool.get()
        try:
            yield conn
        finally:
            await self._pool.put(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Runs the block inside ``BEGIN IMMEDIATE`` on a pooled connection."""
        async with self.get_connection() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")

    async def close(self) -> None:
        if self._closed or not self._initialized:
            self._closed = True
            return
        self._closed = True
        for conn in self._connections:
            await conn.close()
        self._connections.clear()
        logger.info("SQLite database closed", path=str(self.db_path))
