"""Persistence for analysis records and queued jobs."""

from __future__ import annotations

from .database import SQLiteDatabase
from .schema import metadata as db_metadata
from .sqlite_status_store import SQLiteStatusStore
from .status_store import MemoryStatusStore

__all__ = ["SQLiteDatabase", "SQLiteStatusStore", "MemoryStatusStore", "db_metadata"]
