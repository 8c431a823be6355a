"""Database connection factory.

Provides singleton async connection to SQLite (default) with WAL mode.
Backend selection via RUNDOWN_DB_BACKEND env var.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Union, Any

import aiosqlite
try:
    import asyncpg
except ImportError:
    asyncpg = None  # type: ignore

from rundown import config

logger = logging.getLogger("rundown.db")

DB_PATH = Path(config.DB_PATH)

# Type alias for DB connection/pool
DbConnection = Union[aiosqlite.Connection, Any]  # Any to support asyncpg.Pool

_connection: DbConnection | None = None


async def open_sqlite(path: str | Path) -> aiosqlite.Connection:
    """Open a SQLite connection with the pragmas every Rundown connection uses."""
    if str(path) != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(str(path))
    conn.row_factory = aiosqlite.Row
    # Enable WAL mode for better concurrent read performance
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA busy_timeout=5000")
    return conn


async def get_connection() -> DbConnection:
    """Return the singleton database connection/pool, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection

    if config.DB_BACKEND == "postgres":
        if not asyncpg:
            raise ImportError("asyncpg is required for Postgres backend.")

        logger.info("Connecting to PostgreSQL")
        _connection = await asyncpg.create_pool(config.DATABASE_URL)
        return _connection

    _connection = await open_sqlite(DB_PATH)
    logger.info(f"Database connection established: {DB_PATH}")
    return _connection


async def close_connection() -> None:
    """Close the database connection."""
    global _connection
    if _connection is not None:
        await _connection.close()  # asyncpg Pool has close() too
        _connection = None
        logger.info("Database connection closed")
