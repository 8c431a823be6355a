"""Database migration dispatcher.

Routes migration calls to the appropriate backend implementation (SQLite or Postgres).
"""
from __future__ import annotations

import logging
from typing import Any

import aiosqlite
# Try importing asyncpg, handle missing
try:
    import asyncpg
except ImportError:
    asyncpg = None

from rundown.db import sqlite_migrations

logger = logging.getLogger("rundown.db")


async def run_migrations(db: Any) -> None:
    """Run migrations on the provided database connection."""
    if isinstance(db, aiosqlite.Connection):
        logger.info("Running SQLite migrations...")
        await sqlite_migrations.run_migrations(db)
        return

    if asyncpg and isinstance(db, asyncpg.Pool):
        from rundown.db import postgres_migrations

        logger.info("Running Postgres migrations...")
        await postgres_migrations.run_migrations(db)
        return

    logger.warning(f"Unknown database connection type: {type(db)}")
