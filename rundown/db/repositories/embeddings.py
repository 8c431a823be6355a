"""SQLite implementation of EmbeddingRepository (the durable vector cache)."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import aiosqlite


class SqliteEmbeddingRepository:
    """One vector per (entity_type, entity_id); writes overwrite."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, entity_type: str, entity_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM embeddings WHERE entity_type = ? AND entity_id = ?",
            (entity_type, entity_id),
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_dict(row) if row else None

    async def upsert(
        self,
        entity_type: str,
        entity_id: str,
        vector: list[float],
        content_hash: str,
        provider_version: str = "",
    ) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """INSERT INTO embeddings (
                entity_type, entity_id, content_hash, provider_version,
                vector_json, dimensions, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(entity_type, entity_id) DO UPDATE SET
                content_hash=excluded.content_hash,
                provider_version=excluded.provider_version,
                vector_json=excluded.vector_json,
                dimensions=excluded.dimensions,
                updated_at=excluded.updated_at
            """,
            (
                entity_type, entity_id, content_hash, provider_version,
                json.dumps([float(v) for v in vector]), len(vector),
                now, now,
            ),
        )
        await self.db.commit()

    async def delete(self, entity_type: str, entity_id: str) -> None:
        await self.db.execute(
            "DELETE FROM embeddings WHERE entity_type = ? AND entity_id = ?",
            (entity_type, entity_id),
        )
        await self.db.commit()

    async def count(self, entity_type: str | None = None) -> int:
        if entity_type:
            async with self.db.execute(
                "SELECT COUNT(*) FROM embeddings WHERE entity_type = ?", (entity_type,)
            ) as cur:
                row = await cur.fetchone()
        else:
            async with self.db.execute("SELECT COUNT(*) FROM embeddings") as cur:
                row = await cur.fetchone()
        return row[0] if row else 0

    def _row_to_dict(self, row) -> dict:
        d = dict(row)
        d["vector"] = json.loads(d.pop("vector_json") or "[]")
        d["provider_version"] = d.get("provider_version") or ""
        return d
