"""PostgreSQL implementation of EmbeddingRepository."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import asyncpg


class PostgresEmbeddingRepository:
    """PostgreSQL-backed vector cache."""

    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def get(self, entity_type: str, entity_id: str) -> dict | None:
        row = await self.db.fetchrow(
            "SELECT * FROM embeddings WHERE entity_type = $1 AND entity_id = $2",
            entity_type, entity_id,
        )
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
            """
            INSERT INTO embeddings (
                entity_type, entity_id, content_hash, provider_version,
                vector_json, dimensions, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT(entity_type, entity_id) DO UPDATE SET
                content_hash=EXCLUDED.content_hash,
                provider_version=EXCLUDED.provider_version,
                vector_json=EXCLUDED.vector_json,
                dimensions=EXCLUDED.dimensions,
                updated_at=EXCLUDED.updated_at
            """,
            entity_type, entity_id, content_hash, provider_version,
            json.dumps([float(v) for v in vector]), len(vector),
            now, now,
        )

    async def delete(self, entity_type: str, entity_id: str) -> None:
        await self.db.execute(
            "DELETE FROM embeddings WHERE entity_type = $1 AND entity_id = $2",
            entity_type, entity_id,
        )

    async def count(self, entity_type: str | None = None) -> int:
        if entity_type:
            value = await self.db.fetchval(
                "SELECT COUNT(*) FROM embeddings WHERE entity_type = $1", entity_type
            )
        else:
            value = await self.db.fetchval("SELECT COUNT(*) FROM embeddings")
        return int(value or 0)

    def _row_to_dict(self, row) -> dict:
        d = dict(row)
        d["vector"] = json.loads(d.pop("vector_json") or "[]")
        d["provider_version"] = d.get("provider_version") or ""
        return d
