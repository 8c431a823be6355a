"""PostgreSQL implementation of FeatureRepository."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import asyncpg


class PostgresFeatureRepository:
    """PostgreSQL-backed feature catalog."""

    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def upsert(self, feature_data: dict, project_id: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """
            INSERT INTO features (
                id, project_id, name, description, related_keywords_json,
                priority, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT(id) DO UPDATE SET
                name=EXCLUDED.name, description=EXCLUDED.description,
                related_keywords_json=EXCLUDED.related_keywords_json,
                priority=EXCLUDED.priority,
                updated_at=EXCLUDED.updated_at
            """,
            feature_data["id"], project_id,
            feature_data.get("name", ""),
            feature_data.get("description") or "",
            json.dumps(feature_data.get("related_keywords") or []),
            feature_data.get("priority") or "medium",
            feature_data.get("created_at") or now,
            now,
        )

    async def get_by_id(self, feature_id: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM features WHERE id = $1", feature_id)
        return self._row_to_dict(row) if row else None

    async def list_all(
        self,
        project_id: str,
        scope: str | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        query = "SELECT * FROM features WHERE project_id = $1"
        params: list = [project_id]
        if scope:
            params.extend([f"%{scope.lower()}%", scope.lower()])
            query += """ AND (
                LOWER(name) LIKE $2
                OR EXISTS (
                    SELECT 1 FROM jsonb_array_elements_text(related_keywords_json::jsonb) AS k(value)
                    WHERE LOWER(k.value) = $3
                )
            )"""
        query += " ORDER BY name, id"
        if limit:
            params.append(limit)
            query += f" LIMIT ${len(params)}"
        rows = await self.db.fetch(query, *params)
        return [self._row_to_dict(r) for r in rows]

    async def delete(self, feature_id: str) -> None:
        await self.db.execute("DELETE FROM features WHERE id = $1", feature_id)

    async def replace_code_mappings(self, feature_id: str, mappings: list[dict]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute("DELETE FROM feature_code_mappings WHERE feature_id = $1", feature_id)
        if not mappings:
            return
        await self.db.executemany(
            """INSERT INTO feature_code_mappings
                (feature_id, file_path, section_name, similarity, created_at)
               VALUES ($1, $2, $3, $4, $5)""",
            [
                (
                    feature_id,
                    m.get("file_path", ""),
                    m.get("section_name", ""),
                    float(m.get("similarity") or 0.0),
                    now,
                )
                for m in mappings
            ],
        )

    async def get_code_mappings(self, feature_id: str, limit: int = 3) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT feature_id, file_path, section_name, similarity
               FROM feature_code_mappings
               WHERE feature_id = $1
               ORDER BY similarity DESC, id
               LIMIT $2""",
            feature_id, limit,
        )
        return [dict(r) for r in rows]

    def _row_to_dict(self, row) -> dict:
        d = dict(row)
        d["related_keywords"] = json.loads(d.pop("related_keywords_json") or "[]")
        return d
