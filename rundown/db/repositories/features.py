"""SQLite implementation of FeatureRepository."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import aiosqlite


class SqliteFeatureRepository:
    """SQLite-backed feature catalog with code-mapping sub-table."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, feature_data: dict, project_id: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """INSERT INTO features (
                id, project_id, name, description, related_keywords_json,
                priority, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name=excluded.name, description=excluded.description,
                related_keywords_json=excluded.related_keywords_json,
                priority=excluded.priority,
                updated_at=excluded.updated_at
            """,
            (
                feature_data["id"], project_id,
                feature_data.get("name", ""),
                feature_data.get("description") or "",
                json.dumps(feature_data.get("related_keywords") or []),
                feature_data.get("priority") or "medium",
                feature_data.get("created_at") or now,
                now,
            ),
        )
        await self.db.commit()

    async def get_by_id(self, feature_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM features WHERE id = ?", (feature_id,)
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_dict(row) if row else None

    async def list_all(
        self,
        project_id: str,
        scope: str | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        query = "SELECT * FROM features WHERE project_id = ?"
        params: list = [project_id]
        if scope:
            query += """ AND (
                LOWER(name) LIKE ?
                OR EXISTS (
                    SELECT 1 FROM json_each(features.related_keywords_json)
                    WHERE LOWER(json_each.value) = ?
                )
            )"""
            params.extend([f"%{scope.lower()}%", scope.lower()])
        query += " ORDER BY name, id"
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        async with self.db.execute(query, params) as cur:
            return [self._row_to_dict(r) for r in await cur.fetchall()]

    async def delete(self, feature_id: str) -> None:
        await self.db.execute("DELETE FROM features WHERE id = ?", (feature_id,))
        await self.db.commit()

    # ── Code mappings ───────────────────────────────────────────────

    async def replace_code_mappings(self, feature_id: str, mappings: list[dict]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute("DELETE FROM feature_code_mappings WHERE feature_id = ?", (feature_id,))
        for mapping in mappings:
            await self.db.execute(
                """INSERT INTO feature_code_mappings
                    (feature_id, file_path, section_name, similarity, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    feature_id,
                    mapping.get("file_path", ""),
                    mapping.get("section_name", ""),
                    float(mapping.get("similarity") or 0.0),
                    now,
                ),
            )
        await self.db.commit()

    async def get_code_mappings(self, feature_id: str, limit: int = 3) -> list[dict]:
        async with self.db.execute(
            """SELECT feature_id, file_path, section_name, similarity
               FROM feature_code_mappings
               WHERE feature_id = ?
               ORDER BY similarity DESC, id
               LIMIT ?""",
            (feature_id, limit),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    def _row_to_dict(self, row) -> dict:
        d = dict(row)
        d["related_keywords"] = json.loads(d.pop("related_keywords_json") or "[]")
        return d
