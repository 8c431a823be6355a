"""PostgreSQL implementation of GroupRepository."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import asyncpg

from rundown.date_utils import normalize_iso_date


class PostgresGroupRepository:
    """PostgreSQL-backed discussion groups."""

    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def upsert(self, group_data: dict, project_id: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        issue = group_data.get("github_issue")
        threads = group_data.get("threads") or []
        await self.db.execute(
            """
            INSERT INTO discussion_groups (
                id, project_id, suggested_title, github_issue_number, github_issue_json,
                similarity, thread_count, signals_json, affects_features_json,
                is_cross_cutting, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            ON CONFLICT(id) DO UPDATE SET
                suggested_title=EXCLUDED.suggested_title,
                github_issue_number=EXCLUDED.github_issue_number,
                github_issue_json=EXCLUDED.github_issue_json,
                similarity=EXCLUDED.similarity,
                thread_count=EXCLUDED.thread_count,
                signals_json=EXCLUDED.signals_json,
                affects_features_json=EXCLUDED.affects_features_json,
                is_cross_cutting=EXCLUDED.is_cross_cutting,
                updated_at=EXCLUDED.updated_at
            """,
            group_data["id"], project_id,
            group_data.get("suggested_title") or "",
            issue.get("number") if issue else None,
            json.dumps(issue) if issue else None,
            group_data.get("similarity"),
            group_data.get("thread_count") or len(threads),
            json.dumps(group_data.get("signals") or []),
            json.dumps(group_data.get("affects_features") or []),
            bool(group_data.get("is_cross_cutting")),
            normalize_iso_date(group_data.get("created_at")) or now,
            now,
        )
        await self.db.execute("DELETE FROM group_threads WHERE group_id = $1", group_data["id"])
        if threads:
            await self.db.executemany(
                """INSERT INTO group_threads
                    (group_id, thread_id, thread_name, similarity_score, url, author, sort_order)
                   VALUES ($1, $2, $3, $4, $5, $6, $7)
                   ON CONFLICT (group_id, thread_id) DO UPDATE SET
                       thread_name=EXCLUDED.thread_name,
                       similarity_score=EXCLUDED.similarity_score,
                       sort_order=EXCLUDED.sort_order""",
                [
                    (
                        group_data["id"],
                        t["thread_id"],
                        t.get("thread_name"),
                        float(t.get("similarity_score") or 0.0),
                        t.get("url"),
                        t.get("author"),
                        idx,
                    )
                    for idx, t in enumerate(threads)
                ],
            )

    async def get_by_id(self, group_id: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM discussion_groups WHERE id = $1", group_id)
        if not row:
            return None
        group = self._row_to_dict(row)
        group["threads"] = await self.get_threads(group_id)
        return group

    async def list_all(self, project_id: str) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM discussion_groups WHERE project_id = $1 ORDER BY created_at, id",
            project_id,
        )
        groups = [self._row_to_dict(r) for r in rows]
        for group in groups:
            group["threads"] = await self.get_threads(group["id"])
        return groups

    async def list_since(
        self,
        project_id: str,
        since: str,
        scope: str | None = None,
        limit: int = 15,
    ) -> list[dict]:
        query = "SELECT * FROM discussion_groups WHERE project_id = $1 AND created_at >= $2"
        params: list = [project_id, since]
        if scope:
            params.append(f"%{scope.lower()}%")
            query += " AND (LOWER(suggested_title) LIKE $3 OR LOWER(affects_features_json) LIKE $3)"
        params.append(limit)
        query += f" ORDER BY thread_count DESC, created_at DESC, id LIMIT ${len(params)}"
        rows = await self.db.fetch(query, *params)
        return [self._row_to_dict(r) for r in rows]

    async def get_threads(self, group_id: str) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT thread_id, thread_name, similarity_score, url, author
               FROM group_threads WHERE group_id = $1 ORDER BY sort_order""",
            group_id,
        )
        return [dict(r) for r in rows]

    async def update_feature_assignment(
        self, group_id: str, affects_features: list[dict], is_cross_cutting: bool
    ) -> None:
        await self.db.execute(
            """UPDATE discussion_groups
               SET affects_features_json = $1, is_cross_cutting = $2, updated_at = $3
               WHERE id = $4""",
            json.dumps(affects_features),
            bool(is_cross_cutting),
            datetime.now(timezone.utc).isoformat(),
            group_id,
        )

    def _row_to_dict(self, row) -> dict:
        d = dict(row)
        issue_json = d.pop("github_issue_json", None)
        d["github_issue"] = json.loads(issue_json) if issue_json else None
        d["signals"] = json.loads(d.pop("signals_json") or "[]")
        d["affects_features"] = json.loads(d.pop("affects_features_json") or "[]")
        d["is_cross_cutting"] = bool(d.get("is_cross_cutting"))
        d.setdefault("threads", [])
        return d
