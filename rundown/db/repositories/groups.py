"""SQLite implementation of GroupRepository."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import aiosqlite

from rundown.date_utils import normalize_iso_date


class SqliteGroupRepository:
    """SQLite-backed discussion groups with member-thread sub-table."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, group_data: dict, project_id: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        issue = group_data.get("github_issue")
        threads = group_data.get("threads") or []
        await self.db.execute(
            """INSERT INTO discussion_groups (
                id, project_id, suggested_title, github_issue_number, github_issue_json,
                similarity, thread_count, signals_json, affects_features_json,
                is_cross_cutting, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                suggested_title=excluded.suggested_title,
                github_issue_number=excluded.github_issue_number,
                github_issue_json=excluded.github_issue_json,
                similarity=excluded.similarity,
                thread_count=excluded.thread_count,
                signals_json=excluded.signals_json,
                affects_features_json=excluded.affects_features_json,
                is_cross_cutting=excluded.is_cross_cutting,
                updated_at=excluded.updated_at
            """,
            (
                group_data["id"], project_id,
                group_data.get("suggested_title") or "",
                issue.get("number") if issue else None,
                json.dumps(issue) if issue else None,
                group_data.get("similarity"),
                group_data.get("thread_count") or len(threads),
                json.dumps(group_data.get("signals") or []),
                json.dumps(group_data.get("affects_features") or []),
                1 if group_data.get("is_cross_cutting") else 0,
                normalize_iso_date(group_data.get("created_at")) or now,
                now,
            ),
        )
        await self.db.execute("DELETE FROM group_threads WHERE group_id = ?", (group_data["id"],))
        for idx, thread in enumerate(threads):
            await self.db.execute(
                """INSERT OR REPLACE INTO group_threads
                    (group_id, thread_id, thread_name, similarity_score, url, author, sort_order)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    group_data["id"],
                    thread["thread_id"],
                    thread.get("thread_name"),
                    float(thread.get("similarity_score") or 0.0),
                    thread.get("url"),
                    thread.get("author"),
                    idx,
                ),
            )
        await self.db.commit()

    async def get_by_id(self, group_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM discussion_groups WHERE id = ?", (group_id,)
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        group = self._row_to_dict(row)
        group["threads"] = await self.get_threads(group_id)
        return group

    async def list_all(self, project_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM discussion_groups WHERE project_id = ? ORDER BY created_at, id",
            (project_id,),
        ) as cur:
            groups = [self._row_to_dict(r) for r in await cur.fetchall()]
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
        query = "SELECT * FROM discussion_groups WHERE project_id = ? AND created_at >= ?"
        params: list = [project_id, since]
        if scope:
            token = f"%{scope.lower()}%"
            query += " AND (LOWER(suggested_title) LIKE ? OR LOWER(affects_features_json) LIKE ?)"
            params.extend([token, token])
        query += " ORDER BY thread_count DESC, created_at DESC, id LIMIT ?"
        params.append(limit)
        async with self.db.execute(query, params) as cur:
            return [self._row_to_dict(r) for r in await cur.fetchall()]

    async def get_threads(self, group_id: str) -> list[dict]:
        async with self.db.execute(
            """SELECT thread_id, thread_name, similarity_score, url, author
               FROM group_threads WHERE group_id = ? ORDER BY sort_order""",
            (group_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def update_feature_assignment(
        self, group_id: str, affects_features: list[dict], is_cross_cutting: bool
    ) -> None:
        await self.db.execute(
            """UPDATE discussion_groups
               SET affects_features_json = ?, is_cross_cutting = ?, updated_at = ?
               WHERE id = ?""",
            (
                json.dumps(affects_features),
                1 if is_cross_cutting else 0,
                datetime.now(timezone.utc).isoformat(),
                group_id,
            ),
        )
        await self.db.commit()

    def _row_to_dict(self, row) -> dict:
        d = dict(row)
        issue_json = d.pop("github_issue_json", None)
        d["github_issue"] = json.loads(issue_json) if issue_json else None
        d["signals"] = json.loads(d.pop("signals_json") or "[]")
        d["affects_features"] = json.loads(d.pop("affects_features_json") or "[]")
        d["is_cross_cutting"] = bool(d.get("is_cross_cutting"))
        d.setdefault("threads", [])
        return d
