"""SQLite implementation of ThreadRepository (ungrouped + classified threads)."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import aiosqlite

from rundown.date_utils import normalize_iso_date


class SqliteThreadRepository:
    """Threads that fell outside any group, plus the classification log."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert_ungrouped(self, thread_data: dict, project_id: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        top_issue = thread_data.get("top_issue")
        await self.db.execute(
            """INSERT INTO ungrouped_threads (
                project_id, thread_id, channel_id, thread_name, url, author,
                timestamp, reason, top_issue_json, affects_features_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(project_id, thread_id) DO UPDATE SET
                channel_id=excluded.channel_id, thread_name=excluded.thread_name,
                url=excluded.url, author=excluded.author, timestamp=excluded.timestamp,
                reason=excluded.reason, top_issue_json=excluded.top_issue_json,
                affects_features_json=excluded.affects_features_json
            """,
            (
                project_id,
                thread_data["thread_id"],
                thread_data.get("channel_id"),
                thread_data.get("thread_name"),
                thread_data.get("url"),
                thread_data.get("author"),
                normalize_iso_date(thread_data.get("timestamp")) or None,
                thread_data.get("reason") or "no_matches",
                json.dumps(top_issue) if top_issue else None,
                json.dumps(thread_data.get("affects_features") or []),
                now,
            ),
        )
        await self.db.commit()

    async def list_ungrouped(self, project_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM ungrouped_threads WHERE project_id = ? ORDER BY created_at, thread_id",
            (project_id,),
        ) as cur:
            return [self._row_to_dict(r) for r in await cur.fetchall()]

    async def count_ungrouped(self, project_id: str) -> int:
        async with self.db.execute(
            "SELECT COUNT(*) FROM ungrouped_threads WHERE project_id = ?", (project_id,)
        ) as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    async def update_ungrouped_features(
        self, project_id: str, thread_id: str, affects_features: list[dict]
    ) -> None:
        await self.db.execute(
            """UPDATE ungrouped_threads SET affects_features_json = ?
               WHERE project_id = ? AND thread_id = ?""",
            (json.dumps(affects_features), project_id, thread_id),
        )
        await self.db.commit()

    async def record_classified(
        self, project_id: str, thread_id: str, thread_name: str = "", classified_at: str | None = None
    ) -> None:
        await self.db.execute(
            """INSERT INTO classified_threads (project_id, thread_id, thread_name, classified_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(project_id, thread_id) DO UPDATE SET
                   thread_name=excluded.thread_name, classified_at=excluded.classified_at""",
            (
                project_id, thread_id, thread_name or "",
                normalize_iso_date(classified_at) or datetime.now(timezone.utc).isoformat(),
            ),
        )
        await self.db.commit()

    async def count_classified_since(self, project_id: str, since: str) -> int:
        async with self.db.execute(
            "SELECT COUNT(*) FROM classified_threads WHERE project_id = ? AND classified_at >= ?",
            (project_id, since),
        ) as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    def _row_to_dict(self, row) -> dict:
        d = dict(row)
        top_issue = d.pop("top_issue_json", None)
        d["top_issue"] = json.loads(top_issue) if top_issue else None
        d["affects_features"] = json.loads(d.pop("affects_features_json") or "[]")
        return d
