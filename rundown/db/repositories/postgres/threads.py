"""PostgreSQL implementation of ThreadRepository."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import asyncpg

from rundown.date_utils import normalize_iso_date


class PostgresThreadRepository:
    """PostgreSQL-backed ungrouped and classified threads."""

    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def upsert_ungrouped(self, thread_data: dict, project_id: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        top_issue = thread_data.get("top_issue")
        await self.db.execute(
            """
            INSERT INTO ungrouped_threads (
                project_id, thread_id, channel_id, thread_name, url, author,
                timestamp, reason, top_issue_json, affects_features_json, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT(project_id, thread_id) DO UPDATE SET
                channel_id=EXCLUDED.channel_id, thread_name=EXCLUDED.thread_name,
                url=EXCLUDED.url, author=EXCLUDED.author, timestamp=EXCLUDED.timestamp,
                reason=EXCLUDED.reason, top_issue_json=EXCLUDED.top_issue_json,
                affects_features_json=EXCLUDED.affects_features_json
            """,
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
        )

    async def list_ungrouped(self, project_id: str) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM ungrouped_threads WHERE project_id = $1 ORDER BY created_at, thread_id",
            project_id,
        )
        return [self._row_to_dict(r) for r in rows]

    async def count_ungrouped(self, project_id: str) -> int:
        value = await self.db.fetchval(
            "SELECT COUNT(*) FROM ungrouped_threads WHERE project_id = $1", project_id
        )
        return int(value or 0)

    async def update_ungrouped_features(
        self, project_id: str, thread_id: str, affects_features: list[dict]
    ) -> None:
        await self.db.execute(
            """UPDATE ungrouped_threads SET affects_features_json = $1
               WHERE project_id = $2 AND thread_id = $3""",
            json.dumps(affects_features), project_id, thread_id,
        )

    async def record_classified(
        self, project_id: str, thread_id: str, thread_name: str = "", classified_at: str | None = None
    ) -> None:
        await self.db.execute(
            """INSERT INTO classified_threads (project_id, thread_id, thread_name, classified_at)
               VALUES ($1, $2, $3, $4)
               ON CONFLICT(project_id, thread_id) DO UPDATE SET
                   thread_name=EXCLUDED.thread_name, classified_at=EXCLUDED.classified_at""",
            project_id, thread_id, thread_name or "",
            normalize_iso_date(classified_at) or datetime.now(timezone.utc).isoformat(),
        )

    async def count_classified_since(self, project_id: str, since: str) -> int:
        value = await self.db.fetchval(
            "SELECT COUNT(*) FROM classified_threads WHERE project_id = $1 AND classified_at >= $2",
            project_id, since,
        )
        return int(value or 0)

    def _row_to_dict(self, row) -> dict:
        d = dict(row)
        top_issue = d.pop("top_issue_json", None)
        d["top_issue"] = json.loads(top_issue) if top_issue else None
        d["affects_features"] = json.loads(d.pop("affects_features_json") or "[]")
        return d
