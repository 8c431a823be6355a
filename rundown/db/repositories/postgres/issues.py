"""PostgreSQL implementation of IssueRepository."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import asyncpg

from rundown.date_utils import normalize_iso_date

_ISSUE_COLUMNS = """
    issues.*,
    (
        SELECT COALESCE(json_agg(m.thread_id), '[]'::json)::text FROM issue_thread_matches m
        WHERE m.project_id = issues.project_id AND m.issue_number = issues.number
    ) AS linked_threads_json
"""


class PostgresIssueRepository:
    """PostgreSQL-backed tracked-issue storage."""

    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def upsert(self, issue_data: dict, project_id: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """
            INSERT INTO issues (
                project_id, number, title, body, state,
                labels_json, detected_labels_json, assignees_json, reactions_json,
                created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT(project_id, number) DO UPDATE SET
                title=EXCLUDED.title, body=EXCLUDED.body, state=EXCLUDED.state,
                labels_json=EXCLUDED.labels_json,
                detected_labels_json=EXCLUDED.detected_labels_json,
                assignees_json=EXCLUDED.assignees_json,
                reactions_json=EXCLUDED.reactions_json,
                updated_at=EXCLUDED.updated_at
            """,
            project_id,
            int(issue_data["number"]),
            issue_data.get("title") or "",
            issue_data.get("body") or "",
            issue_data.get("state") or "open",
            json.dumps(issue_data.get("labels") or []),
            json.dumps(issue_data.get("detected_labels") or []),
            json.dumps(issue_data.get("assignees") or []),
            json.dumps(issue_data.get("reactions") or {}),
            normalize_iso_date(issue_data.get("created_at")) or now,
            normalize_iso_date(issue_data.get("updated_at") or issue_data.get("created_at")) or now,
        )

    async def replace_thread_matches(
        self, project_id: str, issue_number: int, matches: list[dict]
    ) -> None:
        await self.db.execute(
            "DELETE FROM issue_thread_matches WHERE project_id = $1 AND issue_number = $2",
            project_id, issue_number,
        )
        if not matches:
            return
        await self.db.executemany(
            """INSERT INTO issue_thread_matches (project_id, issue_number, thread_id, similarity)
               VALUES ($1, $2, $3, $4)
               ON CONFLICT DO NOTHING""",
            [
                (project_id, issue_number, m["thread_id"], float(m.get("similarity") or 0.0))
                for m in matches
            ],
        )

    async def get_by_number(self, project_id: str, number: int) -> dict | None:
        row = await self.db.fetchrow(
            f"SELECT {_ISSUE_COLUMNS} FROM issues WHERE project_id = $1 AND number = $2",
            project_id, number,
        )
        return self._row_to_dict(row) if row else None

    async def list_open_since(
        self,
        project_id: str,
        since: str,
        scope: str | None = None,
        limit: int = 20,
    ) -> list[dict]:
        query = f"""SELECT {_ISSUE_COLUMNS} FROM issues
            WHERE project_id = $1 AND state = 'open' AND created_at >= $2"""
        params: list = [project_id, since]
        if scope:
            token = scope.lower()
            params.extend([f"%{token}%", token])
            query += """ AND (
                LOWER(title) LIKE $3
                OR LOWER(body) LIKE $3
                OR EXISTS (
                    SELECT 1 FROM jsonb_array_elements_text(labels_json::jsonb) AS l(value)
                    WHERE LOWER(l.value) = $4
                )
            )"""
        params.append(limit)
        query += f" ORDER BY created_at DESC, number DESC LIMIT ${len(params)}"
        rows = await self.db.fetch(query, *params)
        return [self._row_to_dict(r) for r in rows]

    async def count_opened_since(self, project_id: str, since: str) -> int:
        value = await self.db.fetchval(
            "SELECT COUNT(*) FROM issues WHERE project_id = $1 AND state = 'open' AND created_at >= $2",
            project_id, since,
        )
        return int(value or 0)

    async def count_closed_since(self, project_id: str, since: str) -> int:
        value = await self.db.fetchval(
            "SELECT COUNT(*) FROM issues WHERE project_id = $1 AND state = 'closed' AND updated_at >= $2",
            project_id, since,
        )
        return int(value or 0)

    def _row_to_dict(self, row) -> dict:
        d = dict(row)
        return {
            "number": d["number"],
            "title": d.get("title"),
            "body": d.get("body"),
            "state": d.get("state"),
            "labels": d.get("labels_json"),
            "detected_labels": d.get("detected_labels_json"),
            "assignees": d.get("assignees_json"),
            "reactions": d.get("reactions_json"),
            "created_at": d.get("created_at") or "",
            "updated_at": d.get("updated_at") or "",
            "linked_threads": d.get("linked_threads_json"),
        }
