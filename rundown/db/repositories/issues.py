"""SQLite implementation of IssueRepository."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import aiosqlite

from rundown.date_utils import normalize_iso_date

_ISSUE_COLUMNS = """
    issues.*,
    (
        SELECT json_group_array(m.thread_id) FROM issue_thread_matches m
        WHERE m.project_id = issues.project_id AND m.issue_number = issues.number
    ) AS linked_threads_json
"""


class SqliteIssueRepository:
    """SQLite-backed tracked-issue storage with thread-match sub-table."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, issue_data: dict, project_id: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """INSERT INTO issues (
                project_id, number, title, body, state,
                labels_json, detected_labels_json, assignees_json, reactions_json,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(project_id, number) DO UPDATE SET
                title=excluded.title, body=excluded.body, state=excluded.state,
                labels_json=excluded.labels_json,
                detected_labels_json=excluded.detected_labels_json,
                assignees_json=excluded.assignees_json,
                reactions_json=excluded.reactions_json,
                updated_at=excluded.updated_at
            """,
            (
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
            ),
        )
        await self.db.commit()

    async def replace_thread_matches(
        self, project_id: str, issue_number: int, matches: list[dict]
    ) -> None:
        await self.db.execute(
            "DELETE FROM issue_thread_matches WHERE project_id = ? AND issue_number = ?",
            (project_id, issue_number),
        )
        for match in matches:
            await self.db.execute(
                """INSERT OR REPLACE INTO issue_thread_matches
                    (project_id, issue_number, thread_id, similarity)
                   VALUES (?, ?, ?, ?)""",
                (project_id, issue_number, match["thread_id"], float(match.get("similarity") or 0.0)),
            )
        await self.db.commit()

    async def get_by_number(self, project_id: str, number: int) -> dict | None:
        async with self.db.execute(
            f"SELECT {_ISSUE_COLUMNS} FROM issues WHERE project_id = ? AND number = ?",
            (project_id, number),
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_dict(row) if row else None

    async def list_open_since(
        self,
        project_id: str,
        since: str,
        scope: str | None = None,
        limit: int = 20,
    ) -> list[dict]:
        query = f"""SELECT {_ISSUE_COLUMNS} FROM issues
            WHERE project_id = ? AND state = 'open' AND created_at >= ?"""
        params: list = [project_id, since]
        if scope:
            token = scope.lower()
            query += """ AND (
                LOWER(title) LIKE ?
                OR LOWER(body) LIKE ?
                OR EXISTS (
                    SELECT 1 FROM json_each(issues.labels_json)
                    WHERE LOWER(json_each.value) = ?
                )
            )"""
            params.extend([f"%{token}%", f"%{token}%", token])
        query += " ORDER BY created_at DESC, number DESC LIMIT ?"
        params.append(limit)
        async with self.db.execute(query, params) as cur:
            return [self._row_to_dict(r) for r in await cur.fetchall()]

    async def count_opened_since(self, project_id: str, since: str) -> int:
        async with self.db.execute(
            "SELECT COUNT(*) FROM issues WHERE project_id = ? AND state = 'open' AND created_at >= ?",
            (project_id, since),
        ) as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    async def count_closed_since(self, project_id: str, since: str) -> int:
        async with self.db.execute(
            "SELECT COUNT(*) FROM issues WHERE project_id = ? AND state = 'closed' AND updated_at >= ?",
            (project_id, since),
        ) as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    def _row_to_dict(self, row) -> dict:
        """Rename JSON columns to model field names; decoding is left to the model."""
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
