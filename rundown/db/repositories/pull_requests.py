"""SQLite implementation of PullRequestRepository."""
from __future__ import annotations

from datetime import datetime, timezone

import aiosqlite

from rundown.date_utils import normalize_iso_date
from rundown.db.repositories.issues import SqliteIssueRepository, _ISSUE_COLUMNS


class SqlitePullRequestRepository:
    """SQLite-backed merged-change storage linked to tracked issues."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self._issues = SqliteIssueRepository(db)

    async def upsert(self, pr_data: dict, project_id: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        number = int(pr_data["number"])
        await self.db.execute(
            """INSERT INTO pull_requests (
                project_id, number, title, body, state, merged, created_at, merged_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(project_id, number) DO UPDATE SET
                title=excluded.title, body=excluded.body, state=excluded.state,
                merged=excluded.merged, merged_at=excluded.merged_at
            """,
            (
                project_id, number,
                pr_data.get("title") or "",
                pr_data.get("body") or "",
                pr_data.get("state") or "open",
                1 if pr_data.get("merged") else 0,
                normalize_iso_date(pr_data.get("created_at")) or now,
                normalize_iso_date(pr_data.get("merged_at")),
            ),
        )
        await self.db.execute(
            "DELETE FROM pull_request_issues WHERE project_id = ? AND pr_number = ?",
            (project_id, number),
        )
        for issue_number in pr_data.get("linked_issue_numbers") or []:
            await self.db.execute(
                """INSERT OR IGNORE INTO pull_request_issues (project_id, pr_number, issue_number)
                   VALUES (?, ?, ?)""",
                (project_id, number, int(issue_number)),
            )
        await self.db.commit()

    async def list_merged_since(
        self,
        project_id: str,
        since: str,
        scope: str | None = None,
        limit: int = 10,
    ) -> list[dict]:
        query = """SELECT * FROM pull_requests
            WHERE project_id = ? AND merged = 1 AND created_at >= ?"""
        params: list = [project_id, since]
        if scope:
            token = f"%{scope.lower()}%"
            query += " AND (LOWER(title) LIKE ? OR LOWER(body) LIKE ?)"
            params.extend([token, token])
        query += " ORDER BY created_at DESC, number DESC LIMIT ?"
        params.append(limit)
        async with self.db.execute(query, params) as cur:
            rows = [dict(r) for r in await cur.fetchall()]

        for row in rows:
            row["merged"] = bool(row.get("merged"))
            row["linked_issues"] = await self._linked_issues(project_id, row["number"])
        return rows

    async def _linked_issues(self, project_id: str, pr_number: int) -> list[dict]:
        async with self.db.execute(
            f"""SELECT {_ISSUE_COLUMNS} FROM issues
                JOIN pull_request_issues pri
                  ON pri.project_id = issues.project_id AND pri.issue_number = issues.number
                WHERE pri.project_id = ? AND pri.pr_number = ?
                ORDER BY issues.number""",
            (project_id, pr_number),
        ) as cur:
            return [self._issues._row_to_dict(r) for r in await cur.fetchall()]

    async def count_opened_since(self, project_id: str, since: str) -> int:
        async with self.db.execute(
            "SELECT COUNT(*) FROM pull_requests WHERE project_id = ? AND created_at >= ?",
            (project_id, since),
        ) as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    async def count_merged_since(self, project_id: str, since: str) -> int:
        async with self.db.execute(
            "SELECT COUNT(*) FROM pull_requests WHERE project_id = ? AND merged = 1 AND created_at >= ?",
            (project_id, since),
        ) as cur:
            row = await cur.fetchone()
        return row[0] if row else 0
