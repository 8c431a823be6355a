"""PostgreSQL implementation of PullRequestRepository."""
from __future__ import annotations

from datetime import datetime, timezone

import asyncpg

from rundown.date_utils import normalize_iso_date
from rundown.db.repositories.postgres.issues import PostgresIssueRepository, _ISSUE_COLUMNS


class PostgresPullRequestRepository:
    """PostgreSQL-backed merged-change storage."""

    def __init__(self, db: asyncpg.Connection):
        self.db = db
        self._issues = PostgresIssueRepository(db)

    async def upsert(self, pr_data: dict, project_id: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        number = int(pr_data["number"])
        await self.db.execute(
            """
            INSERT INTO pull_requests (
                project_id, number, title, body, state, merged, created_at, merged_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT(project_id, number) DO UPDATE SET
                title=EXCLUDED.title, body=EXCLUDED.body, state=EXCLUDED.state,
                merged=EXCLUDED.merged, merged_at=EXCLUDED.merged_at
            """,
            project_id, number,
            pr_data.get("title") or "",
            pr_data.get("body") or "",
            pr_data.get("state") or "open",
            bool(pr_data.get("merged")),
            normalize_iso_date(pr_data.get("created_at")) or now,
            normalize_iso_date(pr_data.get("merged_at")),
        )
        await self.db.execute(
            "DELETE FROM pull_request_issues WHERE project_id = $1 AND pr_number = $2",
            project_id, number,
        )
        linked = [int(n) for n in pr_data.get("linked_issue_numbers") or []]
        if linked:
            await self.db.executemany(
                """INSERT INTO pull_request_issues (project_id, pr_number, issue_number)
                   VALUES ($1, $2, $3) ON CONFLICT DO NOTHING""",
                [(project_id, number, n) for n in linked],
            )

    async def list_merged_since(
        self,
        project_id: str,
        since: str,
        scope: str | None = None,
        limit: int = 10,
    ) -> list[dict]:
        query = """SELECT * FROM pull_requests
            WHERE project_id = $1 AND merged = TRUE AND created_at >= $2"""
        params: list = [project_id, since]
        if scope:
            params.append(f"%{scope.lower()}%")
            query += " AND (LOWER(title) LIKE $3 OR LOWER(body) LIKE $3)"
        params.append(limit)
        query += f" ORDER BY created_at DESC, number DESC LIMIT ${len(params)}"
        rows = [dict(r) for r in await self.db.fetch(query, *params)]

        for row in rows:
            row["merged"] = bool(row.get("merged"))
            linked = await self.db.fetch(
                f"""SELECT {_ISSUE_COLUMNS} FROM issues
                    JOIN pull_request_issues pri
                      ON pri.project_id = issues.project_id AND pri.issue_number = issues.number
                    WHERE pri.project_id = $1 AND pri.pr_number = $2
                    ORDER BY issues.number""",
                project_id, row["number"],
            )
            row["linked_issues"] = [self._issues._row_to_dict(r) for r in linked]
        return rows

    async def count_opened_since(self, project_id: str, since: str) -> int:
        value = await self.db.fetchval(
            "SELECT COUNT(*) FROM pull_requests WHERE project_id = $1 AND created_at >= $2",
            project_id, since,
        )
        return int(value or 0)

    async def count_merged_since(self, project_id: str, since: str) -> int:
        value = await self.db.fetchval(
            "SELECT COUNT(*) FROM pull_requests WHERE project_id = $1 AND merged = TRUE AND created_at >= $2",
            project_id, since,
        )
        return int(value or 0)
