"""PostgreSQL implementation of AgentSessionRepository."""
from __future__ import annotations

import json

import asyncpg

from rundown.db.repositories.agent_sessions import LIST_FIELDS


class PostgresAgentSessionRepository:
    """PostgreSQL-backed bookkeeping for agent work sessions."""

    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def create(self, session_data: dict) -> None:
        await self.db.execute(
            """INSERT INTO agent_sessions (
                id, project_id, started_at, ended_at,
                scope_json, files_edited_json, decisions_made_json,
                open_items_json, issues_referenced_json, tools_used_json, summary
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)""",
            session_data["session_id"],
            session_data["project_id"],
            session_data["started_at"],
            session_data.get("ended_at"),
            *(json.dumps(session_data.get(name) or []) for name in LIST_FIELDS),
            session_data.get("summary"),
        )

    async def update(self, session_data: dict) -> None:
        await self.db.execute(
            """UPDATE agent_sessions SET
                ended_at = $1,
                scope_json = $2, files_edited_json = $3, decisions_made_json = $4,
                open_items_json = $5, issues_referenced_json = $6, tools_used_json = $7,
                summary = $8
               WHERE id = $9""",
            session_data.get("ended_at"),
            *(json.dumps(session_data.get(name) or []) for name in LIST_FIELDS),
            session_data.get("summary"),
            session_data["session_id"],
        )

    async def get_by_id(self, session_id: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM agent_sessions WHERE id = $1", session_id)
        return self._row_to_dict(row) if row else None

    async def list_recent(self, project_id: str, limit: int = 5) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT * FROM agent_sessions WHERE project_id = $1
               ORDER BY started_at DESC, id DESC LIMIT $2""",
            project_id, limit,
        )
        return [self._row_to_dict(r) for r in rows]

    async def get_last(self, project_id: str) -> dict | None:
        rows = await self.list_recent(project_id, limit=1)
        return rows[0] if rows else None

    def _row_to_dict(self, row) -> dict:
        d = dict(row)
        d["session_id"] = d.pop("id")
        for name in LIST_FIELDS:
            d[name] = json.loads(d.pop(f"{name}_json") or "[]")
        return d
