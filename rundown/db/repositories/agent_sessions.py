"""SQLite implementation of AgentSessionRepository."""
from __future__ import annotations

import json

import aiosqlite

LIST_FIELDS = (
    "scope",
    "files_edited",
    "decisions_made",
    "open_items",
    "issues_referenced",
    "tools_used",
)


class SqliteAgentSessionRepository:
    """SQLite-backed bookkeeping for agent work sessions."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def create(self, session_data: dict) -> None:
        await self.db.execute(
            """INSERT INTO agent_sessions (
                id, project_id, started_at, ended_at,
                scope_json, files_edited_json, decisions_made_json,
                open_items_json, issues_referenced_json, tools_used_json, summary
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                session_data["session_id"],
                session_data["project_id"],
                session_data["started_at"],
                session_data.get("ended_at"),
                *(json.dumps(session_data.get(name) or []) for name in LIST_FIELDS),
                session_data.get("summary"),
            ),
        )
        await self.db.commit()

    async def update(self, session_data: dict) -> None:
        await self.db.execute(
            """UPDATE agent_sessions SET
                ended_at = ?,
                scope_json = ?, files_edited_json = ?, decisions_made_json = ?,
                open_items_json = ?, issues_referenced_json = ?, tools_used_json = ?,
                summary = ?
               WHERE id = ?""",
            (
                session_data.get("ended_at"),
                *(json.dumps(session_data.get(name) or []) for name in LIST_FIELDS),
                session_data.get("summary"),
                session_data["session_id"],
            ),
        )
        await self.db.commit()

    async def get_by_id(self, session_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM agent_sessions WHERE id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_dict(row) if row else None

    async def list_recent(self, project_id: str, limit: int = 5) -> list[dict]:
        async with self.db.execute(
            """SELECT * FROM agent_sessions WHERE project_id = ?
               ORDER BY started_at DESC, id DESC LIMIT ?""",
            (project_id, limit),
        ) as cur:
            return [self._row_to_dict(r) for r in await cur.fetchall()]

    async def get_last(self, project_id: str) -> dict | None:
        rows = await self.list_recent(project_id, limit=1)
        return rows[0] if rows else None

    def _row_to_dict(self, row) -> dict:
        d = dict(row)
        d["session_id"] = d.pop("id")
        for name in LIST_FIELDS:
            d[name] = json.loads(d.pop(f"{name}_json") or "[]")
        return d
