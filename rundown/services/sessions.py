"""Bookkeeping for agent work sessions.

Tracks what an agent worked on so the next briefing can point at what changed
since then. Every session is scoped to a project id.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Iterable, Optional

from rundown.date_utils import utc_now
from rundown.db.factory import get_agent_session_repository
from rundown.db.repositories.agent_sessions import LIST_FIELDS
from rundown.models import AgentSession

logger = logging.getLogger("rundown.sessions")


def _merge(existing: Iterable[str], incoming: Optional[Iterable[str]]) -> list[str]:
    merged = list(existing or [])
    for item in incoming or []:
        if item not in merged:
            merged.append(item)
    return merged


async def _require(db: Any, session_id: str) -> dict:
    row = await get_agent_session_repository(db).get_by_id(session_id)
    if row is None:
        raise LookupError(f"Agent session not found: {session_id}")
    return row


async def start_session(db: Any, scope: Optional[list[str]], project_id: str) -> AgentSession:
    session = AgentSession(
        session_id=str(uuid.uuid4()),
        project_id=project_id,
        started_at=utc_now().isoformat(),
        scope=list(scope or []),
    )
    await get_agent_session_repository(db).create(session.model_dump())
    logger.info(f"Started agent session {session.session_id} for {project_id}")
    return session


async def update_session(db: Any, session_id: str, summary: Optional[str] = None, **lists: Optional[list[str]]) -> AgentSession:
    """Merge list fields into the session (set union, first-seen order)."""
    unknown = set(lists) - set(LIST_FIELDS)
    if unknown:
        raise TypeError(f"Unknown session fields: {', '.join(sorted(unknown))}")
    row = await _require(db, session_id)
    for name in LIST_FIELDS:
        row[name] = _merge(row.get(name) or [], lists.get(name))
    if summary is not None:
        row["summary"] = summary
    await get_agent_session_repository(db).update(row)
    return AgentSession.model_validate(row)


async def end_session(db: Any, session_id: str, summary: Optional[str] = None, **lists: Optional[list[str]]) -> AgentSession:
    """Close the session; provided lists replace the stored ones."""
    unknown = set(lists) - set(LIST_FIELDS)
    if unknown:
        raise TypeError(f"Unknown session fields: {', '.join(sorted(unknown))}")
    row = await _require(db, session_id)
    row["ended_at"] = utc_now().isoformat()
    for name, values in lists.items():
        if values is not None:
            row[name] = list(values)
    if summary is not None:
        row["summary"] = summary
    await get_agent_session_repository(db).update(row)
    logger.info(f"Ended agent session {session_id}")
    return AgentSession.model_validate(row)


async def get_session(db: Any, session_id: str) -> Optional[AgentSession]:
    row = await get_agent_session_repository(db).get_by_id(session_id)
    return AgentSession.model_validate(row) if row else None


async def get_recent_sessions(db: Any, project_id: str, limit: int = 5) -> list[AgentSession]:
    rows = await get_agent_session_repository(db).list_recent(project_id, limit=limit)
    return [AgentSession.model_validate(row) for row in rows]


async def get_last_session(db: Any, project_id: str) -> Optional[AgentSession]:
    row = await get_agent_session_repository(db).get_last(project_id)
    return AgentSession.model_validate(row) if row else None
