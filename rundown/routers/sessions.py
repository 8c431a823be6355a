"""Agent session tracking API router."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from rundown.db import connection
from rundown.models import AgentSession
from rundown.routers.briefing import get_identity
from rundown.services import sessions as session_service

logger = logging.getLogger("rundown.sessions")

sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])


class StartSessionRequest(BaseModel):
    scope: list[str] = Field(default_factory=list)
    project: Optional[str] = None


class SessionUpdateRequest(BaseModel):
    scope: Optional[list[str]] = None
    filesEdited: Optional[list[str]] = None
    decisionsMade: Optional[list[str]] = None
    openItems: Optional[list[str]] = None
    issuesReferenced: Optional[list[str]] = None
    toolsUsed: Optional[list[str]] = None
    summary: Optional[str] = None

    def list_fields(self) -> dict[str, Optional[list[str]]]:
        return {
            "scope": self.scope,
            "files_edited": self.filesEdited,
            "decisions_made": self.decisionsMade,
            "open_items": self.openItems,
            "issues_referenced": self.issuesReferenced,
            "tools_used": self.toolsUsed,
        }


@sessions_router.post("", response_model=AgentSession)
async def start_session(request: Request, req: StartSessionRequest):
    identity = get_identity(request)
    db = await connection.get_connection()
    return await session_service.start_session(db, req.scope, identity.resolve(req.project))


@sessions_router.get("", response_model=list[AgentSession])
async def list_sessions(request: Request, limit: int = 5, project: Optional[str] = None):
    identity = get_identity(request)
    db = await connection.get_connection()
    return await session_service.get_recent_sessions(db, identity.resolve(project), limit=max(1, min(limit, 100)))


@sessions_router.get("/{session_id}", response_model=AgentSession)
async def get_session(session_id: str):
    db = await connection.get_connection()
    session = await session_service.get_session(db, session_id)
    if not session:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
    return session


@sessions_router.patch("/{session_id}", response_model=AgentSession)
async def update_session(session_id: str, req: SessionUpdateRequest):
    db = await connection.get_connection()
    try:
        return await session_service.update_session(db, session_id, req.summary, **req.list_fields())
    except LookupError:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")


@sessions_router.post("/{session_id}/end", response_model=AgentSession)
async def end_session(session_id: str, req: Optional[SessionUpdateRequest] = None):
    req = req or SessionUpdateRequest()
    lists = req.list_fields()
    lists.pop("scope")
    db = await connection.get_connection()
    try:
        return await session_service.end_session(db, session_id, req.summary, **lists)
    except LookupError:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
