"""Briefing API router."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from rundown import config
from rundown.db import connection
from rundown.models import AgentSession, BriefingOptions, ProjectContext
from rundown.project import ProjectIdentity
from rundown.services.distill import build_briefing

logger = logging.getLogger("rundown.briefing")

briefing_router = APIRouter(prefix="/api/briefing", tags=["briefing"])


class BriefingResponse(BaseModel):
    context: ProjectContext
    lastSession: Optional[AgentSession] = None


def get_identity(request: Request) -> ProjectIdentity:
    identity = getattr(request.app.state, "identity", None)
    if identity is None:
        raise HTTPException(status_code=503, detail="Project identity not initialized")
    return identity


@briefing_router.get("", response_model=BriefingResponse)
async def get_briefing(
    request: Request,
    scope: Optional[str] = None,
    since: Optional[str] = None,
    project: Optional[str] = None,
):
    """Distilled project context for the start of a working session."""
    identity = get_identity(request)
    db = await connection.get_connection()
    options = BriefingOptions(scope=scope, since=since, project=project)
    try:
        briefing = await asyncio.wait_for(
            build_briefing(db, options, identity=identity),
            timeout=config.BRIEFING_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.warning(f"Briefing timed out after {config.BRIEFING_TIMEOUT_SECONDS}s")
        raise HTTPException(status_code=504, detail="Briefing timed out")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return BriefingResponse(context=briefing.context, lastSession=briefing.last_session)
