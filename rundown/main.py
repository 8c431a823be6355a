"""Rundown FastAPI service — main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from rundown import config
from rundown.routers.briefing import briefing_router
from rundown.routers.features import features_router, project_groups_router
from rundown.routers.sessions import sessions_router

from rundown.db import connection, migrations
from rundown.project import ProjectIdentity
from rundown.observability import initialize as initialize_observability, shutdown as shutdown_observability

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("rundown")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Rundown service starting up")
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await migrations.run_migrations(db)

    # 3. Resolve which project briefings default to
    app.state.identity = ProjectIdentity(override=config.PROJECT_ID)
    logger.info(f"Default project: {app.state.identity.detect()}")

    yield

    logger.info("Rundown service shutting down")
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="Rundown API",
    description="Feature mapping and project briefings for agent work sessions",
    version="0.1.0",
    lifespan=lifespan,
)

# Register routers
app.include_router(briefing_router)
app.include_router(features_router)
app.include_router(project_groups_router)
app.include_router(sessions_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
        "embeddings": "configured" if config.OPENAI_API_KEY else "keyword-fallback",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("rundown.main:app", host=config.HOST, port=config.PORT, reload=False)
