"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any
import aiosqlite

from rundown.db.repositories.embeddings import SqliteEmbeddingRepository
from rundown.db.repositories.features import SqliteFeatureRepository
from rundown.db.repositories.issues import SqliteIssueRepository
from rundown.db.repositories.pull_requests import SqlitePullRequestRepository
from rundown.db.repositories.groups import SqliteGroupRepository
from rundown.db.repositories.threads import SqliteThreadRepository
from rundown.db.repositories.agent_sessions import SqliteAgentSessionRepository


def get_embedding_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteEmbeddingRepository(db)
    from rundown.db.repositories.postgres.embeddings import PostgresEmbeddingRepository
    return PostgresEmbeddingRepository(db)

def get_feature_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteFeatureRepository(db)
    from rundown.db.repositories.postgres.features import PostgresFeatureRepository
    return PostgresFeatureRepository(db)

def get_issue_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteIssueRepository(db)
    from rundown.db.repositories.postgres.issues import PostgresIssueRepository
    return PostgresIssueRepository(db)

def get_pull_request_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqlitePullRequestRepository(db)
    from rundown.db.repositories.postgres.pull_requests import PostgresPullRequestRepository
    return PostgresPullRequestRepository(db)

def get_group_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteGroupRepository(db)
    from rundown.db.repositories.postgres.groups import PostgresGroupRepository
    return PostgresGroupRepository(db)

def get_thread_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteThreadRepository(db)
    from rundown.db.repositories.postgres.threads import PostgresThreadRepository
    return PostgresThreadRepository(db)

def get_agent_session_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteAgentSessionRepository(db)
    from rundown.db.repositories.postgres.agent_sessions import PostgresAgentSessionRepository
    return PostgresAgentSessionRepository(db)
