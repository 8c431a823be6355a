"""Repository package for database access."""

from .embeddings import SqliteEmbeddingRepository
from .features import SqliteFeatureRepository
from .issues import SqliteIssueRepository
from .pull_requests import SqlitePullRequestRepository
from .groups import SqliteGroupRepository
from .threads import SqliteThreadRepository
from .agent_sessions import SqliteAgentSessionRepository

__all__ = [
    "SqliteEmbeddingRepository",
    "SqliteFeatureRepository",
    "SqliteIssueRepository",
    "SqlitePullRequestRepository",
    "SqliteGroupRepository",
    "SqliteThreadRepository",
    "SqliteAgentSessionRepository",
]
