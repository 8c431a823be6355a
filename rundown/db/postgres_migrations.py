"""PostgreSQL schema creation and versioning.

Mirrors sqlite_migrations table-for-table; timestamps stay ISO-8601 text so
both backends compare them the same way.
"""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("rundown.db")

SCHEMA_VERSION = 3

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS features (
    id                    TEXT PRIMARY KEY,
    project_id            TEXT NOT NULL,
    name                  TEXT NOT NULL,
    description           TEXT DEFAULT '',
    related_keywords_json TEXT DEFAULT '[]',
    priority              TEXT DEFAULT 'medium',
    created_at            TEXT NOT NULL,
    updated_at            TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_features_project ON features(project_id, name);

CREATE TABLE IF NOT EXISTS feature_code_mappings (
    id            SERIAL PRIMARY KEY,
    feature_id    TEXT NOT NULL REFERENCES features(id) ON DELETE CASCADE,
    file_path     TEXT NOT NULL,
    section_name  TEXT DEFAULT '',
    similarity    DOUBLE PRECISION DEFAULT 0.0,
    created_at    TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_code_mappings_feature ON feature_code_mappings(feature_id, similarity DESC);

CREATE TABLE IF NOT EXISTS issues (
    project_id           TEXT NOT NULL,
    number               INTEGER NOT NULL,
    title                TEXT NOT NULL DEFAULT '',
    body                 TEXT DEFAULT '',
    state                TEXT NOT NULL DEFAULT 'open',
    labels_json          TEXT DEFAULT '[]',
    detected_labels_json TEXT DEFAULT '[]',
    assignees_json       TEXT DEFAULT '[]',
    reactions_json       TEXT DEFAULT '{}',
    created_at           TEXT NOT NULL,
    updated_at           TEXT NOT NULL,
    PRIMARY KEY (project_id, number)
);

CREATE INDEX IF NOT EXISTS idx_issues_state ON issues(project_id, state, created_at DESC);

CREATE TABLE IF NOT EXISTS issue_thread_matches (
    project_id    TEXT NOT NULL,
    issue_number  INTEGER NOT NULL,
    thread_id     TEXT NOT NULL,
    similarity    DOUBLE PRECISION DEFAULT 0.0,
    PRIMARY KEY (project_id, issue_number, thread_id)
);

CREATE TABLE IF NOT EXISTS pull_requests (
    project_id  TEXT NOT NULL,
    number      INTEGER NOT NULL,
    title       TEXT NOT NULL DEFAULT '',
    body        TEXT DEFAULT '',
    state       TEXT DEFAULT 'open',
    merged      BOOLEAN DEFAULT FALSE,
    created_at  TEXT NOT NULL,
    merged_at   TEXT DEFAULT '',
    PRIMARY KEY (project_id, number)
);

CREATE INDEX IF NOT EXISTS idx_prs_created ON pull_requests(project_id, created_at DESC);

CREATE TABLE IF NOT EXISTS pull_request_issues (
    project_id    TEXT NOT NULL,
    pr_number     INTEGER NOT NULL,
    issue_number  INTEGER NOT NULL,
    PRIMARY KEY (project_id, pr_number, issue_number)
);

CREATE TABLE IF NOT EXISTS discussion_groups (
    id                    TEXT PRIMARY KEY,
    project_id            TEXT NOT NULL,
    suggested_title       TEXT DEFAULT '',
    github_issue_number   INTEGER,
    github_issue_json     TEXT,
    similarity            DOUBLE PRECISION,
    thread_count          INTEGER DEFAULT 0,
    signals_json          TEXT DEFAULT '[]',
    affects_features_json TEXT DEFAULT '[]',
    is_cross_cutting      BOOLEAN DEFAULT FALSE,
    created_at            TEXT NOT NULL,
    updated_at            TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_groups_project ON discussion_groups(project_id, created_at DESC);

CREATE TABLE IF NOT EXISTS group_threads (
    group_id          TEXT NOT NULL REFERENCES discussion_groups(id) ON DELETE CASCADE,
    thread_id         TEXT NOT NULL,
    thread_name       TEXT,
    similarity_score  DOUBLE PRECISION DEFAULT 0.0,
    url               TEXT,
    author            TEXT,
    sort_order        INTEGER DEFAULT 0,
    PRIMARY KEY (group_id, thread_id)
);

CREATE TABLE IF NOT EXISTS ungrouped_threads (
    project_id            TEXT NOT NULL,
    thread_id             TEXT NOT NULL,
    channel_id            TEXT,
    thread_name           TEXT,
    url                   TEXT,
    author                TEXT,
    timestamp             TEXT,
    reason                TEXT DEFAULT 'no_matches',
    top_issue_json        TEXT,
    affects_features_json TEXT DEFAULT '[]',
    created_at            TEXT NOT NULL,
    PRIMARY KEY (project_id, thread_id)
);

CREATE TABLE IF NOT EXISTS classified_threads (
    project_id     TEXT NOT NULL,
    thread_id      TEXT NOT NULL,
    thread_name    TEXT DEFAULT '',
    classified_at  TEXT NOT NULL,
    PRIMARY KEY (project_id, thread_id)
);

CREATE INDEX IF NOT EXISTS idx_classified_at ON classified_threads(project_id, classified_at);

CREATE TABLE IF NOT EXISTS agent_sessions (
    id                     TEXT PRIMARY KEY,
    project_id             TEXT NOT NULL,
    started_at             TEXT NOT NULL,
    ended_at               TEXT,
    scope_json             TEXT DEFAULT '[]',
    files_edited_json      TEXT DEFAULT '[]',
    decisions_made_json    TEXT DEFAULT '[]',
    open_items_json        TEXT DEFAULT '[]',
    issues_referenced_json TEXT DEFAULT '[]',
    tools_used_json        TEXT DEFAULT '[]',
    summary                TEXT
);

CREATE INDEX IF NOT EXISTS idx_agent_sessions_project ON agent_sessions(project_id, started_at DESC);

CREATE TABLE IF NOT EXISTS embeddings (
    entity_type       TEXT NOT NULL,
    entity_id         TEXT NOT NULL,
    content_hash      TEXT NOT NULL,
    provider_version  TEXT DEFAULT '',
    vector_json       TEXT NOT NULL,
    dimensions        INTEGER DEFAULT 0,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL,
    PRIMARY KEY (entity_type, entity_id)
);

CREATE INDEX IF NOT EXISTS idx_embeddings_version ON embeddings(entity_type, provider_version);
"""


async def run_migrations(db: asyncpg.Pool) -> None:
    """Create all tables. Idempotent."""
    async with db.acquire() as conn:
        await conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL, applied TIMESTAMPTZ NOT NULL DEFAULT now())"
        )
        current_version = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0

        if current_version >= SCHEMA_VERSION:
            logger.info(f"Schema is up to date (version {current_version})")
            return

        logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")
        async with conn.transaction():
            await conn.execute(_TABLES)
            await conn.execute("ALTER TABLE embeddings ADD COLUMN IF NOT EXISTS provider_version TEXT DEFAULT ''")
            await conn.execute("ALTER TABLE features ADD COLUMN IF NOT EXISTS priority TEXT DEFAULT 'medium'")
            await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
    logger.info(f"Migrations complete — schema version {SCHEMA_VERSION}")
