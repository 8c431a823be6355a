"""Compress a project's issues, groups, changes and sessions into a briefing.

Every section is computed by an independent sub-scorer. The six run
concurrently and a failing one leaves its section empty.
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Optional, Sequence

from rundown import config
from rundown.date_utils import date_only, days_between, resolve_cutoff, utc_now
from rundown.db.factory import (
    get_agent_session_repository,
    get_feature_repository,
    get_group_repository,
    get_issue_repository,
    get_pull_request_repository,
    get_thread_repository,
)
from rundown.models import (
    GENERAL_FEATURE,
    ActiveIssue,
    Briefing,
    BriefingOptions,
    CodeMapping,
    CodebaseNote,
    Decision,
    Feature,
    Group,
    ProjectContext,
    PullRequest,
    RecentActivity,
    TrackedIssue,
    UserSignal,
)
from rundown.observability import record_distill, start_span
from rundown.project import ProjectIdentity
from rundown.services.sessions import get_last_session

logger = logging.getLogger("rundown.briefing")

MAX_ACTIVE_ISSUES = 10
MAX_USER_SIGNALS = 5
MAX_CODEBASE_NOTES = 5
MAX_DECISIONS = 5
MAX_ISSUE_LABELS = 5
MAX_NOTE_FEATURES = 10
MAX_NOTE_FILES = 3
UNGROUPED_REVIEW_THRESHOLD = 10
UNGROUPED_HIGH_THRESHOLD = 50

PRIORITY_WEIGHTS = {"critical": 4, "high": 3, "medium": 2, "low": 1}


# ── Active issues ──────────────────────────────────────────────────

def classify_priority(issue: TrackedIssue) -> str:
    """First matching rule wins."""
    labels = set(issue.all_labels)
    threads = len(issue.linked_threads)
    reactions = issue.reaction_count
    is_bug = "bug" in labels

    if labels & {"security", "regression"}:
        return "critical"
    if is_bug and (threads >= 3 or reactions >= 5):
        return "high"
    if is_bug or threads >= 2:
        return "high"
    if issue.assignees or issue.detected_labels:
        return "medium"
    return "low"


def score_issue(issue: TrackedIssue, priority: str | None = None) -> int:
    priority = priority or classify_priority(issue)
    return PRIORITY_WEIGHTS[priority] * 10 + len(issue.linked_threads) * 3 + issue.reaction_count


def rank_active_issues(issues: Sequence[TrackedIssue]) -> list[ActiveIssue]:
    ranked: list[ActiveIssue] = []
    for issue in issues:
        priority = classify_priority(issue)
        threads = len(issue.linked_threads)
        ranked.append(
            ActiveIssue(
                id=f"#{issue.number}",
                summary=issue.title,
                reports=threads + 1,
                source="github + discord" if threads > 0 else "github",
                priority=priority,
                labels=issue.all_labels[:MAX_ISSUE_LABELS],
                assignees=issue.assignees,
                score=score_issue(issue, priority),
            )
        )
    ranked.sort(key=lambda item: -item.score)
    return ranked[:MAX_ACTIVE_ISSUES]


async def distill_active_issues(db: Any, project_id: str, since: str, scope: Optional[str]) -> list[ActiveIssue]:
    rows = await get_issue_repository(db).list_open_since(
        project_id, since, scope, limit=MAX_ACTIVE_ISSUES * 2
    )
    return rank_active_issues([TrackedIssue.model_validate(row) for row in rows])


# ── User signals ───────────────────────────────────────────────────

def build_user_signals(groups: Sequence[Group], cutoff: datetime) -> list[UserSignal]:
    candidates = [g for g in groups if g.thread_count >= 2]
    candidates.sort(key=lambda g: -g.thread_count)
    period = f"since {cutoff.date().isoformat()}"
    signals: list[UserSignal] = []
    for group in candidates[:MAX_USER_SIGNALS]:
        names = [f.name for f in group.affects_features if f.id != GENERAL_FEATURE.id]
        signals.append(
            UserSignal(
                theme=group.suggested_title or group.id,
                count=group.thread_count,
                period=period,
                summary=f"Affects: {', '.join(names)}" if names else f"{group.thread_count} related threads grouped",
                sources=["discord", "github"] if group.github_issue else ["discord"],
            )
        )
    return signals


async def distill_user_signals(
    db: Any, project_id: str, since: str, scope: Optional[str], cutoff: datetime
) -> list[UserSignal]:
    rows = await get_group_repository(db).list_since(
        project_id, since, scope, limit=MAX_USER_SIGNALS * 3
    )
    return build_user_signals([Group.model_validate(row) for row in rows], cutoff)


# ── Codebase notes ─────────────────────────────────────────────────

def build_codebase_notes(
    feature_files: Sequence[tuple[Feature, list[str]]],
    ungrouped_count: int,
) -> list[CodebaseNote]:
    notes: list[CodebaseNote] = []
    for feature, files in feature_files:
        unique: list[str] = []
        for path in files:
            if path and path not in unique:
                unique.append(path)
        if not unique:
            continue
        notes.append(
            CodebaseNote(
                area=feature.name,
                note=f"Mapped to {len(unique)} file(s): {', '.join(unique[:MAX_NOTE_FILES])}",
                priority="high" if feature.priority == "high" else "medium",
            )
        )
    if ungrouped_count > UNGROUPED_REVIEW_THRESHOLD:
        notes.append(
            CodebaseNote(
                area="classification",
                note=f"{ungrouped_count} ungrouped threads need review",
                priority="high" if ungrouped_count > UNGROUPED_HIGH_THRESHOLD else "medium",
            )
        )
    return notes[:MAX_CODEBASE_NOTES]


async def distill_codebase_notes(db: Any, project_id: str, scope: Optional[str]) -> list[CodebaseNote]:
    feature_repo = get_feature_repository(db)
    rows = await feature_repo.list_all(project_id, scope=scope, limit=MAX_NOTE_FEATURES)
    feature_files: list[tuple[Feature, list[str]]] = []
    for row in rows:
        mappings = await feature_repo.get_code_mappings(row["id"], limit=MAX_NOTE_FILES)
        files = [CodeMapping.model_validate(m).file_path for m in mappings]
        feature_files.append((Feature.model_validate(row), files))
    ungrouped = await get_thread_repository(db).count_ungrouped(project_id)
    return build_codebase_notes(feature_files, ungrouped)


# ── Decisions ──────────────────────────────────────────────────────

def build_decisions(pull_requests: Sequence[PullRequest]) -> list[Decision]:
    decisions: list[Decision] = []
    for pr in pull_requests[:MAX_DECISIONS]:
        linked = [f"#{issue.number}" for issue in pr.linked_issues]
        decisions.append(
            Decision(
                what=pr.title,
                why=f"Addresses {', '.join(linked)}" if linked else "Direct improvement",
                when=date_only(pr.created_at),
                status="implemented",
                open_items=[f"#{i.number} still open" for i in pr.linked_issues if i.state == "open"],
            )
        )
    return decisions


async def distill_decisions(db: Any, project_id: str, since: str, scope: Optional[str]) -> list[Decision]:
    rows = await get_pull_request_repository(db).list_merged_since(
        project_id, since, scope, limit=MAX_DECISIONS * 2
    )
    return build_decisions([PullRequest.model_validate(row) for row in rows])


# ── Recent activity & preferences ──────────────────────────────────

async def distill_recent_activity(
    db: Any, project_id: str, since: str, cutoff: datetime, now: datetime
) -> RecentActivity:
    issues = get_issue_repository(db)
    prs = get_pull_request_repository(db)
    opened, closed, prs_opened, prs_merged, threads = await asyncio.gather(
        issues.count_opened_since(project_id, since),
        issues.count_closed_since(project_id, since),
        prs.count_opened_since(project_id, since),
        prs.count_merged_since(project_id, since),
        get_thread_repository(db).count_classified_since(project_id, since),
    )
    return RecentActivity(
        issues_opened=opened,
        issues_closed=closed,
        prs_opened=prs_opened,
        prs_merged=prs_merged,
        discord_threads=threads,
        period=f"last {days_between(cutoff, now)} days",
    )


async def load_preferences(db: Any, project_id: str) -> dict[str, str]:
    last = await get_agent_session_repository(db).get_last(project_id)
    scope = ", ".join((last or {}).get("scope") or [])
    return {"last_scope": scope or "none"}


# ── Assembly ───────────────────────────────────────────────────────

async def _timed(section: str, awaitable: Awaitable[Any]) -> Any:
    started = time.perf_counter()
    try:
        result = await awaitable
    except Exception:
        record_distill(section, False, (time.perf_counter() - started) * 1000)
        raise
    record_distill(section, True, (time.perf_counter() - started) * 1000)
    return result


async def distill_briefing(
    db: Any,
    options: BriefingOptions | None = None,
    *,
    identity: ProjectIdentity,
    now: datetime | None = None,
    settings: Any = config,
) -> ProjectContext:
    """Build the ``ProjectContext`` for one project.

    Raises ``ValueError`` for an unparseable ``since``; sub-scorer failures
    only empty their own section.
    """
    options = options or BriefingOptions()
    now = now or utc_now()
    cutoff = resolve_cutoff(options.since, now, settings.LOOKBACK_DAYS)
    since = cutoff.isoformat()
    scope = (options.scope or "").strip().lower() or None
    project_id = identity.resolve(options.project)

    sections: dict[str, tuple[Awaitable[Any], Any]] = {
        "active_issues": (distill_active_issues(db, project_id, since, scope), []),
        "user_signals": (distill_user_signals(db, project_id, since, scope, cutoff), []),
        "codebase_notes": (distill_codebase_notes(db, project_id, scope), []),
        "decisions": (distill_decisions(db, project_id, since, scope), []),
        "recent_activity": (
            distill_recent_activity(db, project_id, since, cutoff, now),
            RecentActivity(period=f"last {days_between(cutoff, now)} days"),
        ),
        "preferences": (load_preferences(db, project_id), {"last_scope": "none"}),
    }

    with start_span("rundown.distill", {"project": project_id, "scope": scope}):
        results = await asyncio.gather(
            *(_timed(name, awaitable) for name, (awaitable, _) in sections.items()),
            return_exceptions=True,
        )

    values: dict[str, Any] = {}
    for (name, (_, fallback)), result in zip(sections.items(), results):
        if isinstance(result, Exception):
            logger.warning(f"Briefing section '{name}' failed for {project_id}: {result}")
            values[name] = fallback
        elif isinstance(result, BaseException):
            raise result
        else:
            values[name] = result

    context = ProjectContext(
        project=project_id,
        focus=scope,
        last_updated=now.isoformat(),
        **values,
    )
    logger.info(
        f"Distilled briefing for {project_id}: {len(context.active_issues)} issues, "
        f"{len(context.user_signals)} signals, {len(context.codebase_notes)} notes, "
        f"{len(context.decisions)} decisions"
    )
    return context


async def build_briefing(
    db: Any,
    options: BriefingOptions | None = None,
    *,
    identity: ProjectIdentity,
    now: datetime | None = None,
    settings: Any = config,
) -> Briefing:
    """Distilled context plus the last recorded session for the same project."""
    context = await distill_briefing(db, options, identity=identity, now=now, settings=settings)
    try:
        last_session = await get_last_session(db, context.project)
    except Exception as exc:  # noqa: BLE001
        logger.warning(f"Could not load last session for {context.project}: {exc}")
        last_session = None
    return Briefing(context=context, last_session=last_session)
