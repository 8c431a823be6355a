"""Pydantic models for catalog entities, groups and the briefing payload."""
from __future__ import annotations

import json
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

Priority = Literal["critical", "high", "medium", "low"]
NotePriority = Literal["high", "medium", "low"]
DecisionStatus = Literal["proposed", "implemented", "reverted"]


def _json_or_raw(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        token = value.strip()
        if not token:
            return None
        if token[0] in "[{":
            try:
                return json.loads(token)
            except ValueError:
                return value
    return value


def normalize_labels(value: Any) -> list[str]:
    """Flatten label payloads (strings, ``{"name": ...}`` objects, JSON text)."""
    raw = _json_or_raw(value)
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = raw.split(",")
    if isinstance(raw, dict):
        raw = [raw]
    labels: list[str] = []
    for item in raw if isinstance(raw, (list, tuple, set)) else []:
        if isinstance(item, dict):
            item = item.get("name")
        token = str(item or "").strip().lower()
        if token and token not in labels:
            labels.append(token)
    return labels


def normalize_reactions(value: Any) -> dict[str, float]:
    """Keep only numeric reaction counters; ``url`` and friends are dropped."""
    raw = _json_or_raw(value)
    if not isinstance(raw, dict):
        return {}
    reactions: dict[str, float] = {}
    for key, count in raw.items():
        if isinstance(count, bool) or not isinstance(count, (int, float)):
            continue
        reactions[str(key)] = count
    return reactions


def _string_list(value: Any) -> list[str]:
    raw = _json_or_raw(value)
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw]
    return [str(item) for item in raw if item is not None and str(item).strip()]


# ── Catalog ─────────────────────────────────────────────────────────

class FeatureRef(BaseModel):
    id: str
    name: str


GENERAL_FEATURE = FeatureRef(id="general", name="General")


class Feature(BaseModel):
    id: str
    name: str
    description: str = ""
    related_keywords: list[str] = Field(default_factory=list)
    priority: NotePriority = "medium"

    @field_validator("description", mode="before")
    @classmethod
    def _none_description(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("related_keywords", mode="before")
    @classmethod
    def _keywords(cls, value: Any) -> list[str]:
        return _string_list(value)

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, value: Any) -> str:
        token = str(value or "").strip().lower()
        return token if token in {"high", "medium", "low"} else "medium"

    def ref(self) -> FeatureRef:
        return FeatureRef(id=self.id, name=self.name)


class CodeMapping(BaseModel):
    feature_id: str
    file_path: str
    section_name: str = ""
    similarity: float = 0.0


# ── Groups and threads ──────────────────────────────────────────────

class GroupIssue(BaseModel):
    number: int
    title: str = ""
    url: str = ""
    state: str = "open"
    labels: list[str] = Field(default_factory=list)

    @field_validator("labels", mode="before")
    @classmethod
    def _labels(cls, value: Any) -> list[str]:
        return normalize_labels(value)


class GroupThread(BaseModel):
    thread_id: str
    thread_name: Optional[str] = None
    similarity_score: float = 0.0
    url: Optional[str] = None
    author: Optional[str] = None


class GroupSignal(BaseModel):
    source: str
    id: str
    title: str = ""
    url: str = ""


class Group(BaseModel):
    id: str
    suggested_title: str = ""
    github_issue: Optional[GroupIssue] = None
    similarity: Optional[float] = None
    thread_count: int = 0
    created_at: str = ""
    threads: list[GroupThread] = Field(default_factory=list)
    signals: list[GroupSignal] = Field(default_factory=list)
    affects_features: list[FeatureRef] = Field(default_factory=list)
    is_cross_cutting: bool = False

    @field_validator("suggested_title", mode="before")
    @classmethod
    def _none_title(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @model_validator(mode="after")
    def _default_thread_count(self) -> "Group":
        if not self.thread_count and self.threads:
            self.thread_count = len(self.threads)
        return self


class TopIssue(BaseModel):
    number: int
    title: str = ""
    similarity_score: float = 0.0


class UngroupedThread(BaseModel):
    thread_id: str
    channel_id: Optional[str] = None
    thread_name: Optional[str] = None
    url: Optional[str] = None
    author: Optional[str] = None
    timestamp: Optional[str] = None
    reason: Literal["no_matches", "below_threshold"] = "no_matches"
    top_issue: Optional[TopIssue] = None
    affects_features: list[FeatureRef] = Field(default_factory=list)


# ── Tracker records ─────────────────────────────────────────────────

class TrackedIssue(BaseModel):
    """Issue record normalized at the storage boundary."""

    number: int
    title: str = ""
    body: str = ""
    state: Literal["open", "closed"] = "open"
    labels: list[str] = Field(default_factory=list)
    detected_labels: list[str] = Field(default_factory=list)
    assignees: list[str] = Field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""
    reactions: dict[str, float] = Field(default_factory=dict)
    linked_threads: list[str] = Field(default_factory=list)

    @field_validator("title", "body", mode="before")
    @classmethod
    def _none_text(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("state", mode="before")
    @classmethod
    def _state(cls, value: Any) -> str:
        return "closed" if str(value or "").strip().lower() == "closed" else "open"

    @field_validator("labels", "detected_labels", mode="before")
    @classmethod
    def _labels(cls, value: Any) -> list[str]:
        return normalize_labels(value)

    @field_validator("assignees", mode="before")
    @classmethod
    def _assignees(cls, value: Any) -> list[str]:
        raw = _json_or_raw(value)
        if isinstance(raw, list):
            raw = [item.get("login") if isinstance(item, dict) else item for item in raw]
        return _string_list(raw)

    @field_validator("linked_threads", mode="before")
    @classmethod
    def _threads(cls, value: Any) -> list[str]:
        return _string_list(value)

    @field_validator("reactions", mode="before")
    @classmethod
    def _reactions(cls, value: Any) -> dict[str, float]:
        return normalize_reactions(value)

    @property
    def reaction_count(self) -> int:
        # GitHub payloads carry a precomputed total next to per-emoji counts.
        if "total_count" in self.reactions:
            return int(self.reactions["total_count"])
        return int(sum(self.reactions.values()))

    @property
    def all_labels(self) -> list[str]:
        merged: list[str] = []
        for label in [*self.labels, *self.detected_labels]:
            if label not in merged:
                merged.append(label)
        return merged


class PullRequest(BaseModel):
    number: int
    title: str = ""
    body: str = ""
    state: str = "closed"
    merged: bool = False
    created_at: str = ""
    merged_at: str = ""
    linked_issues: list[TrackedIssue] = Field(default_factory=list)

    @field_validator("title", "body", "merged_at", mode="before")
    @classmethod
    def _none_text(cls, value: Any) -> str:
        return "" if value is None else str(value)


# ── Sessions ────────────────────────────────────────────────────────

class AgentSession(BaseModel):
    session_id: str
    project_id: str
    started_at: str
    ended_at: Optional[str] = None
    scope: list[str] = Field(default_factory=list)
    files_edited: list[str] = Field(default_factory=list)
    decisions_made: list[str] = Field(default_factory=list)
    open_items: list[str] = Field(default_factory=list)
    issues_referenced: list[str] = Field(default_factory=list)
    tools_used: list[str] = Field(default_factory=list)
    summary: Optional[str] = None


# ── Briefing payload ────────────────────────────────────────────────

class BriefingOptions(BaseModel):
    scope: Optional[str] = None
    since: Optional[str] = None
    project: Optional[str] = None


class Decision(BaseModel):
    what: str
    why: str
    when: str
    status: DecisionStatus = "implemented"  # only "implemented" is produced today
    open_items: list[str] = Field(default_factory=list)


class ActiveIssue(BaseModel):
    id: str
    summary: str
    reports: int
    source: str
    priority: Priority
    labels: list[str] = Field(default_factory=list)
    assignees: list[str] = Field(default_factory=list)
    score: int = 0


class UserSignal(BaseModel):
    theme: str
    count: int
    period: str
    summary: str
    sources: list[str] = Field(default_factory=list)


class CodebaseNote(BaseModel):
    file: Optional[str] = None
    area: Optional[str] = None
    note: str
    priority: NotePriority = "medium"


class RecentActivity(BaseModel):
    issues_opened: int = 0
    issues_closed: int = 0
    prs_opened: int = 0
    prs_merged: int = 0
    discord_threads: int = 0
    period: str = ""


class ProjectContext(BaseModel):
    project: str
    focus: Optional[str] = None
    last_updated: str
    decisions: list[Decision] = Field(default_factory=list)
    active_issues: list[ActiveIssue] = Field(default_factory=list)
    user_signals: list[UserSignal] = Field(default_factory=list)
    codebase_notes: list[CodebaseNote] = Field(default_factory=list)
    recent_activity: RecentActivity = Field(default_factory=RecentActivity)
    preferences: dict[str, str] = Field(default_factory=dict)


class Briefing(BaseModel):
    context: ProjectContext
    last_session: Optional[AgentSession] = None
