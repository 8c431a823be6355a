"""Assign catalog features to discussion groups and ungrouped threads.

Semantic mode embeds every feature and group and keeps the features whose
cosine similarity clears ``min_similarity``. Keyword mode is the lexical
fallback used when no embedding provider is configured.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Iterable, Optional, Sequence

from rundown import config
from rundown.db.factory import (
    get_embedding_repository,
    get_feature_repository,
    get_group_repository,
    get_thread_repository,
)
from rundown.errors import ConfigurationError, ProviderError
from rundown.models import GENERAL_FEATURE, Feature, FeatureRef, Group, UngroupedThread
from rundown.observability import start_span
from rundown.services.embeddings import (
    EmbeddingProvider,
    VectorCache,
    build_embedding_provider,
    content_hash,
    embed_in_batches,
)
from rundown.services.similarity import cosine_similarity

logger = logging.getLogger("rundown.features")

MAX_FEATURE_MATCHES = 5

FEATURE_ENTITY = "feature"
GROUP_ENTITY = "group"
THREAD_ENTITY = "thread"


class FallbackMode(str, Enum):
    """What to do when no embedding provider is available."""

    STRICT = "strict"
    BEST_EFFORT = "best_effort"


def parse_mode(value: Any, default: FallbackMode = FallbackMode.STRICT) -> FallbackMode:
    if isinstance(value, FallbackMode):
        return value
    token = str(value or "").strip().lower().replace("-", "_")
    for mode in FallbackMode:
        if mode.value == token:
            return mode
    return default


# ── Text builders ──────────────────────────────────────────────────

def feature_text(feature: Feature) -> str:
    """Canonical text embedded for a feature."""
    name = feature.name.strip()
    separator = " " if name.endswith(":") else ": "
    text = name
    if feature.description:
        text += f"{separator}{feature.description}"
    if feature.related_keywords:
        text += f" Keywords: {', '.join(feature.related_keywords)}"
    return text


def group_text(group: Group) -> str:
    parts: list[str] = []
    if group.suggested_title and group.suggested_title.strip():
        parts.append(group.suggested_title)
    if group.github_issue and group.github_issue.title.strip():
        parts.append(group.github_issue.title)
    parts.extend(t.thread_name for t in group.threads if t.thread_name and t.thread_name.strip())
    parts.extend(s.title for s in group.signals if s.title and s.title.strip())
    return " ".join(parts)


def thread_text(thread: UngroupedThread) -> str:
    parts: list[str] = []
    if thread.thread_name and thread.thread_name.strip():
        parts.append(thread.thread_name)
    if thread.top_issue and thread.top_issue.title.strip():
        parts.append(thread.top_issue.title)
    return " ".join(parts)


def keyword_terms(feature: Feature) -> list[str]:
    terms: list[str] = []
    for raw in [feature.name, *feature.related_keywords]:
        token = (raw or "").strip().lower()
        if token and token not in terms:
            terms.append(token)
    return terms


# ── Ranking ────────────────────────────────────────────────────────

def _rank(scored: Iterable[tuple[int, Feature, float]], threshold: float) -> list[FeatureRef]:
    """Keep scores >= threshold, best first, catalog order breaking ties."""
    kept = [item for item in scored if item[2] >= threshold]
    kept.sort(key=lambda item: (-item[2], item[0]))
    refs = [feature.ref() for _, feature, _ in kept[:MAX_FEATURE_MATCHES]]
    return refs or [GENERAL_FEATURE]


def _keyword_matches(text: str, features: Sequence[Feature], min_score: float) -> list[FeatureRef]:
    haystack = text.lower()
    if not haystack.strip():
        return [GENERAL_FEATURE]
    scored: list[tuple[int, Feature, float]] = []
    for index, feature in enumerate(features):
        terms = keyword_terms(feature)
        if not terms:
            continue
        matched = sum(1 for term in terms if term in haystack)
        scored.append((index, feature, matched / len(terms)))
    return _rank(scored, min_score)


def _semantic_matches(
    vector: Sequence[float],
    features: Sequence[Feature],
    feature_vectors: dict[str, list[float]],
    min_similarity: float,
) -> list[FeatureRef]:
    scored = [
        (index, feature, cosine_similarity(vector, feature_vectors[feature.id]))
        for index, feature in enumerate(features)
        if feature.id in feature_vectors
    ]
    return _rank(scored, min_similarity)


def _with_features(group: Group, refs: list[FeatureRef]) -> Group:
    return group.model_copy(update={"affects_features": refs, "is_cross_cutting": len(refs) > 1})


def _coerce(items: Sequence[Any], model: type) -> list:
    return [item if isinstance(item, model) else model.model_validate(item) for item in items]


def _require_provider(provider: Optional[EmbeddingProvider], mode: FallbackMode) -> bool:
    """True when semantic mode can run; raises in strict mode without a provider."""
    if provider is not None:
        return True
    if mode == FallbackMode.STRICT:
        raise ConfigurationError(
            "OPENAI_API_KEY is required for semantic feature mapping",
            setting="OPENAI_API_KEY",
        )
    return False


# ── Feature embeddings ─────────────────────────────────────────────

async def compute_feature_embeddings(
    features: Sequence[Feature],
    provider: EmbeddingProvider,
    cache: Optional[VectorCache] = None,
    batch_size: int = config.FEATURE_BATCH_SIZE,
) -> dict[str, list[float]]:
    """Return ``feature_id -> vector``; features that cannot be embedded are absent."""
    vectors: dict[str, list[float]] = {}
    pending: list[tuple[Feature, str, str]] = []
    for feature in features:
        text = feature_text(feature)
        text_hash = content_hash(text)
        cached = await cache.lookup(feature.id, text_hash) if cache else None
        if cached:
            vectors[feature.id] = cached
        else:
            pending.append((feature, text, text_hash))

    if pending:
        logger.info(f"Embedding {len(pending)} of {len(features)} features")
        results = await embed_in_batches(provider, [text for _, text, _ in pending], batch_size)
        for (feature, _, text_hash), vector in zip(pending, results):
            if vector is None:
                continue
            vectors[feature.id] = vector
            if cache:
                await cache.put(feature.id, vector, text_hash)

    missing = [f.name for f in features if f.id not in vectors]
    if missing:
        logger.warning(f"No embedding for {len(missing)} feature(s): {', '.join(missing)}")
    return vectors


# ── Groups ─────────────────────────────────────────────────────────

def map_groups_by_keywords(
    groups: Sequence[Group | dict],
    features: Sequence[Feature | dict],
    min_score: float = config.KEYWORD_MIN_SCORE,
) -> list[Group]:
    """Lexical fallback: score = matched terms / total terms per feature."""
    group_models = _coerce(groups, Group)
    feature_models = _coerce(features, Feature)
    if not feature_models:
        return [_with_features(g, [GENERAL_FEATURE]) for g in group_models]
    return [
        _with_features(g, _keyword_matches(group_text(g), feature_models, min_score))
        for g in group_models
    ]


async def map_groups_to_features(
    groups: Sequence[Group | dict],
    features: Sequence[Feature | dict],
    min_similarity: float = 0.6,
    *,
    provider: Optional[EmbeddingProvider] = None,
    cache: Optional[VectorCache] = None,
    group_cache: Optional[VectorCache] = None,
    mode: FallbackMode = FallbackMode.STRICT,
    batch_size: int = config.FEATURE_BATCH_SIZE,
) -> list[Group]:
    """Attach ``affects_features`` and ``is_cross_cutting`` to every group."""
    group_models = _coerce(groups, Group)
    feature_models = _coerce(features, Feature)

    if not feature_models:
        logger.info("No features provided, assigning every group to General")
        return [_with_features(g, [GENERAL_FEATURE]) for g in group_models]

    if not _require_provider(provider, mode):
        logger.warning("No embedding provider configured, using keyword matching for groups")
        return map_groups_by_keywords(group_models, feature_models, config.KEYWORD_MIN_SCORE)

    with start_span("rundown.map_groups", {"groups": len(group_models), "features": len(feature_models)}):
        feature_vectors = await compute_feature_embeddings(feature_models, provider, cache, batch_size)
        mapped: list[Group] = []
        for group in group_models:
            text = group_text(group)
            if not text.strip():
                mapped.append(_with_features(group, [GENERAL_FEATURE]))
                continue

            text_hash = content_hash(text)
            vector = await group_cache.lookup(group.id, text_hash) if group_cache else None
            if vector is None:
                try:
                    vector = await provider.embed_one(text)
                except ProviderError as exc:
                    logger.warning(f"Group {group.id}: embedding failed, assigning General: {exc}")
                    mapped.append(_with_features(group, [GENERAL_FEATURE]))
                    continue
                if group_cache:
                    await group_cache.put(group.id, vector, text_hash)

            refs = _semantic_matches(vector, feature_models, feature_vectors, min_similarity)
            logger.debug(f"Group {group.id} matched {[r.id for r in refs]}")
            mapped.append(_with_features(group, refs))

    general_only = sum(1 for g in mapped if g.affects_features == [GENERAL_FEATURE])
    cross_cutting = sum(1 for g in mapped if g.is_cross_cutting)
    logger.info(
        f"Mapped {len(mapped)} groups to features: {len(mapped) - general_only} specific, "
        f"{general_only} General only, {cross_cutting} cross-cutting"
    )
    return mapped


# ── Ungrouped threads ──────────────────────────────────────────────

def map_threads_by_keywords(
    threads: Sequence[UngroupedThread | dict],
    features: Sequence[Feature | dict],
    min_score: float = config.KEYWORD_MIN_SCORE,
) -> list[UngroupedThread]:
    thread_models = _coerce(threads, UngroupedThread)
    feature_models = _coerce(features, Feature)
    return [
        t.model_copy(update={"affects_features": _keyword_matches(thread_text(t), feature_models, min_score)})
        for t in thread_models
    ]


async def map_threads_to_features(
    threads: Sequence[UngroupedThread | dict],
    features: Sequence[Feature | dict],
    min_similarity: float = 0.6,
    *,
    provider: Optional[EmbeddingProvider] = None,
    cache: Optional[VectorCache] = None,
    thread_cache: Optional[VectorCache] = None,
    mode: FallbackMode = FallbackMode.BEST_EFFORT,
    batch_size: int = config.THREAD_BATCH_SIZE,
) -> list[UngroupedThread]:
    """Attach ``affects_features`` to threads that never joined a group."""
    thread_models = _coerce(threads, UngroupedThread)
    feature_models = _coerce(features, Feature)

    if not feature_models or not thread_models:
        return [t.model_copy(update={"affects_features": [GENERAL_FEATURE]}) for t in thread_models]

    if not _require_provider(provider, mode):
        logger.warning("No embedding provider configured, using keyword matching for threads")
        return map_threads_by_keywords(thread_models, feature_models, config.KEYWORD_MIN_SCORE)

    feature_vectors = await compute_feature_embeddings(feature_models, provider, cache)

    vectors: dict[str, list[float]] = {}
    pending: list[tuple[UngroupedThread, str, str]] = []
    for thread in thread_models:
        text = thread_text(thread)
        if not text.strip():
            continue
        text_hash = content_hash(text)
        cached = await thread_cache.lookup(thread.thread_id, text_hash) if thread_cache else None
        if cached:
            vectors[thread.thread_id] = cached
        else:
            pending.append((thread, text, text_hash))

    if pending:
        results = await embed_in_batches(provider, [text for _, text, _ in pending], batch_size)
        for (thread, _, text_hash), vector in zip(pending, results):
            if vector is None:
                continue
            vectors[thread.thread_id] = vector
            if thread_cache:
                await thread_cache.put(thread.thread_id, vector, text_hash)

    mapped: list[UngroupedThread] = []
    for thread in thread_models:
        vector = vectors.get(thread.thread_id)
        refs = (
            _semantic_matches(vector, feature_models, feature_vectors, min_similarity)
            if vector is not None
            else [GENERAL_FEATURE]
        )
        mapped.append(thread.model_copy(update={"affects_features": refs}))
    logger.info(f"Mapped {len(mapped)} ungrouped threads to features")
    return mapped


# ── Persistence-backed service ─────────────────────────────────────

class FeatureMappingService:
    """Loads a project's groups/threads and features, maps them and writes back."""

    def __init__(self, db: Any, *, provider: Optional[EmbeddingProvider] = None, settings: Any = config):
        self.db = db
        self.settings = settings
        self._provider = provider

    def _resolve_provider(self) -> Optional[EmbeddingProvider]:
        if self._provider is not None:
            return self._provider
        try:
            self._provider = build_embedding_provider(self.settings)
        except ConfigurationError as exc:
            logger.info(f"Embedding provider unavailable: {exc}")
            return None
        return self._provider

    def _caches(self, provider: Optional[EmbeddingProvider]) -> dict[str, VectorCache]:
        repo = get_embedding_repository(self.db)
        version = provider.provider_version if provider else ""
        return {
            entity: VectorCache(repo, entity, version)
            for entity in (FEATURE_ENTITY, GROUP_ENTITY, THREAD_ENTITY)
        }

    async def _features(self, project_id: str) -> list[Feature]:
        rows = await get_feature_repository(self.db).list_all(project_id)
        return [Feature.model_validate(row) for row in rows]

    async def map_project_groups(
        self,
        project_id: str,
        min_similarity: float | None = None,
        mode: FallbackMode | str | None = None,
    ) -> list[Group]:
        group_repo = get_group_repository(self.db)
        groups = [Group.model_validate(row) for row in await group_repo.list_all(project_id)]
        features = await self._features(project_id)
        provider = self._resolve_provider()
        caches = self._caches(provider)

        mapped = await map_groups_to_features(
            groups,
            features,
            min_similarity if min_similarity is not None else self.settings.FEATURE_MIN_SIMILARITY,
            provider=provider,
            cache=caches[FEATURE_ENTITY],
            group_cache=caches[GROUP_ENTITY],
            mode=parse_mode(mode or self.settings.FEATURE_MAPPING_MODE),
            batch_size=self.settings.FEATURE_BATCH_SIZE,
        )
        for group in mapped:
            await group_repo.update_feature_assignment(
                group.id,
                [ref.model_dump() for ref in group.affects_features],
                group.is_cross_cutting,
            )
        return mapped

    async def map_project_threads(
        self,
        project_id: str,
        min_similarity: float | None = None,
        mode: FallbackMode | str | None = None,
    ) -> list[UngroupedThread]:
        thread_repo = get_thread_repository(self.db)
        threads = [UngroupedThread.model_validate(row) for row in await thread_repo.list_ungrouped(project_id)]
        features = await self._features(project_id)
        provider = self._resolve_provider()
        caches = self._caches(provider)

        mapped = await map_threads_to_features(
            threads,
            features,
            min_similarity if min_similarity is not None else self.settings.FEATURE_MIN_SIMILARITY,
            provider=provider,
            cache=caches[FEATURE_ENTITY],
            thread_cache=caches[THREAD_ENTITY],
            mode=parse_mode(mode, FallbackMode.BEST_EFFORT),
            batch_size=self.settings.THREAD_BATCH_SIZE,
        )
        for thread in mapped:
            await thread_repo.update_ungrouped_features(
                project_id,
                thread.thread_id,
                [ref.model_dump() for ref in thread.affects_features],
            )
        return mapped

    async def aclose(self) -> None:
        closer = getattr(self._provider, "aclose", None)
        if closer is not None:
            await closer()
