"""Feature mapping API router."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from rundown import config
from rundown.db import connection
from rundown.db.factory import get_embedding_repository
from rundown.errors import ConfigurationError
from rundown.models import Feature, Group, UngroupedThread
from rundown.services.embeddings import EmbeddingProvider, VectorCache, build_embedding_provider
from rundown.services.feature_mapper import (
    FEATURE_ENTITY,
    GROUP_ENTITY,
    THREAD_ENTITY,
    FallbackMode,
    FeatureMappingService,
    map_groups_to_features,
    map_threads_to_features,
    parse_mode,
)

logger = logging.getLogger("rundown.features")

features_router = APIRouter(prefix="/api/features", tags=["features"])
project_groups_router = APIRouter(prefix="/api/projects", tags=["features"])


class MapGroupsRequest(BaseModel):
    groups: list[Group] = Field(default_factory=list)
    features: list[Feature] = Field(default_factory=list)
    minSimilarity: Optional[float] = None
    mode: Optional[str] = None


class MapThreadsRequest(BaseModel):
    threads: list[UngroupedThread] = Field(default_factory=list)
    features: list[Feature] = Field(default_factory=list)
    minSimilarity: Optional[float] = None
    mode: Optional[str] = None


class MapProjectRequest(BaseModel):
    minSimilarity: Optional[float] = None
    mode: Optional[str] = None


def _build_provider() -> Optional[EmbeddingProvider]:
    try:
        return build_embedding_provider(config)
    except ConfigurationError as e:
        logger.info(f"Embedding provider unavailable: {e}")
        return None


def _configuration_error(e: ConfigurationError) -> HTTPException:
    setting = f" ({e.setting})" if e.setting else ""
    return HTTPException(status_code=503, detail=f"Configuration error{setting}: {e}")


async def _close_provider(provider: Optional[EmbeddingProvider]) -> None:
    closer = getattr(provider, "aclose", None)
    if closer is not None:
        await closer()


def _min_similarity(value: Optional[float]) -> float:
    return config.FEATURE_MIN_SIMILARITY if value is None else value


@features_router.post("/map-groups", response_model=list[Group])
async def map_groups(req: MapGroupsRequest):
    """Attach affected features to the posted groups."""
    provider = _build_provider()
    version = provider.provider_version if provider else ""
    try:
        db = await connection.get_connection()
        repo = get_embedding_repository(db)
        return await map_groups_to_features(
            req.groups,
            req.features,
            _min_similarity(req.minSimilarity),
            provider=provider,
            cache=VectorCache(repo, FEATURE_ENTITY, version),
            group_cache=VectorCache(repo, GROUP_ENTITY, version),
            mode=parse_mode(req.mode or config.FEATURE_MAPPING_MODE),
        )
    except ConfigurationError as e:
        raise _configuration_error(e)
    finally:
        await _close_provider(provider)


@features_router.post("/map-threads", response_model=list[UngroupedThread])
async def map_threads(req: MapThreadsRequest):
    """Attach affected features to posted ungrouped threads."""
    provider = _build_provider()
    version = provider.provider_version if provider else ""
    try:
        db = await connection.get_connection()
        repo = get_embedding_repository(db)
        return await map_threads_to_features(
            req.threads,
            req.features,
            _min_similarity(req.minSimilarity),
            provider=provider,
            cache=VectorCache(repo, FEATURE_ENTITY, version),
            thread_cache=VectorCache(repo, THREAD_ENTITY, version),
            mode=parse_mode(req.mode, FallbackMode.BEST_EFFORT),
        )
    except ConfigurationError as e:
        raise _configuration_error(e)
    finally:
        await _close_provider(provider)


@project_groups_router.post("/{project_id}/groups/map-features", response_model=list[Group])
async def map_project_groups(project_id: str, req: Optional[MapProjectRequest] = None):
    """Map a project's persisted groups and store the assignments."""
    req = req or MapProjectRequest()
    db = await connection.get_connection()
    service = FeatureMappingService(db, provider=_build_provider())
    try:
        return await service.map_project_groups(project_id, req.minSimilarity, req.mode)
    except ConfigurationError as e:
        raise _configuration_error(e)
    finally:
        await service.aclose()
