"""Embedding provider boundary and the durable vector cache."""
from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

import httpx

from rundown import config
from rundown.errors import ConfigurationError, ProviderError
from rundown.observability import record_cache_lookup, record_embedding_request

logger = logging.getLogger("rundown.embeddings")

MAX_INPUT_CHARS = 6000

Vector = list[float]


class EmbeddingProvider(Protocol):
    """Turns text into fixed-length vectors."""

    @property
    def provider_version(self) -> str: ...

    async def embed_many(self, texts: Sequence[str]) -> list[Vector]: ...

    async def embed_one(self, text: str) -> Vector: ...


def content_hash(text: str) -> str:
    """Fingerprint used to decide whether a cached vector is still valid."""
    return hashlib.md5((text or "").encode("utf-8")).hexdigest()


def truncate_text(text: str, max_length: int = MAX_INPUT_CHARS) -> str:
    return text[:max_length] if len(text) > max_length else text


class OpenAIEmbeddingProvider:
    """OpenAI-compatible ``/embeddings`` client.

    Works with the OpenAI API or any server exposing the same endpoint via
    ``base_url``. Rate-limited requests honour ``retry-after``; other failures
    back off exponentially before the next attempt.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        max_retries: int = 3,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if not (api_key or "").strip():
            raise ConfigurationError(
                "OPENAI_API_KEY is required for semantic feature mapping",
                setting="OPENAI_API_KEY",
            )
        self._api_key = api_key.strip()
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max(1, int(max_retries))
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    @property
    def provider_version(self) -> str:
        return self._model

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def embed_one(self, text: str) -> Vector:
        vectors = await self.embed_many([text])
        return vectors[0]

    async def embed_many(self, texts: Sequence[str]) -> list[Vector]:
        if not texts:
            return []
        payload = {"model": self._model, "input": [truncate_text(t or "") for t in texts]}
        headers = {"Authorization": f"Bearer {self._api_key}"}
        client = self._get_client()
        last_error: ProviderError | None = None

        for attempt in range(self._max_retries):
            try:
                response = await client.post(
                    f"{self._base_url}/embeddings", json=payload, headers=headers
                )
            except httpx.HTTPError as exc:
                last_error = ProviderError(f"Embedding request failed: {exc}")
            else:
                if response.status_code == 429 and attempt < self._max_retries - 1:
                    delay = self._rate_limit_delay(response, attempt)
                    logger.warning(f"Embedding API rate limited, retrying in {delay:.1f}s")
                    await self._sleep(delay)
                    continue
                if response.status_code >= 400:
                    last_error = ProviderError(
                        f"Embedding API error: {response.status_code} {response.text[:200]}"
                    )
                else:
                    try:
                        vectors = self._parse(response.json(), len(texts))
                    except (ValueError, KeyError, TypeError) as exc:
                        last_error = ProviderError(f"Malformed embedding response: {exc}")
                    else:
                        record_embedding_request("batch" if len(texts) > 1 else "single", len(texts), True)
                        return vectors

            if attempt < self._max_retries - 1:
                await self._sleep(float(2 ** attempt))

        record_embedding_request("batch" if len(texts) > 1 else "single", len(texts), False)
        raise last_error or ProviderError("Embedding request failed after retries")

    @staticmethod
    def _rate_limit_delay(response: httpx.Response, attempt: int) -> float:
        retry_after = response.headers.get("retry-after")
        if retry_after:
            try:
                return max(0.0, float(retry_after))
            except ValueError:
                pass
        return float(2 ** attempt * 2)

    @staticmethod
    def _parse(body: dict, expected: int) -> list[Vector]:
        rows = sorted(body["data"], key=lambda row: row.get("index", 0))
        if len(rows) != expected:
            raise ValueError(f"expected {expected} embeddings, got {len(rows)}")
        return [[float(v) for v in row["embedding"]] for row in rows]


def build_embedding_provider(settings: Any = config) -> OpenAIEmbeddingProvider:
    """Create the configured provider; raises ``ConfigurationError`` without a key."""
    return OpenAIEmbeddingProvider(
        api_key=getattr(settings, "OPENAI_API_KEY", ""),
        model=getattr(settings, "EMBEDDING_MODEL", "text-embedding-3-small"),
        base_url=getattr(settings, "EMBEDDING_BASE_URL", "https://api.openai.com/v1"),
        timeout=getattr(settings, "EMBEDDING_TIMEOUT_SECONDS", 30.0),
        max_retries=getattr(settings, "EMBEDDING_MAX_RETRIES", 3),
    )


async def embed_in_batches(
    provider: EmbeddingProvider,
    texts: Sequence[str],
    batch_size: int = 50,
) -> list[Optional[Vector]]:
    """Embed ``texts`` batch-first, retrying a failed batch item by item.

    The result is aligned with ``texts``; items that still fail are ``None``.
    """
    size = max(1, int(batch_size))
    results: list[Optional[Vector]] = []
    for start in range(0, len(texts), size):
        batch = list(texts[start:start + size])
        try:
            results.extend(await provider.embed_many(batch))
            continue
        except ProviderError as exc:
            logger.warning(
                f"Batch embedding failed for items {start}-{start + len(batch) - 1}, "
                f"retrying individually: {exc}"
            )
        for offset, text in enumerate(batch):
            try:
                results.append(await provider.embed_one(text))
            except ProviderError as exc:
                logger.warning(f"Skipping item {start + offset} after embedding failure: {exc}")
                results.append(None)
    return results


class VectorCache:
    """Durable ``entity_id -> vector`` cache for one entity type.

    Rows written by a different provider version read as misses.
    """

    def __init__(self, repository: Any, entity_type: str, provider_version: str = ""):
        self.repository = repository
        self.entity_type = entity_type
        self.provider_version = provider_version or ""

    async def get(self, entity_id: str) -> dict | None:
        row = await self.repository.get(self.entity_type, entity_id)
        if row is None:
            return None
        if (row.get("provider_version") or "") != self.provider_version:
            return None
        return row

    async def lookup(self, entity_id: str, text_hash: str) -> Vector | None:
        row = await self.get(entity_id)
        hit = bool(row) and row.get("content_hash") == text_hash and bool(row.get("vector"))
        record_cache_lookup(self.entity_type, hit)
        return row["vector"] if hit else None

    async def put(self, entity_id: str, vector: Sequence[float], text_hash: str) -> None:
        await self.repository.upsert(
            self.entity_type,
            entity_id,
            list(vector),
            text_hash,
            provider_version=self.provider_version,
        )
