import math
import unittest

import aiosqlite

from rundown.db.repositories.embeddings import SqliteEmbeddingRepository
from rundown.db.sqlite_migrations import run_migrations
from rundown.errors import ConfigurationError, ProviderError
from rundown.models import GENERAL_FEATURE, Feature, FeatureRef, Group
from rundown.services.embeddings import VectorCache
from rundown.services.feature_mapper import (
    FallbackMode,
    feature_text,
    group_text,
    map_groups_by_keywords,
    map_groups_to_features,
    map_threads_to_features,
    parse_mode,
)


def _unit(cos: float, axis: int) -> list[float]:
    """Unit vector whose cosine with [1, 0, 0] is ``cos``."""
    vec = [cos, 0.0, 0.0]
    vec[axis] = math.sqrt(1.0 - cos * cos)
    return vec


class _VectorProvider:
    """Looks vectors up by exact text; unknown text maps to [0, 0, 1]."""

    provider_version = "fake-v1"

    def __init__(self, vectors: dict[str, list[float]], failing: set[str] | None = None) -> None:
        self.vectors = vectors
        self.failing = failing or set()
        self.batch_calls: list[list[str]] = []
        self.single_calls: list[str] = []

    def _vector(self, text: str) -> list[float]:
        return self.vectors.get(text, [0.0, 0.0, 1.0])

    async def embed_many(self, texts):
        self.batch_calls.append(list(texts))
        if any(t in self.failing for t in texts):
            raise ProviderError("batch failed")
        return [self._vector(t) for t in texts]

    async def embed_one(self, text):
        self.single_calls.append(text)
        if text in self.failing:
            raise ProviderError("item failed")
        return self._vector(text)


AUTH = Feature(id="f1", name="Auth", related_keywords=["login", "token"])
BILLING = Feature(id="f2", name="Billing", description="Invoices and plans")
SEARCH = Feature(id="f3", name="Search")


class TextBuilderTests(unittest.TestCase):
    def test_feature_text_includes_description_and_keywords(self) -> None:
        feature = Feature(id="x", name="Auth", description="Sign in flows", related_keywords=["login", "sso"])
        self.assertEqual(feature_text(feature), "Auth: Sign in flows Keywords: login, sso")

    def test_feature_text_omits_empty_clauses(self) -> None:
        self.assertEqual(feature_text(Feature(id="x", name="Search")), "Search")
        self.assertEqual(feature_text(Feature(id="x", name="Auth", related_keywords=["login"])), "Auth Keywords: login")

    def test_feature_text_uses_space_after_trailing_colon(self) -> None:
        self.assertEqual(feature_text(Feature(id="x", name="Area:", description="desc")), "Area: desc")

    def test_group_text_order_and_blanks(self) -> None:
        group = Group(
            id="g",
            suggested_title="Login fails",
            github_issue={"number": 3, "title": "OAuth broken"},
            threads=[{"thread_id": "t1", "thread_name": "cannot log in"}, {"thread_id": "t2", "thread_name": "  "}],
            signals=[{"source": "github", "id": "s1", "title": "token expiry"}],
        )
        self.assertEqual(group_text(group), "Login fails OAuth broken cannot log in token expiry")

    def test_parse_mode(self) -> None:
        self.assertEqual(parse_mode("best-effort"), FallbackMode.BEST_EFFORT)
        self.assertEqual(parse_mode("STRICT"), FallbackMode.STRICT)
        self.assertEqual(parse_mode("unknown", FallbackMode.BEST_EFFORT), FallbackMode.BEST_EFFORT)


class KeywordFallbackTests(unittest.TestCase):
    def test_login_token_group_maps_to_auth(self) -> None:
        groups = [Group(id="g1", suggested_title="login is broken for token refresh")]
        [mapped] = map_groups_by_keywords(groups, [AUTH])

        self.assertEqual(mapped.affects_features, [FeatureRef(id="f1", name="Auth")])
        self.assertFalse(mapped.is_cross_cutting)

    def test_below_threshold_falls_back_to_general(self) -> None:
        feature = Feature(id="f9", name="Payments", related_keywords=["stripe", "invoice", "refund", "card"])
        [mapped] = map_groups_by_keywords([Group(id="g", suggested_title="card declined")], [feature])
        # 1 of 5 terms = 0.2 < 0.3
        self.assertEqual(mapped.affects_features, [GENERAL_FEATURE])

    def test_multiple_matches_are_cross_cutting(self) -> None:
        groups = [Group(id="g", suggested_title="search results hide billing invoices after login")]
        [mapped] = map_groups_by_keywords(groups, [AUTH, BILLING, SEARCH])

        self.assertEqual([f.id for f in mapped.affects_features], ["f2", "f3", "f1"])
        self.assertTrue(mapped.is_cross_cutting)

    def test_empty_group_text_is_general(self) -> None:
        [mapped] = map_groups_by_keywords([Group(id="g")], [AUTH])
        self.assertEqual(mapped.affects_features, [GENERAL_FEATURE])
        self.assertFalse(mapped.is_cross_cutting)

    def test_keeps_at_most_five(self) -> None:
        features = [Feature(id=f"f{i}", name=f"topic{i}") for i in range(8)]
        text = " ".join(f"topic{i}" for i in range(8))
        [mapped] = map_groups_by_keywords([Group(id="g", suggested_title=text)], features)
        self.assertEqual([f.id for f in mapped.affects_features], ["f0", "f1", "f2", "f3", "f4"])


class SemanticMappingTests(unittest.IsolatedAsyncioTestCase):
    async def test_no_features_assigns_general_without_provider(self) -> None:
        groups = [Group(id="g1", suggested_title="anything")]
        [mapped] = await map_groups_to_features(groups, [], provider=None)

        self.assertEqual(mapped.affects_features, [GENERAL_FEATURE])
        self.assertFalse(mapped.is_cross_cutting)

    async def test_two_features_above_threshold_are_ordered_by_similarity(self) -> None:
        low = Feature(id="low", name="Low")
        high = Feature(id="high", name="High")
        provider = _VectorProvider(
            {
                "Low": _unit(0.65, 2),
                "High": _unit(0.72, 1),
                "Checkout page crashes": [1.0, 0.0, 0.0],
            }
        )
        [mapped] = await map_groups_to_features(
            [Group(id="g1", suggested_title="Checkout page crashes")],
            [low, high],
            0.6,
            provider=provider,
        )

        self.assertEqual([f.id for f in mapped.affects_features], ["high", "low"])
        self.assertTrue(mapped.is_cross_cutting)

    async def test_no_match_above_threshold_is_general(self) -> None:
        provider = _VectorProvider({"Auth Keywords: login, token": _unit(0.5, 1), "slow page": [1.0, 0.0, 0.0]})
        [mapped] = await map_groups_to_features([Group(id="g", suggested_title="slow page")], [AUTH], provider=provider)
        self.assertEqual(mapped.affects_features, [GENERAL_FEATURE])

    async def test_empty_group_text_skips_embedding(self) -> None:
        provider = _VectorProvider({})
        [mapped] = await map_groups_to_features([Group(id="g")], [AUTH], provider=provider)

        self.assertEqual(mapped.affects_features, [GENERAL_FEATURE])
        self.assertFalse(mapped.is_cross_cutting)
        self.assertEqual(provider.single_calls, [])

    async def test_group_embedding_failure_only_affects_that_group(self) -> None:
        provider = _VectorProvider(
            {"Auth Keywords: login, token": [1.0, 0.0, 0.0], "login": [1.0, 0.0, 0.0]},
            failing={"broken"},
        )
        mapped = await map_groups_to_features(
            [Group(id="a", suggested_title="broken"), Group(id="b", suggested_title="login")],
            [AUTH],
            provider=provider,
        )

        self.assertEqual(mapped[0].affects_features, [GENERAL_FEATURE])
        self.assertEqual(mapped[1].affects_features, [AUTH.ref()])

    async def test_failed_feature_is_skipped_not_fatal(self) -> None:
        provider = _VectorProvider(
            {"Search": [1.0, 0.0, 0.0], "find stuff": [1.0, 0.0, 0.0]},
            failing={"Auth Keywords: login, token"},
        )
        [mapped] = await map_groups_to_features(
            [Group(id="g", suggested_title="find stuff")], [AUTH, SEARCH], provider=provider
        )

        self.assertEqual(mapped.affects_features, [SEARCH.ref()])
        self.assertEqual(provider.single_calls[:2], ["Auth Keywords: login, token", "Search"])

    async def test_feature_batches_hold_fifty_texts(self) -> None:
        features = [Feature(id=f"f{i}", name=f"Feature {i}") for i in range(120)]
        provider = _VectorProvider({})
        await map_groups_to_features([Group(id="g", suggested_title="x")], features, provider=provider)
        self.assertEqual([len(b) for b in provider.batch_calls], [50, 50, 20])

    async def test_ties_keep_catalog_order_and_run_is_idempotent(self) -> None:
        features = [Feature(id="b", name="Beta"), Feature(id="a", name="Alpha")]
        provider = _VectorProvider({"Beta": [1.0, 0.0, 0.0], "Alpha": [1.0, 0.0, 0.0], "text": [1.0, 0.0, 0.0]})
        groups = [Group(id="g", suggested_title="text")]

        first = await map_groups_to_features(groups, features, provider=provider)
        second = await map_groups_to_features(groups, features, provider=provider)

        self.assertEqual([f.id for f in first[0].affects_features], ["b", "a"])
        self.assertEqual(first[0].affects_features, second[0].affects_features)

    async def test_strict_mode_without_provider_raises(self) -> None:
        with self.assertRaises(ConfigurationError):
            await map_groups_to_features([Group(id="g", suggested_title="login")], [AUTH], provider=None)

    async def test_best_effort_without_provider_uses_keywords(self) -> None:
        [mapped] = await map_groups_to_features(
            [Group(id="g", suggested_title="login is broken for token refresh")],
            [AUTH],
            provider=None,
            mode=FallbackMode.BEST_EFFORT,
        )
        self.assertEqual(mapped.affects_features, [AUTH.ref()])

    async def test_accepts_plain_dicts(self) -> None:
        provider = _VectorProvider({"Search": [1.0, 0.0, 0.0], "search broken": [1.0, 0.0, 0.0]})
        [mapped] = await map_groups_to_features(
            [{"id": "g", "suggested_title": "search broken"}],
            [{"id": "f3", "name": "Search"}],
            provider=provider,
        )
        self.assertEqual(mapped.affects_features, [SEARCH.ref()])


class CachedMappingTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.repo = SqliteEmbeddingRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_second_run_reuses_cached_embeddings(self) -> None:
        provider = _VectorProvider({"Search": [1.0, 0.0, 0.0], "search": [1.0, 0.0, 0.0]})
        cache = VectorCache(self.repo, "feature", provider.provider_version)
        group_cache = VectorCache(self.repo, "group", provider.provider_version)
        groups = [Group(id="g", suggested_title="search")]

        first = await map_groups_to_features(groups, [SEARCH], provider=provider, cache=cache, group_cache=group_cache)
        second = await map_groups_to_features(groups, [SEARCH], provider=provider, cache=cache, group_cache=group_cache)

        self.assertEqual(first[0].affects_features, second[0].affects_features)
        self.assertEqual(len(provider.batch_calls), 1)
        self.assertEqual(provider.single_calls, ["search"])

    async def test_changed_feature_text_is_recomputed(self) -> None:
        provider = _VectorProvider({})
        cache = VectorCache(self.repo, "feature", provider.provider_version)
        await map_groups_to_features([Group(id="g", suggested_title="x")], [SEARCH], provider=provider, cache=cache)
        renamed = Feature(id="f3", name="Search", description="Full text")
        await map_groups_to_features([Group(id="g", suggested_title="x")], [renamed], provider=provider, cache=cache)

        self.assertEqual(provider.batch_calls, [["Search"], ["Search: Full text"]])


class ThreadMappingTests(unittest.IsolatedAsyncioTestCase):
    async def test_without_provider_defaults_to_keyword_fallback(self) -> None:
        threads = [
            {"thread_id": "t1", "thread_name": "login loop", "top_issue": {"number": 4, "title": "token refresh"}},
            {"thread_id": "t2", "thread_name": "dark mode"},
        ]
        mapped = await map_threads_to_features(threads, [AUTH], provider=None)

        self.assertEqual(mapped[0].affects_features, [AUTH.ref()])
        self.assertEqual(mapped[1].affects_features, [GENERAL_FEATURE])

    async def test_strict_mode_without_provider_raises(self) -> None:
        with self.assertRaises(ConfigurationError):
            await map_threads_to_features(
                [{"thread_id": "t1", "thread_name": "x"}], [AUTH], provider=None, mode=FallbackMode.STRICT
            )

    async def test_semantic_mapping_uses_thread_and_issue_title(self) -> None:
        provider = _VectorProvider({"Search": [1.0, 0.0, 0.0], "no results #12 title": [1.0, 0.0, 0.0]})
        [mapped] = await map_threads_to_features(
            [{"thread_id": "t1", "thread_name": "no results", "top_issue": {"number": 12, "title": "#12 title"}}],
            [SEARCH],
            provider=provider,
        )
        self.assertEqual(mapped.affects_features, [SEARCH.ref()])

    async def test_no_features_assigns_general(self) -> None:
        [mapped] = await map_threads_to_features([{"thread_id": "t1", "thread_name": "x"}], [], provider=None)
        self.assertEqual(mapped.affects_features, [GENERAL_FEATURE])


if __name__ == "__main__":
    unittest.main()
