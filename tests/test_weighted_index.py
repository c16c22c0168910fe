"""Tests for bullet weights and the weighted retrieval index."""

import math
from datetime import timedelta

import pytest

from ace_playbook.core.retrieval.weighted_index import HotCache, WeightedIndex
from ace_playbook.core.schema import Category
from ace_playbook.core.weights import compute_weight, compute_weights, recency_factor
from ace_playbook.utils import utc_now


class TestWeights:
    def test_unreferenced_bullet_weighs_zero(self, make_bullet):
        assert compute_weight(make_bullet("x"), utc_now()) == 0.0

    def test_formula(self, make_bullet):
        now = utc_now()
        bullet = make_bullet(
            "x", importance=0.8, reference_count=3, success_count=3, failure_count=1
        )
        bullet.updated_at = now
        assert compute_weight(bullet, now) == pytest.approx(0.8 * math.log(4) * 0.75)

    def test_monotonic_in_references(self, make_bullet):
        now = utc_now()
        weights = []
        for refs in range(20):
            bullet = make_bullet("x", reference_count=refs)
            bullet.updated_at = now
            weights.append(compute_weight(bullet, now))
        assert weights == sorted(weights)
        assert len(set(weights)) == len(weights)

    def test_recency_half_life(self):
        now = utc_now()
        assert recency_factor(now, now, 14.0) == 1.0
        assert recency_factor(now - timedelta(days=14), now, 14.0) == pytest.approx(0.5)
        assert recency_factor(now + timedelta(days=1), now, 14.0) == 1.0

    def test_batch_matches_scalar(self, make_bullet):
        now = utc_now()
        bullets = [
            make_bullet("a", age_days=3, reference_count=5, importance=0.9),
            make_bullet("b", age_days=40, reference_count=2, failure_count=3, success_count=1),
            make_bullet("c", reference_count=0),
        ]
        batch = compute_weights(bullets, now)
        for bullet, weight in zip(bullets, batch, strict=True):
            assert weight == pytest.approx(compute_weight(bullet, now))
        assert len(compute_weights([], now)) == 0


class TestHotCache:
    def test_evicts_least_recently_used(self, make_bullet):
        cache = HotCache(capacity=2)
        a, b, c = make_bullet("a"), make_bullet("b"), make_bullet("c")
        cache.put(a)
        cache.put(b)
        assert cache.get(a.id) is a
        cache.put(c)

        assert a.id in cache
        assert b.id not in cache
        assert c.id in cache
        assert len(cache) == 2

    def test_hit_and_miss_counts(self, make_bullet):
        cache = HotCache(capacity=2)
        bullet = make_bullet("a")
        assert cache.get(bullet.id) is None
        cache.put(bullet)
        cache.get(bullet.id)
        assert (cache.hits, cache.misses) == (1, 1)

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            HotCache(capacity=0)


@pytest.fixture
def bullets(make_bullet):
    return [
        make_bullet("Always run `cargo test` before pushing", reference_count=1),
        make_bullet(
            "Use cargo clippy to catch common mistakes",
            Category.TOOL_USAGE,
            reference_count=6,
        ),
        make_bullet(
            "Paginate GitHub REST results by following the Link header",
            Category.API_GUIDES,
        ),
    ]


@pytest.fixture
def index(bullets):
    idx = WeightedIndex(hot_cache_size=10)
    idx.build(bullets)
    return idx


class TestSearch:
    def test_matches_on_keywords(self, index, bullets):
        results = index.search("run tests", limit=10)
        assert [b.id for b in results] == [bullets[0].id]

    def test_no_match_returns_empty(self, index):
        assert index.search("kubernetes helm chart", limit=10) == []

    def test_empty_query_returns_empty(self, index):
        assert index.search("", limit=10) == []
        assert index.search("the a of", limit=10) == []

    def test_limit(self, index):
        assert len(index.search("cargo", limit=1)) == 1
        assert index.search("cargo", limit=0) == []

    def test_more_matching_keywords_rank_first(self, index, bullets):
        # bullet 0 matches "cargo" and "test"; bullet 1 only "cargo" despite its weight
        results = index.search("cargo test", limit=10)
        assert [b.id for b in results] == [bullets[0].id, bullets[1].id]

    def test_weight_breaks_ties(self, index, bullets):
        results = index.search("cargo", limit=10)
        assert [b.id for b in results] == [bullets[1].id, bullets[0].id]

    def test_tags_are_searchable(self, make_bullet):
        bullet = make_bullet("Prefer small focused commits with clear messages")
        bullet.tags = ["git"]
        idx = WeightedIndex()
        idx.build([bullet])
        assert idx.search("git", limit=5) == [bullet]

    def test_cjk_query(self, make_bullet):
        bullet = make_bullet("遇到编译错误时先清理构建缓存", Category.TROUBLESHOOTING)
        idx = WeightedIndex()
        idx.build([bullet])
        assert idx.search("编译错误", limit=5) == [bullet]

    def test_results_enter_cache(self, index, bullets):
        index.search("run tests", limit=10)
        assert bullets[0].id in index.cache


class TestMaintenance:
    def test_upsert_reindexes_content(self, index, bullets):
        updated = bullets[2].model_copy(update={"content": "Prefer GraphQL for nested queries"})
        index.upsert(updated)

        assert index.search("paginate", limit=5) == []
        assert index.search("graphql", limit=5)[0] is updated
        assert len(index) == 3

    def test_remove(self, index, bullets):
        index.remove(bullets[0].id)
        assert bullets[0].id not in index
        assert index.search("run tests", limit=5) == []
        assert index.get(bullets[0].id) is None

    def test_apply_batch(self, index, bullets, make_bullet):
        new = make_bullet("Never commit secrets to the repository")
        index.apply(upserts=[new], removals=[bullets[1].id])
        assert new.id in index
        assert bullets[1].id not in index
        assert len(index) == 3

    def test_top_k_by_weight(self, index, bullets):
        top = index.top_k(2)
        assert [b.id for b in top] == [bullets[1].id, bullets[0].id]
        assert index.top_k(0) == []

    def test_weights_follow_reference_changes(self, index, bullets):
        bullets[0].metadata.reference_count = 50
        index.upsert(bullets[0])
        assert index.top_k(1)[0].id == bullets[0].id

    def test_refresh_weights(self, index, bullets):
        index.refresh_weights(weights={bullets[2].id: 100.0})
        assert index.weight(bullets[2].id) == 100.0
        assert index.top_k(1)[0].id == bullets[2].id

    def test_by_category(self, index, bullets):
        assert index.by_category(Category.API_GUIDES) == [bullets[2]]
        assert index.by_category(Category.CODE_SNIPPETS) == []

    def test_statistics(self, index):
        stats = index.statistics()
        assert stats["bullets"] == 3
        assert stats["categories"]["tool_usage"] == 1
        assert stats["cache_capacity"] == 10
        assert stats["keywords"] > 0
