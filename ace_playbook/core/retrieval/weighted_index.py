"""In-memory retrieval index over the live bullet set.

Holds an inverted keyword index, a weight-ordered list for top-K
extraction and a small LRU cache of recently served bullets. Everything here
is derived from the playbook and rebuilt on startup; nothing is persisted.
"""

import bisect
import logging
import threading
from collections import OrderedDict, defaultdict
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from ace_playbook.core.schema import Bullet, Category
from ace_playbook.core.text import extract_keywords
from ace_playbook.core.weights import DEFAULT_HALF_LIFE_DAYS, compute_weight, compute_weights
from ace_playbook.utils import utc_now

logger = logging.getLogger(__name__)


class HotCache:
    """Fixed-capacity least-recently-used cache of bullets keyed by id."""

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._items: OrderedDict[str, Bullet] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, bullet_id: str) -> Bullet | None:
        bullet = self._items.get(bullet_id)
        if bullet is None:
            self.misses += 1
            return None
        self._items.move_to_end(bullet_id)
        self.hits += 1
        return bullet

    def put(self, bullet: Bullet) -> None:
        self._items[bullet.id] = bullet
        self._items.move_to_end(bullet.id)
        while len(self._items) > self.capacity:
            self._items.popitem(last=False)

    def refresh(self, bullet: Bullet) -> None:
        """Replace a cached entry without changing its recency."""
        if bullet.id in self._items:
            self._items[bullet.id] = bullet

    def pop(self, bullet_id: str) -> None:
        self._items.pop(bullet_id, None)

    def clear(self) -> None:
        self._items.clear()

    def __contains__(self, bullet_id: object) -> bool:
        return bullet_id in self._items

    def __len__(self) -> int:
        return len(self._items)


class WeightedIndex:
    """Keyword + weight index supporting hybrid ranked search.

    A search collects candidates through the inverted index and ranks them by
    the number of distinct query keywords they match; the bullet weight breaks
    ties between equal hit counts.
    """

    def __init__(
        self,
        half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
        hot_cache_size: int = 100,
    ):
        self.half_life_days = half_life_days
        self._lock = threading.RLock()
        self._bullets: dict[str, Bullet] = {}
        self._keywords: dict[str, set[str]] = defaultdict(set)
        self._bullet_keywords: dict[str, frozenset[str]] = {}
        self._weights: dict[str, float] = {}
        self._ranked: list[tuple[float, str]] = []
        self._categories: dict[Category, set[str]] = {c: set() for c in Category}
        self.cache = HotCache(hot_cache_size)

    def __len__(self) -> int:
        return len(self._bullets)

    def __contains__(self, bullet_id: object) -> bool:
        return bullet_id in self._bullets

    def build(self, bullets: Iterable[Bullet], now: datetime | None = None) -> None:
        """Rebuild every structure from scratch."""
        now = now or utc_now()
        bullets = list(bullets)
        weights = compute_weights(bullets, now, self.half_life_days)
        with self._lock:
            self._bullets = {}
            self._keywords = defaultdict(set)
            self._bullet_keywords = {}
            self._weights = {}
            self._categories = {c: set() for c in Category}
            self.cache.clear()
            for bullet, weight in zip(bullets, weights, strict=True):
                self._insert(bullet, float(weight))
            self._ranked = sorted((-w, bid) for bid, w in self._weights.items())
        logger.debug(f"Built index over {len(bullets)} bullets")

    def apply(
        self,
        upserts: Iterable[Bullet] = (),
        removals: Iterable[str] = (),
        now: datetime | None = None,
    ) -> None:
        """Apply a batch of insertions/replacements and removals atomically."""
        now = now or utc_now()
        with self._lock:
            for bullet_id in removals:
                self._remove(bullet_id)
            for bullet in upserts:
                if bullet.id in self._bullets:
                    self._remove(bullet.id, keep_cache=True)
                weight = compute_weight(bullet, now, self.half_life_days)
                self._insert(bullet, weight)
                bisect.insort(self._ranked, (-weight, bullet.id))
                self.cache.refresh(bullet)

    def upsert(self, bullet: Bullet, now: datetime | None = None) -> None:
        self.apply(upserts=[bullet], now=now)

    def remove(self, bullet_id: str) -> None:
        self.apply(removals=[bullet_id])

    def _insert(self, bullet: Bullet, weight: float) -> None:
        keywords = frozenset(extract_keywords(" ".join([bullet.content, *bullet.tags])))
        self._bullets[bullet.id] = bullet
        self._bullet_keywords[bullet.id] = keywords
        for keyword in keywords:
            self._keywords[keyword].add(bullet.id)
        self._weights[bullet.id] = weight
        self._categories[bullet.category].add(bullet.id)

    def _remove(self, bullet_id: str, keep_cache: bool = False) -> None:
        bullet = self._bullets.pop(bullet_id, None)
        if bullet is None:
            return
        for keyword in self._bullet_keywords.pop(bullet_id, frozenset()):
            ids = self._keywords.get(keyword)
            if ids is not None:
                ids.discard(bullet_id)
                if not ids:
                    del self._keywords[keyword]
        weight = self._weights.pop(bullet_id)
        pos = bisect.bisect_left(self._ranked, (-weight, bullet_id))
        if pos < len(self._ranked) and self._ranked[pos] == (-weight, bullet_id):
            del self._ranked[pos]
        self._categories[bullet.category].discard(bullet_id)
        if not keep_cache:
            self.cache.pop(bullet_id)

    def refresh_weights(
        self, now: datetime | None = None, weights: dict[str, float] | None = None
    ) -> None:
        """Recompute cached weights, or install precomputed ones."""
        now = now or utc_now()
        with self._lock:
            if weights is None:
                ids = list(self._bullets)
                values = compute_weights(
                    [self._bullets[i] for i in ids], now, self.half_life_days
                )
                weights = dict(zip(ids, (float(v) for v in values), strict=True))
            for bullet_id, weight in weights.items():
                if bullet_id in self._weights:
                    self._weights[bullet_id] = weight
            self._ranked = sorted((-w, bid) for bid, w in self._weights.items())

    def weight(self, bullet_id: str) -> float | None:
        with self._lock:
            return self._weights.get(bullet_id)

    def get(self, bullet_id: str) -> Bullet | None:
        with self._lock:
            cached = self.cache.get(bullet_id)
            if cached is not None:
                return cached
            bullet = self._bullets.get(bullet_id)
            if bullet is not None:
                self.cache.put(bullet)
            return bullet

    def top_k(self, k: int) -> list[Bullet]:
        """Highest-weight bullets, ties broken by id."""
        with self._lock:
            return [self._bullets[bid] for _, bid in self._ranked[: max(k, 0)]]

    def by_category(self, category: Category) -> list[Bullet]:
        with self._lock:
            return [self._bullets[bid] for bid in sorted(self._categories[category])]

    def search(self, query: str, limit: int) -> list[Bullet]:
        """Rank bullets for a free-text query.

        Args:
            query: Query text; tokenized the same way bullet content is
            limit: Maximum number of results

        Returns:
            Bullets ordered most relevant first; empty when nothing matches
        """
        if limit <= 0:
            return []
        query_keywords = extract_keywords(query)
        if not query_keywords:
            logger.debug("Query produced no keywords")
            return []

        with self._lock:
            hits: dict[str, int] = defaultdict(int)
            for keyword in query_keywords:
                for bullet_id in self._keywords.get(keyword, ()):
                    hits[bullet_id] += 1
            if not hits:
                return []

            scored = []
            for bullet_id, hit_count in hits.items():
                bullet = self.cache.get(bullet_id) or self._bullets[bullet_id]
                weight = self._weights[bullet_id]
                score = hit_count + weight / (1.0 + weight)
                scored.append((score, weight, bullet.updated_at.timestamp(), bullet_id, bullet))

            scored.sort(key=lambda item: (-item[0], -item[1], -item[2], item[3]))
            results = [item[4] for item in scored[:limit]]
            for bullet in results:
                self.cache.put(bullet)
        return results

    def statistics(self) -> dict[str, Any]:
        with self._lock:
            return {
                "bullets": len(self._bullets),
                "keywords": len(self._keywords),
                "categories": {c.value: len(ids) for c, ids in self._categories.items()},
                "cache_size": len(self.cache),
                "cache_capacity": self.cache.capacity,
                "cache_hits": self.cache.hits,
                "cache_misses": self.cache.misses,
            }
