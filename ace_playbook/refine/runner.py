# ace_playbook/refine/runner.py

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ace_playbook.core.config import RefineConfig
from ace_playbook.core.schema import Bullet, Category, Playbook, RefineOp, RefineResult
from ace_playbook.core.similarity import dedup_score, prepare
from ace_playbook.core.storage.bullet_store import ArchivedBullet
from ace_playbook.core.weights import DEFAULT_HALF_LIFE_DAYS, compute_weight, compute_weights
from ace_playbook.utils import utc_now

from .minhash import candidate_neighbors

logger = logging.getLogger(__name__)


@dataclass
class CategoryPlan:
    """Dedup merges and evictions planned for one category, by id."""

    category: Category
    merges: list[tuple[str, list[str]]] = field(default_factory=list)
    evictions: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.merges and not self.evictions


@dataclass
class AppliedPlan:
    bullets: list[Bullet]
    survivors: list[Bullet] = field(default_factory=list)
    removed_ids: list[str] = field(default_factory=list)
    archived: list[ArchivedBullet] = field(default_factory=list)
    ops: list[RefineOp] = field(default_factory=list)


@dataclass
class RefinePass:
    """A refined copy of the playbook plus everything removed from it."""

    playbook: Playbook
    result: RefineResult
    archived: list[ArchivedBullet] = field(default_factory=list)


def fold_into(survivor: Bullet, absorbed: list[Bullet], now: datetime) -> Bullet:
    """Fold duplicates' tags, tools, applicability and counters into the survivor."""
    meta = survivor.metadata.model_copy(deep=True)
    tags = set(survivor.tags)
    tools = set(meta.related_tools)
    applicability = meta.applicability
    for other in absorbed:
        tags.update(other.tags)
        tools.update(other.metadata.related_tools)
        applicability = applicability.union(other.metadata.applicability)
        meta.reference_count += other.metadata.reference_count
        meta.success_count += other.metadata.success_count
        meta.failure_count += other.metadata.failure_count
        meta.importance = max(meta.importance, other.metadata.importance)
        meta.confidence = max(meta.confidence, other.metadata.confidence)
    meta.related_tools = sorted(tools)
    meta.applicability = applicability
    return survivor.model_copy(
        update={"metadata": meta, "tags": sorted(tags), "updated_at": now}
    )


class RefineRunner:
    """
    Plans and applies optimizer passes: weight refresh -> dedup -> eviction.

    Planning works on a snapshot and produces ids only; applying re-reads the
    live bullets so changes made between planning and applying are kept.
    """

    def __init__(
        self,
        threshold: float = 0.85,
        stale_days: int = 30,
        max_failure_rate: float = 0.7,
        protect_recent_days: int = 7,
        protect_success_rate: float = 0.8,
        protect_importance: float = 0.8,
        lsh_min_bucket: int = 200,
        minhash_num_perm: int = 128,
        lsh_threshold: float = 0.5,
        half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
    ):
        """
        Initialize the RefineRunner.

        Args:
            threshold: Duplicate score at or above which two bullets merge
            stale_days: Days since update after which a bullet counts as unused
            max_failure_rate: Failure rate above which an unused bullet is evicted
            protect_recent_days: Bullets updated within this window are never evicted
            protect_success_rate: Bullets above this success rate are never evicted
            protect_importance: Bullets above this importance are never evicted
            lsh_min_bucket: Category size above which MinHash LSH narrows candidate pairs
            minhash_num_perm: MinHash permutations for LSH blocking
            lsh_threshold: Jaccard threshold for LSH candidate proposals
            half_life_days: Recency half-life used for weights
        """
        self.threshold = threshold
        self.stale_days = stale_days
        self.max_failure_rate = max_failure_rate
        self.protect_recent_days = protect_recent_days
        self.protect_success_rate = protect_success_rate
        self.protect_importance = protect_importance
        self.lsh_min_bucket = lsh_min_bucket
        self.minhash_num_perm = minhash_num_perm
        self.lsh_threshold = lsh_threshold
        self.half_life_days = half_life_days

    @classmethod
    def from_config(
        cls, config: RefineConfig, half_life_days: float = DEFAULT_HALF_LIFE_DAYS
    ) -> "RefineRunner":
        return cls(
            threshold=config.dedup_threshold,
            stale_days=config.stale_days,
            max_failure_rate=config.max_failure_rate,
            protect_recent_days=config.protect_recent_days,
            protect_success_rate=config.protect_success_rate,
            protect_importance=config.protect_importance,
            lsh_min_bucket=config.lsh_min_bucket,
            minhash_num_perm=config.minhash_num_perm,
            lsh_threshold=config.lsh_threshold,
            half_life_days=half_life_days,
        )

    def is_protected(self, bullet: Bullet, now: datetime) -> bool:
        meta = bullet.metadata
        return (
            now - bullet.updated_at < timedelta(days=self.protect_recent_days)
            or meta.success_rate > self.protect_success_rate
            or meta.importance > self.protect_importance
        )

    def should_evict(self, bullet: Bullet, now: datetime) -> bool:
        stale = now - bullet.updated_at >= timedelta(days=self.stale_days)
        failing = bullet.metadata.failure_rate > self.max_failure_rate
        return stale and failing and not self.is_protected(bullet, now)

    def plan_category(
        self, category: Category, bullets: list[Bullet], now: datetime
    ) -> CategoryPlan:
        """
        Plan dedup merges and evictions for one category.

        Candidates are visited in (weight desc, id) order; each surviving
        bullet absorbs every later bullet whose duplicate score reaches the
        threshold, so the higher-weight bullet of a pair always survives.
        """
        plan = CategoryPlan(category=category)
        if not bullets:
            return plan

        weights = compute_weights(bullets, now, self.half_life_days)
        order = sorted(range(len(bullets)), key=lambda i: (-weights[i], bullets[i].id))
        prepared = [prepare(b.content) for b in bullets]

        neighbors: dict[str, set[str]] | None = None
        if len(bullets) > self.lsh_min_bucket:
            neighbors = candidate_neighbors(
                [(b.id, b.content) for b in bullets],
                num_perm=self.minhash_num_perm,
                threshold=self.lsh_threshold,
            )

        absorbed: set[str] = set()
        for pos, i in enumerate(order):
            survivor = bullets[i]
            if survivor.id in absorbed:
                continue
            group = []
            for j in order[pos + 1 :]:
                other = bullets[j]
                if other.id in absorbed:
                    continue
                if neighbors is not None and other.id not in neighbors[survivor.id]:
                    continue
                if dedup_score(prepared[i], prepared[j], self.threshold) >= self.threshold:
                    group.append(other.id)
                    absorbed.add(other.id)
            if group:
                plan.merges.append((survivor.id, group))

        survivors = {survivor_id for survivor_id, _ in plan.merges}
        for bullet in bullets:
            if bullet.id in absorbed or bullet.id in survivors:
                continue
            if self.should_evict(bullet, now):
                plan.evictions.append(bullet.id)
        return plan

    def apply_plan(self, bullets: list[Bullet], plan: CategoryPlan, now: datetime) -> AppliedPlan:
        """Apply a plan to the current bucket contents, skipping ids that went away."""
        live = {b.id: b for b in bullets}
        replaced: dict[str, Bullet] = {}
        removed: set[str] = set()
        applied = AppliedPlan(bullets=bullets)

        for survivor_id, absorbed_ids in plan.merges:
            survivor = live.get(survivor_id)
            if survivor is None or survivor_id in removed:
                continue
            absorbed = [live[a] for a in absorbed_ids if a in live and a not in removed]
            if not absorbed:
                continue
            replaced[survivor_id] = fold_into(replaced.get(survivor_id, survivor), absorbed, now)
            for bullet in absorbed:
                removed.add(bullet.id)
                applied.archived.append(
                    ArchivedBullet(bullet=bullet, reason="merged", merged_into=survivor_id)
                )
            applied.ops.append(
                RefineOp(
                    op="MERGE",
                    category=plan.category,
                    survivor_id=survivor_id,
                    target_ids=[b.id for b in absorbed],
                )
            )

        for bullet_id in plan.evictions:
            bullet = live.get(bullet_id)
            if bullet is None or bullet_id in removed or bullet_id in replaced:
                continue
            if not self.should_evict(bullet, now):
                continue
            removed.add(bullet_id)
            applied.archived.append(ArchivedBullet(bullet=bullet, reason="evicted"))
            applied.ops.append(RefineOp(op="EVICT", category=plan.category, target_ids=[bullet_id]))

        applied.bullets = [replaced.get(b.id, b) for b in bullets if b.id not in removed]
        applied.survivors = list(replaced.values())
        applied.removed_ids = [a.bullet.id for a in applied.archived]
        return applied

    def run(
        self,
        playbook: Playbook,
        now: datetime | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> RefinePass:
        """
        Run a full pass over a copy of the playbook.

        The input playbook is left untouched. The version is not bumped here;
        the caller decides whether and when to persist.

        Args:
            playbook: Playbook to refine
            now: Reference time for staleness, protection and weights
            should_stop: Polled between categories; a True result ends the pass early

        Returns:
            RefinePass with the refined copy, the summary and archived bullets
        """
        start = time.perf_counter()
        now = now or utc_now()
        working = playbook.shallow_copy()
        result = RefineResult(weights_refreshed=working.total)
        archived: list[ArchivedBullet] = []

        for category in Category:
            if should_stop is not None and should_stop():
                result.interrupted = True
                break
            plan = self.plan_category(category, working.bullets[category], now)
            if plan.empty:
                continue
            applied = self.apply_plan(working.bullets[category], plan, now)
            working.bullets[category] = applied.bullets
            archived.extend(applied.archived)
            result.ops.extend(applied.ops)

        working.refresh_stats()
        result.merged = sum(len(op.target_ids) for op in result.ops if op.op == "MERGE")
        result.evicted = sum(1 for op in result.ops if op.op == "EVICT")
        result.changed = bool(result.ops)
        result.version = playbook.version
        result.duration_ms = (time.perf_counter() - start) * 1000
        return RefinePass(playbook=working, result=result, archived=archived)

    def compact(
        self,
        playbook: Playbook,
        max_bullets: int,
        keep_ratio: float = 0.7,
        now: datetime | None = None,
    ) -> RefinePass:
        """
        Bring an oversized playbook back under its ceiling.

        Runs a regular pass first; if the playbook is still above
        ``max_bullets``, the lowest-weight bullets are dropped until
        ``floor(max_bullets * keep_ratio)`` remain.
        """
        now = now or utc_now()
        refined = self.run(playbook, now)
        working = refined.playbook
        if working.total <= max_bullets:
            return refined

        target = math.floor(max_bullets * keep_ratio)
        ranked = sorted(
            working.iter_bullets(),
            key=lambda b: (
                -compute_weight(b, now, self.half_life_days),
                -b.updated_at.timestamp(),
                b.id,
            ),
        )
        dropped = ranked[target:]
        dropped_ids = {b.id for b in dropped}
        for category in Category:
            working.bullets[category] = [
                b for b in working.bullets[category] if b.id not in dropped_ids
            ]
        working.refresh_stats()

        by_category: dict[Category, list[str]] = {}
        for bullet in dropped:
            by_category.setdefault(bullet.category, []).append(bullet.id)
            refined.archived.append(ArchivedBullet(bullet=bullet, reason="compacted"))
        for category, ids in by_category.items():
            refined.result.ops.append(RefineOp(op="COMPACT", category=category, target_ids=ids))
        refined.result.compacted = len(dropped)
        refined.result.changed = True
        logger.info(
            f"Compacted playbook from {playbook.total} to {working.total} bullets "
            f"(ceiling {max_bullets}, keep ratio {keep_ratio})"
        )
        return refined


def refine(
    playbook: Playbook,
    threshold: float = 0.85,
    now: datetime | None = None,
) -> RefinePass:
    """
    Main entry point for a one-off refinement pass with default policy.

    Returns:
        RefinePass: Refined playbook copy, summary and archived bullets
    """
    runner = RefineRunner(threshold=threshold)
    return runner.run(playbook, now)
