import logging
import threading
import time
from datetime import datetime
from pathlib import Path

from ace_playbook.refine.runner import RefineRunner
from ace_playbook.refine.scheduler import BackgroundOptimizer
from ace_playbook.utils import log_event, utc_now

from .config import PlaybookConfig, get_config
from .errors import PlaybookError, StoreUnavailable
from .merge import apply_delta
from .retrieval.weighted_index import WeightedIndex
from .schema import (
    Bullet,
    Category,
    DeltaRequest,
    MergeSummary,
    OptimizerStats,
    Playbook,
    RefineResult,
    StoreStats,
)
from .storage.bullet_store import ArchivedBullet, BulletStorage
from .weights import compute_weights

logger = logging.getLogger(__name__)

AGE_BUCKETS = ((1, "<1d"), (7, "1-7d"), (30, "7-30d"))
REFERENCE_BUCKETS = ((0, "0"), (5, "1-5"), (20, "6-20"))


class PlaybookManager:
    """Single owned handle to the playbook: storage, index and optimizer.

    All structural changes (merge, optimizer slices, compaction, clear) run
    under one writer lock. Merges build a working copy and swap it in only
    after it has been persisted, so a failed write leaves memory untouched.
    Queries rank through the index and then record the reference under the
    writer lock; those counter bumps are saved with the next write, an
    optimizer pass, ``flush`` or ``close``. Optimizer slices swap in a new
    playbook too; if the end-of-pass write fails they are discarded and the
    last persisted playbook is restored. Removal records reach the archive
    only after the removal itself has been saved.
    """

    def __init__(
        self,
        base_dir: str | Path | None = None,
        config: PlaybookConfig | None = None,
        start_optimizer: bool = False,
    ):
        self.config = config or get_config()
        self.storage = BulletStorage(base_dir or self.config.storage.base_dir)
        self.max_bullets = self.config.storage.max_bullets
        self.keep_ratio = self.config.storage.keep_ratio
        self.runner = RefineRunner.from_config(
            self.config.refine, half_life_days=self.config.index.half_life_days
        )
        self.index = WeightedIndex(
            half_life_days=self.config.index.half_life_days,
            hot_cache_size=self.config.index.hot_cache_size,
        )

        self._lock = threading.RLock()
        self._pass_lock = threading.Lock()
        self._dirty = False
        self._structural_dirty = False
        self._closed = False
        # Removal records wait here until the removal itself is on disk
        self._pending_archives: list[tuple[list[ArchivedBullet], str, int, datetime]] = []

        self.playbook = self.storage.load()
        self._persisted = self.playbook
        self.index.build(self.playbook.iter_bullets())

        self.optimizer = BackgroundOptimizer(
            self._optimize_pass,
            interval_secs=self.config.optimizer.interval_secs,
            trigger_every_n_calls=self.config.optimizer.trigger_every_n_calls,
        )
        if start_optimizer:
            self.optimizer.start()

    @classmethod
    def from_config(cls, config: PlaybookConfig | None = None) -> "PlaybookManager":
        config = config or get_config()
        return cls(config=config, start_optimizer=config.optimizer.enabled)

    def __enter__(self) -> "PlaybookManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def version(self) -> int:
        return self.playbook.version

    def _ensure_open(self) -> None:
        if self._closed:
            raise PlaybookError("PlaybookManager is closed")

    def query_bullets(self, text: str, limit: int | None = None) -> list[Bullet]:
        """Return the most relevant bullets for text and record their use.

        Each returned bullet's reference_count is incremented and its
        updated_at advanced. The returned bullets are copies.
        """
        self._ensure_open()
        if limit is None:
            limit = self.config.index.default_limit
        start = time.perf_counter()
        ranked = self.index.search(text, limit)

        returned: list[Bullet] = []
        if ranked:
            now = utc_now()
            with self._lock:
                for candidate in ranked:
                    # A merge may have replaced the object since ranking
                    bullet = self.index.get(candidate.id)
                    if bullet is None:
                        continue
                    bullet.metadata.reference_count += 1
                    bullet.touch(now)
                    self.index.upsert(bullet, now)
                    returned.append(bullet.model_copy(deep=True))
                self._dirty = True

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.debug(f"Query {text!r} returned {len(returned)} bullet(s) in {elapsed_ms:.2f}ms")
        self.optimizer.record_call()
        return returned

    def merge(self, delta: DeltaRequest) -> MergeSummary:
        """
        Apply a delta: validate, append, update, compact if needed, persist.

        Validation failures and stale updates are reported in the summary.

        Raises:
            StoreUnavailable: If persisting fails; in-memory state is unchanged
        """
        self._ensure_open()
        start = time.perf_counter()
        if delta.is_empty():
            logger.debug(f"Empty delta from session {delta.session_id!r}; nothing to do")
            return MergeSummary(
                session_id=delta.session_id,
                version=self.playbook.version,
                processing_time_ms=(time.perf_counter() - start) * 1000,
            )

        compacted = 0
        with self._lock:
            now = utc_now()
            outcome = apply_delta(self.playbook, delta, now)
            working = outcome.playbook
            changed = outcome.changed

            compaction = None
            if working.total > self.max_bullets:
                compaction = self.runner.compact(working, self.max_bullets, self.keep_ratio, now)
                working = compaction.playbook
                changed = changed or compaction.result.changed
                compacted = len(compaction.archived)

            if changed:
                previous_version = self.playbook.version
                working.version = previous_version + 1
                working.last_updated = now
                self._commit(working)
                if compaction is not None:
                    self.index.build(working.iter_bullets(), now)
                    if compaction.archived:
                        self._pending_archives.append(
                            (compaction.archived, "compaction", previous_version, now)
                        )
                else:
                    self.index.apply(upserts=outcome.touched, now=now)
                self._write_pending_archives()
            version = self.playbook.version

        surviving = {b.id for b in self.playbook.iter_bullets()} if compacted else None
        added_ids = [
            b.id for b in outcome.added if surviving is None or b.id in surviving
        ]
        summary = MergeSummary(
            session_id=delta.session_id,
            changed=changed,
            version=version,
            added_ids=added_ids,
            updated_ids=list(outcome.updated),
            rejected=outcome.rejected,
            stale_updates=outcome.stale_updates,
            compacted=compacted,
            processing_time_ms=(time.perf_counter() - start) * 1000,
        )
        log_event(
            "merge",
            {
                "session_id": delta.session_id,
                "version": version,
                "added": len(summary.added_ids),
                "updated": len(summary.updated_ids),
                "rejected": len(summary.rejected),
                "stale": len(summary.stale_updates),
                "compacted": compacted,
            },
        )
        self.optimizer.record_call()
        return summary

    def get_stats(self) -> StoreStats:
        with self._lock:
            return self.playbook.stats.model_copy(deep=True)

    def get_bullet(self, bullet_id: str) -> Bullet | None:
        bullet = self.index.get(bullet_id)
        return bullet.model_copy(deep=True) if bullet is not None else None

    def snapshot(self) -> Playbook:
        """Deep copy of the live playbook."""
        with self._lock:
            return self.playbook.model_copy(deep=True)

    def clear(self, archive: bool = True) -> None:
        """Reset the store to empty, optionally archiving a full snapshot first.

        The version keeps increasing across a clear.
        """
        self._ensure_open()
        with self._lock:
            now = utc_now()
            previous = self.playbook
            if archive:
                self.storage.archive_snapshot(previous, now)
            cleared = Playbook(version=previous.version + 1, last_updated=now)
            self._commit(cleared)
            self.index.build([], now)
            self._write_pending_archives()
        log_event(
            "clear",
            {"archived": archive, "removed": previous.total, "version": cleared.version},
        )

    def flush(self) -> bool:
        """Persist pending in-memory changes. Returns True if anything was written."""
        with self._lock:
            if not self._dirty and not self._structural_dirty:
                return False
            playbook = self.playbook
            if self._structural_dirty:
                playbook = playbook.model_copy(
                    update={"version": playbook.version + 1, "last_updated": utc_now()}
                )
            self._commit(playbook)
            self._write_pending_archives()
            return True

    def _commit(self, playbook: Playbook) -> None:
        """Persist playbook and make it live. Memory is untouched if the write fails."""
        self.storage.save(playbook)
        self.playbook = playbook
        self._persisted = playbook
        self._dirty = False
        self._structural_dirty = False

    def _write_pending_archives(self) -> None:
        while self._pending_archives:
            archived, reason, version, now = self._pending_archives[0]
            self.storage.archive_bullets(archived, reason=reason, version=version, now=now)
            self._pending_archives.pop(0)

    def _discard_unpersisted(self) -> None:
        """Return to the last persisted playbook after a failed optimizer write."""
        if not self._structural_dirty:
            return
        logger.warning(
            f"Discarding unpersisted optimizer changes; back to v{self._persisted.version}"
        )
        self.playbook = self._persisted
        self._structural_dirty = False
        self._pending_archives.clear()
        self.index.build(self.playbook.iter_bullets())

    def close(self) -> None:
        if self._closed:
            return
        self.optimizer.stop()
        try:
            self.flush()
        finally:
            self._closed = True

    def optimize(self) -> RefineResult:
        """Run one optimizer pass on the calling thread.

        Raises:
            StoreUnavailable: If archiving or persisting fails
        """
        self._ensure_open()
        return self._optimize_pass(lambda: False)

    def _optimize_pass(self, should_stop) -> RefineResult:
        if not self._pass_lock.acquire(blocking=False):
            logger.info("Optimizer pass already in progress; skipping")
            return RefineResult(skipped=True, version=self.playbook.version)
        try:
            return self._run_pass(should_stop)
        finally:
            self._pass_lock.release()

    def _run_pass(self, should_stop) -> RefineResult:
        start = time.perf_counter()
        now = utc_now()
        result = RefineResult()

        # Step 1: weights
        self.index.refresh_weights(now)
        result.weights_refreshed = len(self.index)

        # Steps 2-5: one category slice at a time
        for category in Category:
            if should_stop():
                result.interrupted = True
                logger.info(f"Optimizer pass interrupted before {category.value}")
                break
            with self._lock:
                snapshot = [b.model_copy(deep=True) for b in self.playbook.bullets[category]]
            plan = self.runner.plan_category(category, snapshot, now)
            if plan.empty:
                continue
            with self._lock:
                if self._closed:
                    result.interrupted = True
                    break
                applied = self.runner.apply_plan(self.playbook.bullets[category], plan, now)
                if not applied.ops:
                    continue
                self._pending_archives.append(
                    (applied.archived, "optimize", self.playbook.version, now)
                )
                working = self.playbook.shallow_copy()
                working.bullets[category] = applied.bullets
                working.refresh_stats()
                self.playbook = working
                self.index.apply(upserts=applied.survivors, removals=applied.removed_ids, now=now)
                self._dirty = True
                self._structural_dirty = True
                result.ops.extend(applied.ops)

        result.merged = sum(len(op.target_ids) for op in result.ops if op.op == "MERGE")
        result.evicted = sum(1 for op in result.ops if op.op == "EVICT")
        result.changed = bool(result.ops)

        # Step 6: persist once per full pass
        with self._lock:
            if not result.interrupted and (self._dirty or self._structural_dirty):
                try:
                    self.flush()
                except StoreUnavailable:
                    self._discard_unpersisted()
                    raise
            result.version = self.playbook.version
        self.index.refresh_weights(now)

        result.duration_ms = (time.perf_counter() - start) * 1000
        log_event(
            "optimize",
            {
                "merged": result.merged,
                "evicted": result.evicted,
                "interrupted": result.interrupted,
                "version": result.version,
                "duration_ms": round(result.duration_ms, 2),
            },
        )
        return result

    def optimizer_stats(self, now: datetime | None = None) -> OptimizerStats:
        now = now or utc_now()
        with self._lock:
            bullets = list(self.playbook.iter_bullets())
        stats = OptimizerStats(
            total_bullets=len(bullets),
            calls_since_pass=self.optimizer.calls_since_pass,
            passes=self.optimizer.passes,
            failures=self.optimizer.failures,
            last_error=self.optimizer.last_error,
            last_run=self.optimizer.last_run,
        )
        if not bullets:
            return stats

        weights = compute_weights(bullets, now, self.config.index.half_life_days)
        stats.avg_weight = float(weights.mean())
        stats.avg_references = sum(b.metadata.reference_count for b in bullets) / len(bullets)
        stats.avg_success_rate = sum(b.metadata.success_rate for b in bullets) / len(bullets)

        age_buckets = {label: 0 for _, label in AGE_BUCKETS} | {">30d": 0}
        ref_buckets = {label: 0 for _, label in REFERENCE_BUCKETS} | {">20": 0}
        for bullet in bullets:
            age_days = (now - bullet.updated_at).total_seconds() / 86400
            age_buckets[next((lbl for lim, lbl in AGE_BUCKETS if age_days < lim), ">30d")] += 1
            refs = bullet.metadata.reference_count
            ref_buckets[next((lbl for lim, lbl in REFERENCE_BUCKETS if refs <= lim), ">20")] += 1
        stats.age_buckets = age_buckets
        stats.reference_buckets = ref_buckets
        return stats
