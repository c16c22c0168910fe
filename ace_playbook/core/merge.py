# ace_playbook/core/merge.py
import logging
from dataclasses import dataclass, field
from datetime import datetime

from .classifier import classify_and_validate
from .errors import ContentOutOfBounds, ContentValidationError, StaleReferenceError
from .schema import Bullet, BulletUpdate, DeltaRequest, Playbook, RejectedBullet
from ..utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class MergeOutcome:
    """Result of applying a delta to a working copy of the playbook."""

    playbook: Playbook
    added: list[Bullet] = field(default_factory=list)
    updated: dict[str, Bullet] = field(default_factory=dict)
    rejected: list[RejectedBullet] = field(default_factory=list)
    stale_updates: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated)

    @property
    def touched(self) -> list[Bullet]:
        """Bullets the index needs to (re)ingest."""
        added_ids = {b.id for b in self.added}
        return self.added + [b for bid, b in self.updated.items() if bid not in added_ids]


def _rejection(index: int, error: ContentValidationError) -> RejectedBullet:
    if isinstance(error, ContentOutOfBounds):
        return RejectedBullet(
            index=index,
            reason=error.reason,
            message=str(error),
            category=error.category,
            length=error.length,
            band=error.band,
        )
    return RejectedBullet(index=index, reason=error.reason, message=str(error))


def apply_update(bullet: Bullet, update: BulletUpdate, now: datetime) -> Bullet:
    """Return a copy of bullet with the update applied; content is never changed."""
    meta = bullet.metadata.model_copy(deep=True)
    if update.importance is not None:
        meta.importance = update.importance
    if update.confidence is not None:
        meta.confidence = update.confidence
    if update.source_type is not None:
        meta.source_type = update.source_type
    if update.applicability is not None:
        meta.applicability = update.applicability.model_copy(deep=True)
    meta.reference_count += update.reference_delta
    meta.success_count += update.success_delta
    meta.failure_count += update.failure_delta
    if update.related_tools:
        meta.related_tools = sorted(set(meta.related_tools) | set(update.related_tools))

    tags = sorted(set(bullet.tags) | set(update.tags))
    return bullet.model_copy(update={"metadata": meta, "tags": tags, "updated_at": now})


def apply_delta(
    playbook: Playbook, delta: DeltaRequest, now: datetime | None = None
) -> MergeOutcome:
    """Apply a delta to a copy of the playbook.

    The input playbook is not modified: bucket lists are copied and every
    updated bullet is replaced by a new object. New bullets that fail
    validation are reported in ``rejected`` and do not affect the others;
    updates for unknown ids are reported in ``stale_updates``.

    Args:
        playbook: Current live playbook
        delta: Additions and by-id updates
        now: Timestamp to stamp on created/updated bullets

    Returns:
        MergeOutcome holding the working playbook and per-item results
    """
    now = now or utc_now()
    working = playbook.shallow_copy()
    outcome = MergeOutcome(playbook=working)

    for index, candidate in enumerate(delta.new_bullets):
        content = candidate.content.strip()
        try:
            category = classify_and_validate(content, candidate.category)
        except ContentValidationError as e:
            outcome.rejected.append(_rejection(index, e))
            logger.info(f"Rejected new bullet #{index} from session {delta.session_id!r}: {e}")
            continue

        bullet = Bullet(
            created_at=now,
            updated_at=now,
            source_session=candidate.source_session or delta.session_id,
            category=category,
            content=content,
            tags=candidate.tags,
            metadata=candidate.metadata.model_copy(deep=True),
        )
        working.bullets[category].append(bullet)
        outcome.added.append(bullet)

    for update in delta.updates:
        location = working.find(update.id)
        if location is None:
            logger.warning(f"Skipping stale update: {StaleReferenceError(update.id)}")
            outcome.stale_updates.append(update.id)
            continue
        category, idx = location
        replacement = apply_update(working.bullets[category][idx], update, now)
        working.bullets[category][idx] = replacement
        if any(b.id == replacement.id for b in outcome.added):
            outcome.added = [replacement if b.id == replacement.id else b for b in outcome.added]
        else:
            outcome.updated[replacement.id] = replacement

    working.refresh_stats()
    return outcome
