"""Bullet weight: importance * ln(1 + references) * success rate * recency."""

import math
from collections.abc import Sequence
from datetime import datetime

import numpy as np

from .schema import Bullet

DEFAULT_HALF_LIFE_DAYS = 14.0
SECONDS_PER_DAY = 86400.0


def recency_factor(updated_at: datetime, now: datetime, half_life_days: float) -> float:
    """Exponential decay with the given half-life; 1.0 for timestamps in the future."""
    age_days = max((now - updated_at).total_seconds() / SECONDS_PER_DAY, 0.0)
    return 0.5 ** (age_days / half_life_days)


def compute_weight(
    bullet: Bullet, now: datetime, half_life_days: float = DEFAULT_HALF_LIFE_DAYS
) -> float:
    meta = bullet.metadata
    return (
        meta.importance
        * math.log1p(meta.reference_count)
        * meta.success_rate
        * recency_factor(bullet.updated_at, now, half_life_days)
    )


def compute_weights(
    bullets: Sequence[Bullet], now: datetime, half_life_days: float = DEFAULT_HALF_LIFE_DAYS
) -> np.ndarray:
    """Vectorized compute_weight over a batch of bullets."""
    if not bullets:
        return np.zeros(0, dtype=np.float64)
    importance = np.fromiter((b.metadata.importance for b in bullets), dtype=np.float64)
    references = np.fromiter((b.metadata.reference_count for b in bullets), dtype=np.float64)
    successes = np.fromiter((b.metadata.success_count for b in bullets), dtype=np.float64)
    outcomes = np.fromiter((b.metadata.outcomes for b in bullets), dtype=np.float64)
    ages = np.fromiter(
        ((now - b.updated_at).total_seconds() / SECONDS_PER_DAY for b in bullets),
        dtype=np.float64,
    )

    success_rate = np.where(outcomes > 0, successes / np.maximum(outcomes, 1.0), 1.0)
    recency = np.power(0.5, np.maximum(ages, 0.0) / half_life_days)
    return importance * np.log1p(references) * success_rate * recency
