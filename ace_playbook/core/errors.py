"""Exception hierarchy for the playbook store.

Validation and stale-reference problems are collected into a MergeSummary
instead of being raised to callers of ``merge``. Persistence problems are
raised (``StoreUnavailable``) or recovered on load (``CorruptStoreError``).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .schema import Category


class PlaybookError(Exception):
    """Base class for all playbook errors."""

    pass


class ContentValidationError(PlaybookError):
    """Candidate content failed category bounds or the quality check."""

    reason = "validation"


class ContentOutOfBounds(ContentValidationError):
    """Content length falls outside the band for its category."""

    reason = "out_of_bounds"

    def __init__(self, category: Category, length: int, band: tuple[int, int]):
        self.category = category
        self.length = length
        self.band = band
        super().__init__(
            f"{category.value} content must be {band[0]}-{band[1]} chars, got {length}"
        )


class LowQualityContent(ContentValidationError):
    """Content is boilerplate or too short to be useful."""

    reason = "low_quality"


class StaleReferenceError(PlaybookError):
    """An update referenced a bullet id that is not in the store."""

    def __init__(self, bullet_id: str):
        self.bullet_id = bullet_id
        super().__init__(f"Bullet not found: {bullet_id}")


class StoreUnavailable(PlaybookError):
    """Persisted state could not be read or written."""

    pass


class CorruptStoreError(PlaybookError):
    """The persisted playbook could not be decoded."""

    pass
