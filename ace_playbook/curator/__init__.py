from .curator import (
    Curator,
    InsightCategory,
    InsightContext,
    RawInsight,
    curate,
    learning_delta,
    outcome_updates,
)

__all__ = [
    "Curator",
    "InsightCategory",
    "InsightContext",
    "RawInsight",
    "curate",
    "learning_delta",
    "outcome_updates",
]
