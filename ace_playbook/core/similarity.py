"""Similarity scoring between bullet texts.

The combined score is 0.4 * edit similarity + 0.3 * bigram Jaccard +
0.3 * trigram Jaccard over normalized text. All functions are pure.
"""

from typing import NamedTuple

import numpy as np

from .text import canonical_form, normalize_text

EDIT_WEIGHT = 0.4
BIGRAM_WEIGHT = 0.3
TRIGRAM_WEIGHT = 0.3


def levenshtein(a: str, b: str) -> int:
    """Edit distance over code points.

    Each DP row is computed with numpy: substitutions and deletions come from
    the previous row, insertions are a running minimum along the row.
    """
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    b_codes = np.fromiter((ord(ch) for ch in b), dtype=np.int64, count=len(b))
    offsets = np.arange(len(b) + 1, dtype=np.int64)
    prev = offsets.copy()
    row = np.empty_like(prev)
    for i, ch in enumerate(a, start=1):
        cost = (b_codes != ord(ch)).astype(np.int64)
        row[0] = i
        np.minimum(prev[1:] + 1, prev[:-1] + cost, out=row[1:])
        row = np.minimum.accumulate(row - offsets) + offsets
        prev, row = row, prev
    return int(prev[-1])


def edit_similarity(a: str, b: str) -> float:
    return 1.0 - levenshtein(a, b) / max(len(a), len(b), 1)


def char_ngrams(text: str, n: int) -> set[str]:
    if len(text) < n:
        return {text} if text else set()
    return {text[i : i + n] for i in range(len(text) - n + 1)}


def ngram_jaccard(a: str, b: str, n: int) -> float:
    """Jaccard index of the character n-gram sets of a and b."""
    grams_a = char_ngrams(a, n)
    grams_b = char_ngrams(b, n)
    if not grams_a and not grams_b:
        return 1.0
    union = grams_a | grams_b
    return len(grams_a & grams_b) / len(union)


def _combined(a: str, b: str) -> float:
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    score = (
        EDIT_WEIGHT * edit_similarity(a, b)
        + BIGRAM_WEIGHT * ngram_jaccard(a, b, 2)
        + TRIGRAM_WEIGHT * ngram_jaccard(a, b, 3)
    )
    return min(max(score, 0.0), 1.0)


def similarity(a: str, b: str, remove_punctuation: bool = True) -> float:
    """Similarity in [0, 1]; 1.0 means identical after normalization.

    Two empty strings score 1.0, empty vs non-empty scores 0.0.
    """
    return _combined(
        normalize_text(a, remove_punctuation), normalize_text(b, remove_punctuation)
    )


def could_reach(len_a: int, len_b: int, threshold: float) -> bool:
    """Whether two strings of these lengths can possibly score >= threshold.

    Edit similarity is bounded by the length ratio; the n-gram terms by 1.
    """
    longest = max(len_a, len_b)
    if longest == 0:
        return True
    bound = EDIT_WEIGHT * min(len_a, len_b) / longest + BIGRAM_WEIGHT + TRIGRAM_WEIGHT
    return bound >= threshold


class PreparedText(NamedTuple):
    normalized: str
    canonical: str


def prepare(text: str) -> PreparedText:
    return PreparedText(normalize_text(text), canonical_form(text))


def dedup_score(a: PreparedText, b: PreparedText, threshold: float = 0.0) -> float:
    """Duplicate score for two prepared texts.

    The larger of the surface similarity and the similarity of the canonical
    (order-insensitive, stemmed) forms, so reordered paraphrases are caught.
    Returns 0.0 early when neither form can reach ``threshold``.
    """
    best = 0.0
    if could_reach(len(a.normalized), len(b.normalized), threshold):
        best = _combined(a.normalized, b.normalized)
        if best >= 1.0:
            return best
    if a.canonical and b.canonical and could_reach(
        len(a.canonical), len(b.canonical), threshold
    ):
        best = max(best, _combined(a.canonical, b.canonical))
    return best


def dedup_similarity(a: str, b: str) -> float:
    return dedup_score(prepare(a), prepare(b))
