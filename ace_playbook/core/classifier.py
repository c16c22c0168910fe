"""Content classification and validation for candidate bullets.

Categories are inferred from an ordered rule table: the first predicate that
matches wins. Each category carries a length band; text outside the band, or
text that is boilerplate, is rejected before it reaches the store.
"""

import re
from collections.abc import Callable
from typing import NamedTuple

from .errors import ContentOutOfBounds, LowQualityContent
from .schema import Category


class LengthBand(NamedTuple):
    min: int
    ideal: int
    max: int

    def contains(self, length: int) -> bool:
        return self.min <= length <= self.max


LENGTH_BANDS: dict[Category, LengthBand] = {
    Category.CODE_SNIPPETS: LengthBand(100, 500, 3000),
    Category.STRATEGIES_AND_RULES: LengthBand(30, 150, 400),
    Category.ERROR_HANDLING: LengthBand(50, 300, 1000),
    Category.TROUBLESHOOTING: LengthBand(50, 300, 1000),
    Category.TOOL_USAGE: LengthBand(30, 200, 500),
    Category.API_GUIDES: LengthBand(80, 400, 2000),
    Category.GENERAL: LengthBand(50, 400, 1000),
}

MIN_MEANINGFUL_CHARS = 10

GENERIC_PHRASES = (
    "execution failed",
    "error occurred",
    "an error occurred",
    "something went wrong",
    "failed to execute",
    "an error happened",
    "unknown error",
    "task completed",
    "no issues found",
)
GENERIC_SHARE = 0.8

_FENCE = re.compile(r"```")
_DEFINITION = re.compile(
    r"^\s*(?:pub\s+)?(?:async\s+)?(?:def|fn|class|function|impl|struct|interface)\s+\w+",
    re.MULTILINE,
)
_IMPERATIVE = re.compile(
    r"(?:^|[.!?;]\s+|\n\s*)(?:always|never|must|prefer|avoid|do not|don't)\b",
    re.IGNORECASE,
)
_FAILURE_TERMS = re.compile(
    r"\b(?:errors?|fail(?:s|ed|ure|ing)?|exceptions?|crash(?:es|ed)?|bugs?|issues?|panic"
    r"|traceback|timeout)\b|错误|失败|异常",
    re.IGNORECASE,
)
_RESOLUTION_TERMS = re.compile(
    r"\b(?:fix(?:ed|es)?|resolv(?:e|ed|es)|handl(?:e|ed|es|ing)|retry|retries|catch"
    r"|recover(?:y|ed)?|workaround)\b|修复|解决",
    re.IGNORECASE,
)
_API_TERMS = re.compile(
    r"\b(?:api|apis|endpoints?|requests?|responses?|sdk|library|http|rest|graphql)\b|接口",
    re.IGNORECASE,
)
_TOOL_TERMS = re.compile(
    r"\b(?:cargo|npm|pnpm|yarn|pip|uv|git|docker|kubectl|make|pytest|bash|cli|command|brew)\b",
    re.IGNORECASE,
)


def _is_code(text: str) -> bool:
    return bool(_FENCE.search(text) or _DEFINITION.search(text))


def _is_strategy(text: str) -> bool:
    return bool(_IMPERATIVE.search(text))


def _is_error_handling(text: str) -> bool:
    return bool(_FAILURE_TERMS.search(text) and _RESOLUTION_TERMS.search(text))


def _is_troubleshooting(text: str) -> bool:
    return bool(_FAILURE_TERMS.search(text))


def _is_api(text: str) -> bool:
    return bool(_API_TERMS.search(text))


def _is_tool(text: str) -> bool:
    return bool(_TOOL_TERMS.search(text))


# Evaluated in order; the first matching predicate decides the category.
CLASSIFICATION_RULES: list[tuple[Category, Callable[[str], bool]]] = [
    (Category.CODE_SNIPPETS, _is_code),
    (Category.STRATEGIES_AND_RULES, _is_strategy),
    (Category.ERROR_HANDLING, _is_error_handling),
    (Category.TROUBLESHOOTING, _is_troubleshooting),
    (Category.API_GUIDES, _is_api),
    (Category.TOOL_USAGE, _is_tool),
]
DEFAULT_CATEGORY = Category.GENERAL


def classify(text: str) -> Category:
    """Infer the category of a piece of text from content signals."""
    for category, predicate in CLASSIFICATION_RULES:
        if predicate(text):
            return category
    return DEFAULT_CATEGORY


def check_quality(text: str) -> None:
    """Reject near-empty or boilerplate text.

    Raises:
        LowQualityContent: If the text carries no reusable information
    """
    stripped = text.strip()
    meaningful = sum(1 for ch in stripped if not ch.isspace())
    if meaningful < MIN_MEANINGFUL_CHARS:
        raise LowQualityContent(f"content too short to be useful ({meaningful} chars)")

    lowered = stripped.lower().rstrip(".!")
    for phrase in GENERIC_PHRASES:
        if lowered == phrase:
            raise LowQualityContent(f"generic content: {phrase!r}")
        if phrase in lowered and len(phrase) / len(lowered) > GENERIC_SHARE:
            raise LowQualityContent(f"content is mostly boilerplate: {phrase!r}")


def classify_and_validate(text: str, hint: Category | None = None) -> Category:
    """Categorize text and validate it against its category's length band.

    Args:
        text: Candidate bullet content
        hint: Category supplied by the producer; used instead of inference

    Returns:
        The category the text will be stored under

    Raises:
        LowQualityContent: If the text is boilerplate or near-empty
        ContentOutOfBounds: If the length is outside the category band
    """
    text = text.strip()
    check_quality(text)
    category = hint if hint is not None else classify(text)
    band = LENGTH_BANDS[category]
    length = len(text)
    if not band.contains(length):
        raise ContentOutOfBounds(category, length, (band.min, band.max))
    return category


def quality_score(text: str, category: Category | None = None) -> float:
    """Score text quality in [0, 1]; invalid text scores 0.0.

    Combines closeness to the category's ideal length (60%) with word
    density (40%, best when the average word is 4-8 characters).
    """
    try:
        category = classify_and_validate(text, category)
    except (ContentOutOfBounds, LowQualityContent):
        return 0.0

    band = LENGTH_BANDS[category]
    length = len(text.strip())
    if length < band.ideal:
        length_score = length / band.ideal
    else:
        length_score = 1.0 - (length - band.ideal) / (band.max - band.ideal) * 0.3

    words = text.split()
    avg_word = length / len(words) if words else 0.0
    if 4.0 <= avg_word <= 8.0:
        density_score = 1.0
    elif avg_word < 4.0:
        density_score = avg_word / 4.0
    else:
        density_score = 1.0 - min((avg_word - 8.0) / 12.0, 0.5)

    return min(length_score * 0.6 + density_score * 0.4, 1.0)
