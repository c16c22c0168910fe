"""Text normalization, tokenization and keyword extraction.

Shared by the similarity engine and the weighted index. CJK characters are
treated as individual token units instead of being split on ASCII word
boundaries.
"""

import re

_CJK_RANGES = "\u4e00-\u9fff\u3400-\u4dbf\U00020000-\U0002a6df\uf900-\ufaff"
_CJK_CHAR = re.compile(f"[{_CJK_RANGES}]")
_CJK_RUN = re.compile(f"[{_CJK_RANGES}]+")
_TOKEN = re.compile(f"[{_CJK_RANGES}]|(?:(?![{_CJK_RANGES}])[^\\W_])+")
_WHITESPACE = re.compile(r"\s+")

STOP_WORDS = frozenset(
    """
    a an the is are was were be been being to of in for on with at by from as it its
    this that these those which what who how when where why all each every both few
    and or but not no nor so yet if then else can could will would shall should may
    might must do does did done doing has have had having am your my our his her their
    me you we he she
    """.split()
)
NEGATIONS = frozenset({"not", "no", "nor", "never"})
_VOWELS = frozenset("aeiou")


def is_cjk(ch: str) -> bool:
    return bool(_CJK_CHAR.fullmatch(ch))


def normalize_text(text: str, remove_punctuation: bool = True) -> str:
    """Lowercase, optionally replace punctuation with spaces, collapse whitespace."""
    lowered = text.lower()
    if remove_punctuation:
        lowered = "".join(
            ch if ch.isalnum() or ch.isspace() or is_cjk(ch) else " " for ch in lowered
        )
    return _WHITESPACE.sub(" ", lowered).strip()


def tokenize(text: str) -> list[str]:
    """Split text into case-folded word tokens; each CJK character is its own token."""
    return _TOKEN.findall(text.lower())


def _undouble(stem: str) -> str:
    if len(stem) >= 3 and stem[-1] == stem[-2] and stem[-1] not in _VOWELS:
        return stem[:-1]
    return stem


def stem(word: str) -> str:
    """Strip common English suffixes (testing -> test, tests -> test, using -> use)."""
    word = word.lower()
    n = len(word)
    if not word.isascii() or n <= 3:
        return word
    if word.endswith("ing") and n > 4:
        base = _undouble(word[:-3])
        return base + "e" if len(base) <= 2 else base
    if word.endswith("ed") and n > 4:
        return _undouble(word[:-2])
    if word.endswith("es") and n > 4:
        base = word[:-2]
        if base.endswith(("ch", "sh", "x", "s", "z")):
            return base
        return word[:-1]
    if word.endswith("s") and not word.endswith(("ss", "us", "is")):
        return word[:-1]
    if word.endswith("ly") and n > 4:
        return word[:-2]
    return word


def extract_keywords(text: str) -> set[str]:
    """Keywords used for inverted-index lookup.

    Words of two or more characters that are not stop words, plus their
    stems. CJK runs contribute their bigrams (or the lone character).
    """
    keywords: set[str] = set()
    lowered = text.lower()
    for token in _TOKEN.findall(lowered):
        if is_cjk(token):
            continue
        if len(token) < 2 or token in STOP_WORDS:
            continue
        keywords.add(token)
        stemmed = stem(token)
        if len(stemmed) >= 2:
            keywords.add(stemmed)
    for run in _CJK_RUN.findall(lowered):
        if len(run) == 1:
            keywords.add(run)
        else:
            keywords.update(run[i : i + 2] for i in range(len(run) - 1))
    return keywords


def canonical_form(text: str) -> str:
    """Order-insensitive form: sorted unique stems without stop words (negations kept)."""
    terms = {
        stem(token)
        for token in tokenize(text)
        if token in NEGATIONS or token not in STOP_WORDS
    }
    return " ".join(sorted(terms))
