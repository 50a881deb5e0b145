"""Category label normalization.

Every category name is passed through canonicalize_category() before it is
compared, stored or looked up. Two labels name the same category iff their
canonical forms are equal.
"""

import re
from typing import Iterable

CATEGORY_MAX_CHARS = 64
FALLBACK_CATEGORY = "unsorted"

# hard ceiling for MAX_CATEGORIES_PER_DOC
CATEGORIES_PER_DOC_CEILING = 10

_BULLET_PREFIX = re.compile(r"^(?:[#*•\-–—]+\s*)+")
_INDEX_PREFIX = re.compile(r"^(?:\(?[0-9]{1,6}\)?[\].):\-–—]*\s+)+")
_ESCAPED_SEPARATOR = re.compile(r"\\u0001", re.IGNORECASE)
_SEPARATOR = re.compile("\u0001")
_MANGLED_SEPARATOR = re.compile(r"\bu\s*0{3,}[0-9]{1,3}\b")
_NUMERIC_TOKEN = re.compile(r"\b[0-9]{1,6}\b")
_DISALLOWED_CHARS = re.compile(r"[^\w\s-]+")
_WHITESPACE = re.compile(r"\s+")
_EDGE_JOINERS = re.compile(r"^[-_]+|[-_]+$")

_MAX_PASSES = 8


def _normalize_once(text: str) -> str:
    text = text.strip().lower()
    text = _BULLET_PREFIX.sub("", text)
    text = _INDEX_PREFIX.sub("", text)
    text = _ESCAPED_SEPARATOR.sub(" ", text)
    text = _SEPARATOR.sub(" ", text)
    text = _MANGLED_SEPARATOR.sub(" ", text)
    text = _NUMERIC_TOKEN.sub(" ", text)
    text = _DISALLOWED_CHARS.sub(" ", text)
    text = _WHITESPACE.sub(" ", text).strip()
    text = _EDGE_JOINERS.sub("", text).strip()
    if len(text) > CATEGORY_MAX_CHARS:
        text = text[:CATEGORY_MAX_CHARS].rstrip(" -_")
    return text


def canonicalize_category(value: object) -> str:
    """Normalize a free-text category label into its canonical form.

    Never raises. Returns "" for labels that carry no information (empty,
    purely numeric, or without any letter). The normalization is repeated
    until it reaches a fixed point, so the result is stable under a second
    call.

    Args:
        value: The raw label. Non-string values are converted with str().

    Returns:
        str: The canonical label, or "" if the label is rejected.
    """
    if value is None:
        return ""
    text = str(value)
    previous = None
    passes = 0
    while text and text != previous and passes < _MAX_PASSES:
        previous = text
        text = _normalize_once(text)
        passes += 1

    if not text or text.isdigit():
        return ""
    if not any(ch.isalpha() for ch in text):
        return ""
    return text


def categories_match(left: object, right: object) -> bool:
    """Return True if both labels canonicalize to the same non-empty category."""
    canonical = canonicalize_category(left)
    return bool(canonical) and canonical == canonicalize_category(right)


def canonical_set(values: Iterable[object]) -> set[str]:
    """Canonicalize all values and drop the rejected ones."""
    return {c for c in (canonicalize_category(v) for v in values) if c}


def clamp_categories(categories: Iterable[object], max_per_doc: int = 1) -> list[str]:
    """Canonicalize, dedupe (keeping order) and cap a document's categories.

    Args:
        categories: Raw category labels.
        max_per_doc (int): Configured maximum, itself clamped into [1, 10].

    Returns:
        list[str]: At most max_per_doc canonical categories.
    """
    limit = max(1, min(CATEGORIES_PER_DOC_CEILING, int(max_per_doc or 1)))
    result: list[str] = []
    for raw in categories:
        canonical = canonicalize_category(raw)
        if canonical and canonical not in result:
            result.append(canonical)
    return result[:limit]


def choose_category(
    existing_candidates: Iterable[object],
    new_candidates: Iterable[object],
    known_vocabulary: Iterable[object],
    fallback: str = FALLBACK_CATEGORY,
) -> str:
    """Pick exactly one canonical category for a new document.

    Existing categories are preferred over new ones:
      1. the first existing candidate that is part of the known vocabulary,
      2. the first new candidate that turns out to be a known category,
      3. the first new candidate that is not known yet,
      4. the fallback.
    Existing candidates outside the vocabulary are ignored.

    Args:
        existing_candidates: Labels the analysis picked from the vocabulary.
        new_candidates: Labels the analysis proposed as new categories.
        known_vocabulary: The owner's current categories.
        fallback (str): Category used when no candidate survives.

    Returns:
        str: The chosen canonical category.
    """
    vocabulary = canonical_set(known_vocabulary)
    existing = [c for c in (canonicalize_category(v) for v in existing_candidates) if c]
    new = [c for c in (canonicalize_category(v) for v in new_candidates) if c]

    for candidate in existing:
        if candidate in vocabulary:
            return candidate
    for candidate in new:
        if candidate in vocabulary:
            return candidate
    if new:
        return new[0]
    return canonicalize_category(fallback) or FALLBACK_CATEGORY
