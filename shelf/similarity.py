"""
Text similarity for short titles.

Pure functions: edit-distance similarity, keyword extraction and the
weighted pairwise score used to decide whether two records describe the
same thing. No store access, no failure modes.
"""

import re
from typing import Any

# Words too common to say anything about what a title is about
STOP_WORDS = frozenset({
    "the", "and", "for", "with", "that", "this", "from", "into", "onto",
    "are", "was", "were", "been", "being", "have", "has", "had", "not",
    "but", "can", "could", "should", "would", "will", "shall", "may",
    "might", "must", "our", "your", "their", "its", "his", "her", "they",
    "them", "then", "than", "there", "here", "when", "where", "what",
    "which", "who", "whom", "why", "how", "all", "any", "some", "each",
    "also", "just", "only", "very", "too", "out", "over", "under", "about",
    "after", "before", "again", "still", "yet", "now", "use", "using",
    "need", "needs", "make", "made", "get", "got", "does", "did", "done",
    "via", "per", "etc",
})

_PUNCTUATION_RE = re.compile(r"[^\w\s]")

TITLE_WEIGHT = 0.6
TERM_WEIGHT = 0.4


def levenshtein(a: str, b: str) -> int:
    """Edit distance (insert, delete, substitute) between two strings."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """
    Normalized edit-distance similarity in [0, 1].

    Case-insensitive and whitespace-trimmed. Two empty strings are
    identical (1.0); an empty string against a non-empty one scores 0.
    """
    a = (a or "").strip().lower()
    b = (b or "").strip().lower()
    if a == b:
        return 1.0
    longest = max(len(a), len(b))
    return 1.0 - levenshtein(a, b) / longest


def ordered_terms(text: str) -> list[str]:
    """Keyword terms of a text, deduplicated, in order of first appearance."""
    cleaned = _PUNCTUATION_RE.sub("", (text or "").lower())
    seen: dict[str, None] = {}
    for token in cleaned.split():
        if len(token) > 2 and token not in STOP_WORDS:
            seen.setdefault(token, None)
    return list(seen)


def extract_terms(text: str) -> set[str]:
    """
    Keyword terms of a text.

    Lowercases, strips punctuation, splits on whitespace and drops tokens
    of two characters or fewer as well as stop words.
    """
    return set(ordered_terms(text))


def term_overlap(terms1: set[str], terms2: set[str]) -> float:
    """Shared terms as a fraction of the larger term set."""
    return len(terms1 & terms2) / max(len(terms1), len(terms2), 1)


def are_similar(item1: Any, item2: Any) -> float:
    """
    Weighted similarity score between two records.

    Records from different projects never match. Otherwise the score is
    0.6 x title similarity + 0.4 x keyword overlap.
    """
    if item1.project_id != item2.project_id:
        return 0.0
    title_score = similarity(item1.title, item2.title)
    overlap = term_overlap(extract_terms(item1.title), extract_terms(item2.title))
    return TITLE_WEIGHT * title_score + TERM_WEIGHT * overlap
