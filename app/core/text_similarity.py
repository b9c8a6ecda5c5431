# app/core/text_similarity.py

"""
Free-text similarity between a sale and a ledger description.

Returns 0-100. Embedded numbers (sale codes, invoice references) weigh
70%, remaining keywords 30%.
"""

from app.core.normalizers import extract_keywords, extract_numbers, normalize_text
from app.config import PORTUGUESE_STOP_WORDS

NUMBER_WEIGHT = 0.7
KEYWORD_WEIGHT = 0.3


def text_similarity(
    text1: str | None,
    text2: str | None,
    stop_words: frozenset[str] = PORTUGUESE_STOP_WORDS,
) -> float:
    """Symmetric similarity score between two strings."""
    if not text1 or not text2:
        return 0.0

    normalized1 = normalize_text(text1)
    normalized2 = normalize_text(text2)

    # Punctuation-only input: only identical leftovers count as a match
    if not normalized1 or not normalized2:
        return 100.0 if normalized1 == normalized2 else 0.0

    # One fully contains the other
    if normalized1 in normalized2 or normalized2 in normalized1:
        return 100.0

    keyword_score = _overlap(
        extract_keywords(normalized1, stop_words),
        extract_keywords(normalized2, stop_words),
    )
    number_score = _overlap(extract_numbers(text1), extract_numbers(text2))

    return min(100.0, number_score * NUMBER_WEIGHT + keyword_score * KEYWORD_WEIGHT)


def _overlap(a: set[str], b: set[str]) -> float:
    """Intersection over union, 0-100."""
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union) * 100
