# app/core/normalizers.py

"""
Data normalization utilities for sales and transactions.

Ensures consistent data format regardless of source.
"""

from datetime import date, datetime
from typing import Any
import re
import unicodedata


def normalize_amount(amount: Any) -> float:
    """
    Normalize amount to float.

    Handles:
    - Integers and floats
    - Decimal strings from the database ("1234.50")
    - Brazilian formatted strings ("R$ 1.234,50")
    """
    if amount is None:
        return 0.0

    if isinstance(amount, (int, float)):
        return float(amount)

    if isinstance(amount, str):
        cleaned = re.sub(r'[^\d,.-]', '', amount)
        # "1.234,50" -> "1234.50"
        if ',' in cleaned:
            cleaned = cleaned.replace('.', '').replace(',', '.')
        try:
            return float(cleaned)
        except ValueError:
            return 0.0

    return float(amount)


def normalize_date(d: Any) -> date | None:
    """
    Normalize date to date object.

    Handles:
    - date objects
    - datetime objects
    - ISO strings
    - Unix timestamps
    """
    if d is None:
        return None

    if isinstance(d, datetime):
        return d.date()

    if isinstance(d, date):
        return d

    if isinstance(d, (int, float)):
        return datetime.fromtimestamp(d).date()

    if isinstance(d, str):
        try:
            return datetime.fromisoformat(d.replace('Z', '+00:00')).date()
        except ValueError:
            pass

        formats = [
            '%Y-%m-%d',
            '%d/%m/%Y',
            '%Y/%m/%d',
        ]
        for fmt in formats:
            try:
                return datetime.strptime(d, fmt).date()
            except ValueError:
                continue

    return None


def strip_accents(s: str) -> str:
    """Drop combining marks after NFD decomposition ("antecipação" -> "antecipacao")."""
    decomposed = unicodedata.normalize('NFD', s)
    return ''.join(c for c in decomposed if not unicodedata.combining(c))


def normalize_text(s: str | None) -> str:
    """
    Normalize free text for comparison.

    - Lowercase
    - Strip diacritics
    - Remove punctuation
    - Collapse whitespace
    """
    if not s:
        return ""

    s = strip_accents(s.lower())
    s = re.sub(r'[^\w\s]', '', s)
    s = re.sub(r'\s+', ' ', s).strip()
    return s


def extract_numbers(s: str | None) -> set[str]:
    """Digit runs embedded in the text (codes, references, invoice numbers)."""
    if not s:
        return set()
    return set(re.findall(r'\d+', s))


def extract_keywords(normalized: str, stop_words: frozenset[str]) -> set[str]:
    """Words longer than two characters that are not stop words."""
    return {
        word for word in normalized.split()
        if len(word) > 2 and word not in stop_words
    }

