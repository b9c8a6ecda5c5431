# app/core/patterns.py

"""
Vendor-pattern recognition in transaction descriptions.

Recognizes the conventions ERPs and banks use when writing a payment
description ("Venda #123", "Pedido nº 45", "Cliente: Maria",
"Parcela 2/6", "Antecipação") and anticipation markers.
"""

import re
from typing import Optional

from app.config import MatchingConfig, VendorPattern
from app.core.normalizers import normalize_text, strip_accents
from app.models import Transaction


class PatternDetector:
    """Pattern matching configured by a MatchingConfig."""

    def __init__(self, config: MatchingConfig):
        self.config = config
        self._patterns: list[tuple[VendorPattern, re.Pattern]] = [
            (p, re.compile(p.regex, re.IGNORECASE)) for p in config.vendor_patterns
        ]
        terms = "|".join(re.escape(t) for t in config.anticipation_terms)
        self._anticipation = re.compile(rf"\b(?:{terms})\b")

    # ============================================
    # Vendor patterns (0-100)
    # ============================================

    def score(
        self,
        text: str | None,
        code: str | None,
        customer_name: str | None = None,
        factors: list[str] | None = None,
    ) -> float:
        """
        Score how well the description's recognized patterns agree with the target.

        Captured code/customer that matches: 100 x importance.
        Captured but different: 30 x importance.
        Other recognized pattern: 50 x importance.
        Normalized by the importance of the patterns present.
        """
        if not text:
            return 0.0

        total = 0.0
        possible = 0.0

        for pattern, regex in self._patterns:
            match = regex.search(text)
            if not match:
                continue

            possible += 100 * pattern.importance
            captured = match.group(1) if match.groups() else None

            if pattern.kind == "code" and captured and code:
                if _codes_match(captured, code):
                    total += 100 * pattern.importance
                    if factors is not None:
                        factors.append(f"Reference '{pattern.name} {captured}' matches sale code")
                else:
                    total += 30 * pattern.importance
            elif pattern.kind == "customer" and captured and customer_name:
                if _names_match(captured, customer_name):
                    total += 100 * pattern.importance
                    if factors is not None:
                        factors.append("Customer named in description")
                else:
                    total += 30 * pattern.importance
            else:
                total += 50 * pattern.importance

        if possible == 0:
            return 0.0
        return min(100.0, total / possible * 100)

    # ============================================
    # Anticipation markers
    # ============================================

    def mentions_anticipation(self, text: str | None) -> bool:
        if not text:
            return False
        return bool(self._anticipation.search(strip_accents(text.lower())))

    def is_anticipation(self, transaction: Transaction) -> bool:
        """
        Text markers, or provenance that flags it, or an amount at least
        4% below the original amount recorded by the connector.
        """
        if self.mentions_anticipation(transaction.full_text):
            return True

        provenance = transaction.provenance
        if provenance.is_anticipation or provenance.payment_source == "ANTICIPATION":
            return True

        original = provenance.original_amount
        return bool(original) and transaction.amount < original * self.config.anticipation_original_ratio

    def extract_installment(self, text: str | None) -> Optional[tuple[int, Optional[int]]]:
        """(number, total) from "parcela N/M" style markers; total is None for a bare "parcela N"."""
        if not text:
            return None
        for pattern, regex in self._patterns:
            if pattern.kind != "installment":
                continue
            match = regex.search(text)
            if not match or not match.groups():
                continue
            total = match.group(2) if len(match.groups()) >= 2 else None
            return int(match.group(1)), int(total) if total else None
        return None


def _codes_match(captured: str, code: str) -> bool:
    return captured == code or captured in code or code in captured


def _names_match(captured: str, customer_name: str) -> bool:
    extracted = normalize_text(captured)
    customer = normalize_text(customer_name)
    if not extracted or not customer:
        return False
    return extracted == customer or extracted in customer or customer in extracted
