# app/core/confidence.py

"""
Confidence scoring for sale/transaction matching.

Eight factors, each 0-100, combined with the configured weights:
- Value proximity      (anticipation-aware)
- Date proximity       (anticipation-aware)
- Channel match
- Customer recurrence
- Historical patterns
- Text similarity
- Vendor pattern
- Seasonal pattern

Anticipation candidates get a flat bonus when the batch holds any.
"""

from datetime import date

from pydantic import BaseModel

from app.config import MatchingConfig
from app.core.history import HistoryContext
from app.core.patterns import PatternDetector
from app.core.text_similarity import text_similarity
from app.core.tolerance import same_month
from app.models import ConfidenceBreakdown, ReconciliationTarget, Transaction


class ScoredCandidate(BaseModel):
    transaction: Transaction
    breakdown: ConfidenceBreakdown
    date_diff: int
    position: int

    @property
    def total(self) -> float:
        return self.breakdown.total


class ConfidenceScorer:
    """Deterministic multi-factor scorer."""

    def __init__(self, config: MatchingConfig, detector: PatternDetector | None = None):
        self.config = config
        self.detector = detector or PatternDetector(config)

    def score(
        self,
        candidates: list[Transaction],
        target: ReconciliationTarget,
        history: HistoryContext,
        customer_matches: int = 0,
    ) -> list[ScoredCandidate]:
        """
        Score every candidate for a target.

        Best first; ties go to the smaller date difference, then to the
        order candidates were returned in.
        """
        flags = [self.detector.is_anticipation(t) for t in candidates]
        has_anticipation = any(flags)

        scored = [
            ScoredCandidate(
                transaction=txn,
                breakdown=self.breakdown(
                    txn, target, history, customer_matches,
                    is_anticipation=flags[i],
                    batch_has_anticipation=has_anticipation,
                ),
                date_diff=abs((txn.transaction_date - target.due_date).days),
                position=i,
            )
            for i, txn in enumerate(candidates)
        ]
        scored.sort(key=lambda s: (-s.total, s.date_diff, s.position))
        return scored

    def breakdown(
        self,
        txn: Transaction,
        target: ReconciliationTarget,
        history: HistoryContext,
        customer_matches: int = 0,
        is_anticipation: bool | None = None,
        batch_has_anticipation: bool = False,
    ) -> ConfidenceBreakdown:
        """Score one (target, transaction) pair."""
        if is_anticipation is None:
            is_anticipation = self.detector.is_anticipation(txn)

        factors: list[str] = []
        w = self.config.weights

        value = self._score_value(txn.amount, target.amount, is_anticipation, history, factors)
        when = self._score_date(txn.transaction_date, target.due_date, is_anticipation, history, factors)
        channel = self._score_channel(txn, target.channel, factors)
        customer = self._score_customer(target.customer_name, customer_matches, factors)
        historical = history.pattern_score(
            target.amount, txn.amount, target.due_date, txn.transaction_date
        )
        text = self._score_text(txn, target, factors)
        vendor = self._score_vendor(txn, target, factors)
        seasonal = history.seasonal_score(txn.transaction_date, target.due_date, target.amount)

        total = (
            value * w.value_proximity
            + when * w.date_proximity
            + channel * w.channel_match
            + customer * w.customer_recurrence
            + historical * w.historical_patterns
            + text * w.text_similarity
            + vendor * w.vendor_pattern
            + seasonal * w.seasonal_pattern
        )

        bonus = 0.0
        if is_anticipation and batch_has_anticipation:
            bonus = self.config.anticipation_bonus
            factors.append("Anticipation candidate prioritized")

        return ConfidenceBreakdown(
            value_proximity=value,
            date_proximity=when,
            channel_match=channel,
            customer_recurrence=customer,
            historical_patterns=historical,
            text_similarity=text,
            vendor_pattern=vendor,
            seasonal_pattern=seasonal,
            anticipation_bonus=bonus,
            total=round(total + bonus, 2),
            is_anticipation=is_anticipation,
            factors=factors,
        )

    # ============================================
    # Individual factors
    # ============================================

    def _score_value(
        self,
        txn_amount: float,
        target_amount: float,
        is_anticipation: bool,
        history: HistoryContext,
        factors: list[str],
    ) -> float:
        if target_amount <= 0:
            return 0.0

        if is_anticipation and txn_amount < target_amount:
            expected = history.anticipation.average_discount or self.config.default_anticipation_discount
            discount = (target_amount - txn_amount) / target_amount * 100
            proximity = abs(discount - expected)

            if proximity < 5 or 1 <= discount <= self.config.anticipation_max_discount * 100:
                factors.append(f"Anticipation discount of {discount:.1f}% within typical range")
                return 95.0
            factors.append(f"Atypical anticipation discount of {discount:.1f}%")
            return max(0.0, 100 - proximity * 2)

        diff_percent = abs(txn_amount - target_amount) / target_amount * 100
        if diff_percent < 0.01:
            factors.append("Exact amount match")
        else:
            factors.append(f"Amount differs by {diff_percent:.1f}%")
        return max(0.0, 100 - diff_percent * 10)

    def _score_date(
        self,
        txn_date: date,
        target_date: date,
        is_anticipation: bool,
        history: HistoryContext,
        factors: list[str],
    ) -> float:
        days = abs((txn_date - target_date).days)

        if is_anticipation and same_month(txn_date, target_date):
            bonus = 50 if history.anticipation.same_month_rate > 0.5 else 30
            factors.append(f"Same-month anticipation, {days} days from due date")
            return min(100.0, max(0, 100 - days * 10) + bonus)

        if days == 0:
            factors.append("Same day")
        else:
            factors.append(f"{days} days apart")
        return float(max(0, 100 - days * 20))

    def _score_channel(self, txn: Transaction, channel: str | None, factors: list[str]) -> float:
        source = txn.provenance.payment_source or txn.payment_method
        if not channel or not source:
            return 50.0

        if source.upper() in self.config.channel_sources.get(channel, ()):
            factors.append(f"{source} is a usual source for {channel} sales")
            return 100.0
        return 0.0

    def _score_customer(self, customer_name: str | None, matches: int, factors: list[str]) -> float:
        if not customer_name:
            return 0.0
        matches = min(matches, self.config.customer_recurrence_limit)
        if matches:
            factors.append(f"Customer seen in {matches} previous transactions")
        return float(min(100, matches * 20))

    def _score_text(self, txn: Transaction, target: ReconciliationTarget, factors: list[str]) -> float:
        reference = target.sale.description or target.customer_name
        if not reference or not txn.text:
            return 0.0

        score = text_similarity(reference, txn.text, self.config.stop_words)
        if score >= 100:
            factors.append("Description matches sale")
        elif score > 50:
            factors.append("Description similar to sale")
        return score

    def _score_vendor(self, txn: Transaction, target: ReconciliationTarget, factors: list[str]) -> float:
        if not target.code and not target.customer_name:
            return 0.0
        return self.detector.score(txn.text, target.code, target.customer_name, factors)
