# app/core/history.py

"""
Statistics derived from recent reconciliation links.

Feeds three scoring factors: historical patterns (similar value gaps
and date lags), seasonal patterns (settlement delay per sale month),
and the anticipation-aware value/date rules (same-month rate and
average discount).
"""

from datetime import date

from pydantic import BaseModel, Field

from app.config import MatchingConfig
from app.core.patterns import PatternDetector
from app.core.tolerance import ValueCategory, same_month, value_category
from app.models import HistoricalLink

SIMILAR_VALUE_GAP = 0.02
SIMILAR_DATE_LAG_DAYS = 1


class MonthStats(BaseModel):
    """Links whose sale/installment fell in one calendar month."""

    count: int = 0
    total_delay_days: int = 0
    categories: dict[str, int] = Field(
        default_factory=lambda: {"small": 0, "medium": 0, "large": 0}
    )

    @property
    def average_delay_days(self) -> float:
        return self.total_delay_days / self.count if self.count else 0.0

    def category_rate(self, category: ValueCategory) -> float:
        return self.categories.get(category, 0) / (self.count or 1)


class AnticipationStats(BaseModel):
    total: int = 0
    same_month_rate: float = 0.0
    average_discount: float = 0.0


class HistoryContext:
    """Precomputed history for one user, shared by every target of a run."""

    def __init__(
        self,
        links: list[HistoricalLink],
        months: list[MonthStats],
        anticipation: AnticipationStats,
        config: MatchingConfig,
    ):
        self.links = links
        self.months = months
        self.anticipation = anticipation
        self.config = config

    @classmethod
    def empty(cls, config: MatchingConfig) -> "HistoryContext":
        return cls([], [MonthStats() for _ in range(12)], AnticipationStats(), config)

    @classmethod
    def from_links(
        cls,
        links: list[HistoricalLink],
        config: MatchingConfig,
        detector: PatternDetector,
    ) -> "HistoryContext":
        months = [MonthStats() for _ in range(12)]
        for h in links:
            stats = months[h.target_date.month - 1]
            stats.count += 1
            stats.total_delay_days += (h.transaction.transaction_date - h.target_date).days
            stats.categories[value_category(h.target_amount, config)] += 1

        return cls(links, months, _anticipation_stats(links, detector), config)

    # ============================================
    # Historical patterns (0-100)
    # ============================================

    def pattern_score(self, amount: float, txn_amount: float, target_date: date, txn_date: date) -> float:
        """
        Count past links with a similar relative value gap or a similar
        date lag to this candidate, 10 points each.
        """
        if not self.links or not amount:
            return 0.0

        current_gap = abs(txn_amount - amount) / amount
        current_lag = abs((txn_date - target_date).days)

        similar_values = 0
        similar_dates = 0
        for h in self.links:
            if h.target_amount:
                gap = abs(h.transaction.amount - h.target_amount) / h.target_amount
                if abs(gap - current_gap) < SIMILAR_VALUE_GAP:
                    similar_values += 1
            lag = abs((h.transaction.transaction_date - h.target_date).days)
            if abs(lag - current_lag) < SIMILAR_DATE_LAG_DAYS:
                similar_dates += 1

        return float(min(100, (similar_values + similar_dates) * 10))

    # ============================================
    # Seasonal patterns (0-100)
    # ============================================

    def seasonal_score(self, txn_date: date, target_date: date, amount: float) -> float:
        if txn_date.month == target_date.month:
            return 100.0

        stats = self.months[target_date.month - 1]
        if stats.count == 0:
            return 50.0

        month_diff = (txn_date.month - target_date.month) % 12
        expected_months = round(stats.average_delay_days / 30)
        delay_match = max(0, 100 - abs(month_diff - expected_months) * 25)
        category_rate = stats.category_rate(value_category(amount, self.config)) * 100

        return min(100.0, delay_match * 0.7 + category_rate * 0.3)


def _anticipation_stats(links: list[HistoricalLink], detector: PatternDetector) -> AnticipationStats:
    anticipations = [h for h in links if detector.is_anticipation(h.transaction)]
    if not anticipations:
        return AnticipationStats()

    same = [h for h in anticipations if same_month(h.transaction.transaction_date, h.target_date)]

    with_amounts = [h for h in anticipations if h.target_amount and h.transaction.amount]
    total_discount = sum(
        (h.target_amount - h.transaction.amount) / h.target_amount * 100
        for h in with_amounts
        if h.transaction.amount < h.target_amount
    )

    return AnticipationStats(
        total=len(anticipations),
        same_month_rate=len(same) / len(anticipations),
        average_discount=total_discount / len(with_amounts) if with_amounts else 0.0,
    )
