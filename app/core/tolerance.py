# app/core/tolerance.py

"""
Tolerance bands for candidate selection.

Small amounts get a wider relative tolerance (fees weigh more on them);
the date window is fixed regardless of amount.
"""

import calendar
from datetime import date, timedelta
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

from app.config import MatchingConfig

ValueCategory = Literal["small", "medium", "large"]


class ToleranceBand(BaseModel):
    """Amount/date window a transaction must fall in to be a candidate."""

    model_config = ConfigDict(frozen=True)

    min_amount: float
    max_amount: float
    start_date: date
    end_date: date
    percentage: float

    def admits(self, amount: float, on: date) -> bool:
        return (
            self.min_amount <= amount <= self.max_amount
            and self.start_date <= on <= self.end_date
        )


def tolerance_percentage(amount: float, config: MatchingConfig) -> float:
    """Relative tolerance for an amount (0.15 / 0.07 / 0.03 with default tiers)."""
    amount = abs(amount)
    for tier in config.tolerance_tiers:
        if tier.max_amount is None or amount <= tier.max_amount:
            return tier.percentage
    return config.tolerance_tiers[-1].percentage


def value_category(amount: float, config: MatchingConfig) -> ValueCategory:
    """Bucket an amount by the same thresholds the tolerance tiers use."""
    thresholds = [t.max_amount for t in config.tolerance_tiers if t.max_amount is not None]
    amount = abs(amount)
    if thresholds and amount <= thresholds[0]:
        return "small"
    if len(thresholds) > 1 and amount <= thresholds[1]:
        return "medium"
    return "large"


def tolerance_band(amount: float, target_date: date, config: MatchingConfig) -> ToleranceBand:
    """Standard band: amount ± tolerance, date ± the configured window."""
    pct = tolerance_percentage(amount, config)
    window = timedelta(days=config.date_tolerance_days)
    return ToleranceBand(
        min_amount=amount * (1 - pct),
        max_amount=amount * (1 + pct),
        start_date=target_date - window,
        end_date=target_date + window,
        percentage=pct,
    )


def anticipation_band(amount: float, target_date: date, config: MatchingConfig) -> Optional[ToleranceBand]:
    """
    Band for discounted early settlement.

    Amounts from A x (1 - max discount) up to, but excluding, the standard
    lower bound, anywhere in the target's calendar month. None when the
    standard tolerance already covers the whole discount range.
    """
    standard = tolerance_band(amount, target_date, config)
    floor = amount * (1 - config.anticipation_max_discount)
    if floor >= standard.min_amount:
        return None

    last_day = calendar.monthrange(target_date.year, target_date.month)[1]
    return ToleranceBand(
        min_amount=floor,
        # exclusive upper bound, enforced by admits_anticipation
        max_amount=standard.min_amount,
        start_date=target_date.replace(day=1),
        end_date=target_date.replace(day=last_day),
        percentage=config.anticipation_max_discount,
    )


def admits_anticipation(band: ToleranceBand, amount: float, on: date) -> bool:
    """Anticipation bands exclude their upper bound."""
    return band.admits(amount, on) and amount < band.max_amount


def same_month(a: date, b: date) -> bool:
    return a.year == b.year and a.month == b.month
