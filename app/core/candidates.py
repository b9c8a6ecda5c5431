# app/core/candidates.py

"""
Candidate selection.

Finds the unresolved sales/installments of a user and, for each one,
the unresolved INCOME transactions inside its tolerance band plus the
anticipation set (discounted, same calendar month, anticipation text).
"""

import calendar
import logging
from datetime import date
from typing import Optional

from pydantic import BaseModel, Field

from app.config import MatchingConfig
from app.core.pagination import Pages
from app.core.patterns import PatternDetector
from app.core.store import ReconciliationStore, TransactionQuery
from app.core.tolerance import (
    admits_anticipation,
    anticipation_band,
    tolerance_band,
)
from app.models import ReconciliationLink, ReconciliationTarget, Sale, Transaction

logger = logging.getLogger(__name__)


class CandidateSet(BaseModel):
    standard: list[Transaction] = Field(default_factory=list)
    anticipation: list[Transaction] = Field(default_factory=list)

    @property
    def all(self) -> list[Transaction]:
        """Standard candidates first, then anticipation ones not already present."""
        seen = {t.id for t in self.standard}
        return self.standard + [t for t in self.anticipation if t.id not in seen]


# ============================================
# Unresolved sales
# ============================================

def linked_pairs(links: list[ReconciliationLink]) -> set[tuple[str, Optional[str]]]:
    return {(link.sale_id, link.installment_id) for link in links}


def unresolved_targets(sale: Sale, pairs: set[tuple[str, Optional[str]]]) -> list[ReconciliationTarget]:
    """
    Targets of a sale still waiting for a transaction.

    A sale with installments yields each installment without a link;
    a sale without installments yields itself while it has no link at all.
    """
    if sale.installments:
        return [
            ReconciliationTarget.for_installment(sale, inst)
            for inst in sorted(sale.installments, key=lambda i: i.number)
            if (sale.id, inst.id) not in pairs
        ]

    if any(sale_id == sale.id for sale_id, _ in pairs):
        return []
    return [ReconciliationTarget.for_sale(sale)]


def sale_is_unresolved(sale: Sale, pairs: set[tuple[str, Optional[str]]]) -> bool:
    return bool(unresolved_targets(sale, pairs))


def add_months(d: date, months: int) -> date:
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


class CandidateFinder:
    """Storage-backed candidate queries."""

    def __init__(self, store: ReconciliationStore, config: MatchingConfig, detector: PatternDetector | None = None):
        self.store = store
        self.config = config
        self.detector = detector or PatternDetector(config)

    def _pages(self, query: TransactionQuery, label: str) -> Pages[Transaction]:
        async def fetch(offset: int, limit: int) -> list[Transaction]:
            return await self.store.fetch_transactions_page(query, offset, limit)

        return Pages(fetch, self.config.page_size, self.config.max_pages, label=label)

    async def find_unresolved_sales(
        self,
        user_id: str,
        links: list[ReconciliationLink],
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> list[Sale]:
        sales = await self.store.fetch_sales(user_id, start_date, end_date)
        pairs = linked_pairs(links)
        return [s for s in sales if sale_is_unresolved(s, pairs)]

    async def find_candidates(
        self,
        user_id: str,
        target: ReconciliationTarget,
        wallet_id: Optional[str] = None,
    ) -> CandidateSet:
        """Standard band candidates plus the anticipation set for one target."""
        band = tolerance_band(target.amount, target.due_date, self.config)
        standard = await self._pages(
            TransactionQuery(
                user_id=user_id,
                min_amount=band.min_amount,
                max_amount=band.max_amount,
                start_date=band.start_date,
                end_date=band.end_date,
                wallet_id=wallet_id,
            ),
            label=f"candidates for {target.label}",
        ).collect()

        anticipation: list[Transaction] = []
        discounted = anticipation_band(target.amount, target.due_date, self.config)
        if discounted is not None:
            found = await self._pages(
                TransactionQuery(
                    user_id=user_id,
                    min_amount=discounted.min_amount,
                    max_amount=discounted.max_amount,
                    max_exclusive=True,
                    start_date=discounted.start_date,
                    end_date=discounted.end_date,
                    wallet_id=wallet_id,
                    text_terms=self.config.anticipation_query_terms,
                ),
                label=f"anticipation candidates for {target.label}",
            ).collect()
            anticipation = [
                t for t in found
                if admits_anticipation(discounted, t.amount, t.transaction_date)
                and self.detector.mentions_anticipation(t.full_text)
            ]

        logger.debug(
            f"{target.label}: {len(standard)} standard, {len(anticipation)} anticipation candidates"
        )
        return CandidateSet(standard=standard, anticipation=anticipation)

    async def find_unresolved_transactions(
        self,
        user_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        wallet_id: Optional[str] = None,
    ) -> list[Transaction]:
        return await self._pages(
            TransactionQuery(user_id=user_id, start_date=start_date, end_date=end_date, wallet_id=wallet_id),
            label="unresolved transactions",
        ).collect()

    async def suggest_for_sale(self, user_id: str, sale: Sale) -> list[Transaction]:
        """
        Unresolved INCOME transactions an operator might link by hand:
        from the sale date to three months later, within 5% of the amount.
        """
        amount = sale.amount
        spread = amount * self.config.suggestion_tolerance
        found = await self._pages(
            TransactionQuery(
                user_id=user_id,
                min_amount=amount - spread,
                max_amount=amount + spread,
                start_date=sale.sale_date,
                end_date=add_months(sale.sale_date, self.config.suggestion_months),
            ),
            label=f"suggestions for sale {sale.id}",
        ).collect()
        return sorted(found, key=lambda t: (t.transaction_date, t.amount))

    async def find_transactions_by_code(self, user_id: str, code: str) -> list[Transaction]:
        """
        Every transaction that mentions a sale code in its description or
        name, or was reconciled under it. Reconciled or not, any type,
        oldest first.
        """
        return await self._pages(
            TransactionQuery(
                user_id=user_id,
                type=None,
                unreconciled_only=False,
                text_terms=(code,),
                reconciled_sale_code=code,
            ),
            label=f"transactions mentioning code {code}",
        ).collect()
