# app/core/groups.py

"""
Installment-group reconciliation.

A sale paid in parcels can reach the ledger as several near-identical
transactions, none of which matches the sale total on its own. This
pass:

1. Groups unresolved transactions that look like parcels of one sale
   (similar amount, a few days apart, same payment method; or the same
   "#reference" in the description)
2. Picks the unresolved sale whose total is within 5% of the group total
   and whose installment count equals the group size
3. Links the group's payments to the sale's installments in order
"""

import logging
import re
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel

from app.config import MatchingConfig
from app.core.duplicates import filter_duplicates
from app.core.errors import AlreadyLinked, NotFound, PersistenceFailure
from app.core.matching import ReconciliationEngine
from app.core.normalizers import normalize_text
from app.core.patterns import PatternDetector
from app.core.store import ReconciliationStore
from app.models import (
    GroupOutcome,
    InstallmentGroupResult,
    ReconciliationTarget,
    Sale,
    Transaction,
)

logger = logging.getLogger(__name__)

_REFERENCE = re.compile(r"#(\d+)")


class TransactionGroup(BaseModel):
    transactions: list[Transaction]

    @property
    def total_amount(self) -> float:
        return sum(t.amount for t in self.transactions)

    @property
    def size(self) -> int:
        return len(self.transactions)

    @property
    def first_date(self) -> date:
        return min(t.transaction_date for t in self.transactions)


# ============================================
# Group detection
# ============================================

def find_installment_groups(transactions: list[Transaction], config: MatchingConfig) -> list[TransactionGroup]:
    """
    Group transactions that look like parcels of the same sale.

    Each transaction, oldest first, seeds a group and pulls in every
    later transaction that is in series with it. A transaction belongs
    to at most one group; single-member groups are dropped.
    """
    ordered = sorted(transactions, key=lambda t: (t.transaction_date, t.id))
    grouped: set[str] = set()
    groups = []

    for i, seed in enumerate(ordered):
        if seed.id in grouped:
            continue
        members = [seed]
        for other in ordered[i + 1:]:
            if other.id not in grouped and in_series(seed, other, config):
                members.append(other)
        if len(members) > 1:
            grouped.update(t.id for t in members)
            groups.append(TransactionGroup(transactions=members))

    return groups


def in_series(seed: Transaction, other: Transaction, config: MatchingConfig) -> bool:
    if abs((other.transaction_date - seed.transaction_date).days) > config.group_window_days:
        return False

    similar_amount = bool(seed.amount) and abs(seed.amount - other.amount) / seed.amount < config.group_amount_tolerance
    if similar_amount and _same_method(seed, other):
        return True
    return _same_reference(seed, other, config)


def _method(txn: Transaction) -> str:
    return (txn.payment_method or txn.provenance.payment_source or "").upper()


def _same_method(a: Transaction, b: Transaction) -> bool:
    method_a, method_b = _method(a), _method(b)
    return method_a == method_b or ("CARD" in method_a and "CARD" in method_b)


def _same_reference(a: Transaction, b: Transaction, config: MatchingConfig) -> bool:
    """Same "#123" reference, or, without one, enough long words in common."""
    ref = _REFERENCE.search(a.text)
    if ref:
        other = _REFERENCE.search(b.text)
        return other is not None and other.group(1) == ref.group(1)

    words = {w for w in normalize_text(a.text).split() if len(w) > 3}
    common = words & set(normalize_text(b.text).split())
    return len(common) >= config.group_min_common_words


def installment_order(group: TransactionGroup, detector: PatternDetector) -> list[Transaction]:
    """
    Group members in installment order: by their "parcela N" markers when
    every member carries a distinct one, otherwise by date.
    """
    markers = [detector.extract_installment(t.full_text) for t in group.transactions]
    numbers = [m[0] for m in markers if m]
    if len(numbers) == group.size and len(set(numbers)) == group.size:
        return [t for _, t in sorted(zip(numbers, group.transactions), key=lambda pair: pair[0])]
    return sorted(group.transactions, key=lambda t: (t.transaction_date, t.id))


# ============================================
# Reconciler
# ============================================

class InstallmentGroupReconciler:
    """Links transaction groups to the installments of a single sale."""

    def __init__(
        self,
        store: ReconciliationStore,
        config: MatchingConfig,
        engine: ReconciliationEngine | None = None,
    ):
        self.store = store
        self.config = config
        self.engine = engine or ReconciliationEngine(store, config)

    def match_sale(self, group: TransactionGroup, sales: list[Sale]) -> Optional[Sale]:
        """Closest total among sales with as many installments as the group has payments."""
        total = group.total_amount
        tolerance = self.config.group_total_tolerance
        fits = [
            s for s in sales
            if len(s.installments) == group.size
            and total * (1 - tolerance) <= s.amount <= total * (1 + tolerance)
        ]
        if not fits:
            return None
        return min(fits, key=lambda s: (abs(s.amount - total), abs((group.first_date - s.sale_date).days), s.id))

    async def reconcile(
        self,
        user_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        wallet_id: Optional[str] = None,
    ) -> InstallmentGroupResult:
        """
        Find and link installment groups within the window.

        Only sales with installments and no link at all are candidates.
        Storage failures while loading propagate; a failure while
        linking one group is logged and counted.
        """
        start_time = datetime.now()
        finder = self.engine.finder

        try:
            links = await self.store.fetch_active_links(user_id)
            sales = await finder.find_unresolved_sales(user_id, links, start_date, end_date)
            transactions = await finder.find_unresolved_transactions(user_id, start_date, end_date, wallet_id)
        except PersistenceFailure:
            logger.error(f"Installment group reconciliation aborted for user {user_id}: storage unavailable")
            raise

        linked_sales = {link.sale_id for link in links}
        open_sales = [s for s in sales if s.installments and s.id not in linked_sales]
        transactions, _ = filter_duplicates(transactions, links, self.config)
        groups = find_installment_groups(transactions, self.config)

        result = InstallmentGroupResult(groups_found=len(groups))
        for group in groups:
            outcome = GroupOutcome(
                transaction_ids=[t.id for t in group.transactions],
                total_amount=round(group.total_amount, 2),
            )
            result.groups.append(outcome)

            sale = self.match_sale(group, open_sales)
            if sale is None:
                continue
            open_sales.remove(sale)
            outcome.sale_id = sale.id

            try:
                await self._link_group(user_id, group, sale, outcome)
            except Exception:
                logger.exception(f"Failed to link installment group to sale {sale.id}")
                outcome.outcome = "failed"

            if outcome.outcome == "linked":
                result.groups_reconciled += 1
            elif outcome.outcome == "failed":
                result.failed += 1
            result.transactions_reconciled += len(outcome.link_ids)

        duration_ms = int((datetime.now() - start_time).total_seconds() * 1000)
        logger.info(
            f"Installment groups for user {user_id} done in {duration_ms}ms: "
            f"{result.groups_reconciled}/{result.groups_found} groups linked"
        )
        return result

    async def _link_group(
        self,
        user_id: str,
        group: TransactionGroup,
        sale: Sale,
        outcome: GroupOutcome,
    ) -> None:
        total = group.total_amount
        confidence = max(0.0, 100 * (1 - abs(total - sale.amount) / sale.amount))
        outcome.confidence = round(confidence, 2)

        installments = sorted(sale.installments, key=lambda i: i.number)
        payments = installment_order(group, self.engine.detector)

        for txn, installment in zip(payments, installments):
            target = ReconciliationTarget.for_installment(sale, installment)
            try:
                link = await self.engine.writer.write(
                    user_id,
                    target,
                    txn,
                    confidence=confidence,
                    breakdown={
                        "group_size": group.size,
                        "group_total": round(total, 2),
                        "installment_number": installment.number,
                    },
                )
            except (AlreadyLinked, NotFound) as e:
                logger.info(f"{target.label}: skipped, {e}")
                continue
            outcome.link_ids.append(link.id)

        outcome.outcome = "linked" if outcome.link_ids else "already_linked"
