# app/core/matching.py

"""
Core reconciliation engine.

Links ledger transactions to the sales (or installments) they pay,
without human intervention. Per target:

1. Skip if the target already has a link
2. Find candidates (tolerance band + anticipation set)
3. Drop near-duplicates of already reconciled transactions
4. Score the rest and keep the best
5. Write the link if the best score clears the threshold
"""

import logging
from datetime import date, datetime, timedelta
from typing import Optional

from app.config import MatchingConfig
from app.core.candidates import CandidateFinder, linked_pairs, unresolved_targets
from app.core.confidence import ConfidenceScorer, ScoredCandidate
from app.core.duplicates import filter_duplicates, is_near_duplicate
from app.core.errors import AlreadyLinked, NotFound, PersistenceFailure
from app.core.history import HistoryContext
from app.core.links import LinkWriter
from app.core.patterns import PatternDetector
from app.core.store import ReconciliationStore
from app.core.tolerance import admits_anticipation, anticipation_band, tolerance_band
from app.models import (
    ReconciliationLink,
    ReconciliationResult,
    ReconciliationTarget,
    Sale,
    SaleReconciliationResult,
    TargetOutcome,
    Transaction,
    TransactionReconciliationResult,
)

logger = logging.getLogger(__name__)


def tally(result: ReconciliationResult, outcome: TargetOutcome) -> None:
    """Count one target outcome into a batch result."""
    details = result.details
    if outcome.matched:
        result.matched += 1
        details.new_links_created += 1
    else:
        result.unmatched += 1
        if outcome.outcome == "failed":
            details.failed += 1
        elif outcome.already_linked:
            details.already_linked_skipped += 1
        elif outcome.multiple_matches:
            details.multiple_matches_found += 1
        else:
            details.no_match_found += 1
    details.duplicates_filtered += outcome.possible_duplicates


def finalize(result: ReconciliationResult) -> ReconciliationResult:
    result.total_processed = result.matched + result.unmatched
    details = result.details
    details.transactions_processed = (
        details.new_links_created + details.already_linked_skipped + details.multiple_matches_found
    )
    return result


class ReconciliationEngine:
    """Deterministic reconciliation over a storage backend."""

    def __init__(
        self,
        store: ReconciliationStore,
        config: MatchingConfig,
        detector: PatternDetector | None = None,
    ):
        self.store = store
        self.config = config
        self.detector = detector or PatternDetector(config)
        self.scorer = ConfidenceScorer(config, self.detector)
        self.finder = CandidateFinder(store, config, self.detector)
        self.writer = LinkWriter(store)

    async def load_history(self, user_id: str) -> HistoryContext:
        since = date.today() - timedelta(days=self.config.history_lookback_days)
        links = await self.store.fetch_link_history(user_id, since, self.config.history_limit)
        return HistoryContext.from_links(links, self.config, self.detector)

    # ============================================
    # Batch
    # ============================================

    async def reconcile(
        self,
        user_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        wallet_id: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Reconcile every unresolved sale of a user dated within the window.

        Storage failures while loading the batch propagate; failures on
        a single target are logged and counted.
        """
        start_time = datetime.now()

        try:
            links = await self.store.fetch_active_links(user_id)
            sales = await self.finder.find_unresolved_sales(user_id, links, start_date, end_date)
            history = await self.load_history(user_id)
        except PersistenceFailure:
            logger.error(f"Reconciliation aborted for user {user_id}: storage unavailable")
            raise

        logger.info(f"Reconciling {len(sales)} unresolved sales for user {user_id}")

        result = ReconciliationResult()
        result.details.sales_processed = len(sales)

        for sale in sales:
            for outcome in await self._reconcile_targets(user_id, sale, links, history, wallet_id):
                tally(result, outcome)

        finalize(result)
        duration_ms = int((datetime.now() - start_time).total_seconds() * 1000)
        logger.info(
            f"Reconciliation for user {user_id} done in {duration_ms}ms: "
            f"{result.matched} matched, {result.unmatched} unmatched"
        )
        return result

    async def _reconcile_targets(
        self,
        user_id: str,
        sale: Sale,
        links: list[ReconciliationLink],
        history: HistoryContext,
        wallet_id: Optional[str],
    ) -> list[TargetOutcome]:
        if sale.installments:
            targets = [
                ReconciliationTarget.for_installment(sale, inst)
                for inst in sorted(sale.installments, key=lambda i: i.number)
            ]
        else:
            targets = [ReconciliationTarget.for_sale(sale)]

        outcomes = []
        for target in targets:
            try:
                outcome = await self.reconcile_target(user_id, target, links, history, wallet_id)
            except Exception:
                logger.exception(f"Failed to reconcile {target.label}")
                outcome = TargetOutcome(
                    sale_id=target.sale_id,
                    installment_id=target.installment_id,
                    outcome="failed",
                )
            outcomes.append(outcome)
        return outcomes

    # ============================================
    # Single target
    # ============================================

    async def reconcile_target(
        self,
        user_id: str,
        target: ReconciliationTarget,
        links: list[ReconciliationLink],
        history: HistoryContext,
        wallet_id: Optional[str] = None,
    ) -> TargetOutcome:
        """
        Run the pipeline for one sale or installment.

        `links` is the user's active links; a link written here is
        appended to it so later targets see it.
        """
        outcome = TargetOutcome(
            sale_id=target.sale_id,
            installment_id=target.installment_id,
            outcome="no_match",
        )

        if await self.store.find_link_for_target(target.sale_id, target.installment_id) is not None:
            outcome.outcome = "already_linked"
            return outcome

        candidates = (await self.finder.find_candidates(user_id, target, wallet_id)).all
        if not candidates:
            return outcome

        kept, dropped = filter_duplicates(candidates, links, self.config)
        outcome.possible_duplicates = len(dropped)
        outcome.candidates = len(kept)
        outcome.multiple_matches = len(kept) > 1
        if not kept:
            return outcome

        customer_matches = await self._customer_matches(user_id, target)
        best = self.scorer.score(kept, target, history, customer_matches)[0]
        outcome.confidence = best.total

        if best.total < self.config.min_confidence:
            logger.debug(f"{target.label}: best score {best.total} below {self.config.min_confidence}")
            return outcome

        return await self._write(user_id, target, best, links, outcome)

    async def _customer_matches(self, user_id: str, target: ReconciliationTarget) -> int:
        if not target.customer_name:
            return 0
        return await self.store.count_customer_transactions(
            user_id, target.customer_name, self.config.customer_recurrence_limit
        )

    async def _write(
        self,
        user_id: str,
        target: ReconciliationTarget,
        best: ScoredCandidate,
        links: list[ReconciliationLink],
        outcome: TargetOutcome,
    ) -> TargetOutcome:
        outcome.transaction_id = best.transaction.id
        try:
            link = await self.writer.write(
                user_id,
                target,
                best.transaction,
                confidence=best.total,
                breakdown=best.breakdown.model_dump(),
            )
        except AlreadyLinked as e:
            logger.info(f"{target.label}: skipped, {e}")
            outcome.outcome = "already_linked"
            return outcome
        except NotFound as e:
            logger.warning(f"{target.label}: {e} before the link was written")
            outcome.outcome = "not_found"
            return outcome

        links.append(link.model_copy(update={"transaction": best.transaction}))
        outcome.outcome = "linked"
        outcome.link_id = link.id
        return outcome

    # ============================================
    # Entry points for one sale / one transaction
    # ============================================

    async def reconcile_sale(
        self, user_id: str, sale_id: str, wallet_id: Optional[str] = None
    ) -> SaleReconciliationResult:
        sale = await self.store.get_sale(user_id, sale_id)
        if sale is None:
            raise NotFound("sale", sale_id)

        links = await self.store.fetch_active_links(user_id)
        history = await self.load_history(user_id)
        outcomes = await self._reconcile_targets(user_id, sale, links, history, wallet_id)
        return sale_result(sale_id, outcomes)

    async def reconcile_transaction(self, user_id: str, transaction_id: str) -> TransactionReconciliationResult:
        """Find the best unresolved sale/installment for one transaction."""
        txn = await self.store.get_transaction(user_id, transaction_id)
        if txn is None:
            raise NotFound("transaction", transaction_id)

        result = TransactionReconciliationResult(transaction_id=transaction_id)
        if txn.is_reconciled or await self.store.find_link_for_transaction(transaction_id) is not None:
            result.already_linked = True
            return result

        links = await self.store.fetch_active_links(user_id)
        if any(
            link.transaction and is_near_duplicate(txn, link.transaction, self.config)
            for link in links
        ):
            logger.info(f"Transaction {transaction_id} looks like a duplicate of a reconciled one")
            return result

        start = txn.transaction_date - timedelta(days=self.config.transaction_sale_lookback_days)
        end = txn.transaction_date + timedelta(days=self.config.date_tolerance_days)
        sales = await self.store.fetch_sales(user_id, start, end)
        history = await self.load_history(user_id)

        is_anticipation = self.detector.is_anticipation(txn)
        pairs = linked_pairs(links)
        best: Optional[tuple[ReconciliationTarget, ScoredCandidate]] = None

        for sale in sales:
            for target in unresolved_targets(sale, pairs):
                if not self._admits(target, txn, is_anticipation):
                    continue
                breakdown = self.scorer.breakdown(
                    txn, target, history,
                    await self._customer_matches(user_id, target),
                    is_anticipation=is_anticipation,
                    batch_has_anticipation=is_anticipation,
                )
                scored = ScoredCandidate(
                    transaction=txn,
                    breakdown=breakdown,
                    date_diff=abs((txn.transaction_date - target.due_date).days),
                    position=0,
                )
                if best is None or (scored.total, -scored.date_diff) > (best[1].total, -best[1].date_diff):
                    best = (target, scored)

        if best is None or best[1].total < self.config.min_confidence:
            return result

        target, scored = best
        outcome = await self._write(
            user_id, target, scored, links,
            TargetOutcome(sale_id=target.sale_id, installment_id=target.installment_id, outcome="no_match"),
        )
        result.matched = outcome.matched
        result.already_linked = outcome.already_linked
        result.sale_id = target.sale_id
        result.installment_id = target.installment_id
        result.link_id = outcome.link_id
        result.confidence = scored.total
        result.scoring_method = "deterministic"
        return result

    def _admits(self, target: ReconciliationTarget, txn: Transaction, is_anticipation: bool) -> bool:
        if tolerance_band(target.amount, target.due_date, self.config).admits(txn.amount, txn.transaction_date):
            return True
        if not is_anticipation:
            return False
        band = anticipation_band(target.amount, target.due_date, self.config)
        return band is not None and admits_anticipation(band, txn.amount, txn.transaction_date)


def sale_result(sale_id: str, outcomes: list[TargetOutcome]) -> SaleReconciliationResult:
    matched = any(o.matched for o in outcomes)
    return SaleReconciliationResult(
        sale_id=sale_id,
        matched=matched,
        already_linked=not matched and any(o.already_linked for o in outcomes),
        outcomes=outcomes,
    )
