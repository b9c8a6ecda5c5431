# app/core/learning.py

"""
Learning reconciliation.

Once a user has enough manually confirmed links, those links are
replayed as feature statistics for a six-feature weighted score,
sharpened with a logistic curve. Nothing is fit: "learning" means the
customer and seasonal features look at past confirmed pairs, and the
pool of pairs grows with every run.

Below the sample threshold the deterministic engine runs instead.
"""

import logging
import math
from datetime import date, datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from app.config import MatchingConfig
from app.core.candidates import linked_pairs
from app.core.duplicates import filter_duplicates
from app.core.errors import AlreadyLinked, NotFound
from app.core.matching import ReconciliationEngine, finalize, tally
from app.core.store import ReconciliationStore
from app.core.text_similarity import text_similarity
from app.models import (
    HistoricalLink,
    LearningFeatures,
    LearningStats,
    ReconciliationLink,
    ReconciliationResult,
    ReconciliationTarget,
    TargetOutcome,
    Transaction,
    TransactionReconciliationResult,
)

logger = logging.getLogger(__name__)


class TrainingPool:
    """Pairs matched by the learning path, kept per user for the next runs."""

    def __init__(self):
        self._examples: dict[str, list[HistoricalLink]] = {}

    def add(self, user_id: str, examples: list[HistoricalLink]) -> None:
        self._examples.setdefault(user_id, []).extend(examples)

    def examples(self, user_id: str) -> list[HistoricalLink]:
        return list(self._examples.get(user_id, []))

    def __len__(self) -> int:
        return sum(len(v) for v in self._examples.values())


class Prediction(BaseModel):
    target: ReconciliationTarget
    transaction: Transaction
    features: LearningFeatures

    @property
    def confidence(self) -> float:
        return self.features.confidence


# ============================================
# Features
# ============================================

class LearningScorer:
    """Feature extraction against a fixed training set."""

    def __init__(self, config: MatchingConfig, training: list[HistoricalLink]):
        self.config = config
        self.learning = config.learning
        self.training = training

    def admits(self, txn: Transaction, target: ReconciliationTarget) -> bool:
        """Coarse pre-filter: within 50% of the amount and 90 days of the date."""
        if not target.amount:
            return False
        if abs(txn.amount - target.amount) / target.amount > self.learning.value_window:
            return False
        return abs((txn.transaction_date - target.due_date).days) <= self.learning.date_window_days

    def features(self, txn: Transaction, target: ReconciliationTarget) -> LearningFeatures:
        w = self.learning.weights
        value = self._value_distance(txn.amount, target.amount)
        when = max(0.0, 1 - abs((txn.transaction_date - target.due_date).days) / self.learning.date_horizon_days)
        text = text_similarity(_target_text(target), txn.full_text, self.config.stop_words) / 100
        channel = self._channel_match(txn, target)
        customer = self._customer_pattern(txn, target)
        seasonal = self._seasonal_pattern(txn.transaction_date, target.due_date)

        raw = (
            value * w.value_distance
            + when * w.date_distance
            + text * w.text_similarity
            + channel * w.channel_match
            + customer * w.customer_pattern
            + seasonal * w.seasonal_pattern
        )
        return LearningFeatures(
            value_distance=value,
            date_distance=when,
            text_similarity=text,
            channel_match=channel,
            customer_pattern=customer,
            seasonal_pattern=seasonal,
            raw_score=raw,
            confidence=self.squash(raw),
        )

    def squash(self, score: float) -> float:
        """Logistic transform centred on the midpoint."""
        return 1 / (1 + math.exp(-self.learning.steepness * (score - self.learning.midpoint)))

    @staticmethod
    def _value_distance(a: float, b: float) -> float:
        largest = max(abs(a), abs(b))
        if largest == 0:
            return 1.0
        return max(0.0, 1 - abs(a - b) / largest * 2)

    @staticmethod
    def _channel_match(txn: Transaction, target: ReconciliationTarget) -> float:
        if not target.channel:
            return 0.5
        return 1.0 if target.channel.lower() in txn.full_text.lower() else 0.3

    def _customer_pattern(self, txn: Transaction, target: ReconciliationTarget) -> float:
        customer = target.customer_name
        if not customer:
            return 0.5
        if customer.lower() in txn.full_text.lower():
            return 1.0

        history = [h for h in self.training if h.sale.customer_name == customer]
        if not history:
            return 0.5

        best = 0.0
        for h in history:
            similarity = text_similarity(
                h.transaction.full_text, txn.full_text, self.config.stop_words
            ) / 100
            same_method = 1.0 if h.transaction.payment_method == txn.payment_method else 0.0
            best = max(best, similarity * 0.7 + same_method * 0.3)
        return best

    def _seasonal_pattern(self, txn_date: date, target_date: date) -> float:
        month_diff = abs(txn_date.month - target_date.month)
        if month_diff > self.learning.seasonal_max_month_diff:
            return 0.3

        same_lag = sum(
            1 for h in self.training
            if abs(h.transaction.transaction_date.month - h.target_date.month) == month_diff
        )
        if same_lag == 0:
            return max(0.3, 1 - month_diff / 6)
        return min(1.0, 0.5 + same_lag / 10 * 0.5)


def _target_text(target: ReconciliationTarget) -> str:
    parts = [target.sale.description, target.code, target.customer_name]
    return " ".join(p for p in parts if p)


# ============================================
# Reconciler
# ============================================

class LearningReconciler:
    """Learning path with deterministic fallback."""

    def __init__(
        self,
        store: ReconciliationStore,
        config: MatchingConfig,
        engine: ReconciliationEngine | None = None,
        pool: TrainingPool | None = None,
    ):
        self.store = store
        self.config = config
        self.engine = engine or ReconciliationEngine(store, config)
        self.pool = pool if pool is not None else TrainingPool()

    async def is_ready(self, user_id: str) -> bool:
        confirmed = await self.store.count_confirmed_links(user_id)
        return confirmed >= self.config.learning.min_samples

    async def load_training(self, user_id: str) -> list[HistoricalLink]:
        """Confirmed links (most recent first) plus pairs pooled from earlier runs."""
        learning = self.config.learning
        since = date.today() - timedelta(days=learning.lookback_days)
        confirmed = await self.store.fetch_link_history(
            user_id, since, learning.training_limit, manually_confirmed=True
        )

        seen = {h.link.id for h in confirmed}
        pooled = [h for h in self.pool.examples(user_id) if h.link.id not in seen]
        return (confirmed + pooled)[: learning.training_limit]

    async def reconcile(
        self,
        user_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        wallet_id: Optional[str] = None,
    ) -> ReconciliationResult:
        if not await self.is_ready(user_id):
            logger.warning(
                f"Not enough confirmed links for user {user_id} to use learning, "
                f"falling back to deterministic scoring"
            )
            return await self.engine.reconcile(user_id, start_date, end_date, wallet_id)

        start_time = datetime.now()
        training = await self.load_training(user_id)
        scorer = LearningScorer(self.config, training)
        threshold = self.config.learning.acceptance_threshold

        links = await self.store.fetch_active_links(user_id)
        sales = await self.engine.finder.find_unresolved_sales(user_id, links, start_date, end_date)

        targets: list[ReconciliationTarget] = []
        for sale in sales:
            if sale.installments:
                targets.extend(
                    ReconciliationTarget.for_installment(sale, inst)
                    for inst in sorted(sale.installments, key=lambda i: i.number)
                )
            else:
                targets.append(ReconciliationTarget.for_sale(sale))

        result = ReconciliationResult()
        result.details.sales_processed = len(sales)
        result.details.learning = LearningStats(active=True, training_samples=len(training))
        if not targets:
            return finalize(result)

        padding = timedelta(days=self.config.learning.transaction_padding_days)
        transactions = await self.engine.finder.find_unresolved_transactions(
            user_id,
            min(t.due_date for t in targets) - padding,
            max(t.due_date for t in targets) + padding,
            wallet_id,
        )
        transactions, dropped = filter_duplicates(transactions, links, self.config)
        result.details.duplicates_filtered = len(dropped)

        pairs = linked_pairs(links)
        open_targets = [t for t in targets if (t.sale_id, t.installment_id) not in pairs]

        predictions = [
            Prediction(target=target, transaction=txn, features=scorer.features(txn, target))
            for target in open_targets
            for txn in transactions
            if scorer.admits(txn, target)
        ]
        accepted = sorted(
            (p for p in predictions if p.confidence >= threshold),
            key=lambda p: -p.confidence,
        )

        outcomes: dict[tuple[str, Optional[str]], TargetOutcome] = {
            (t.sale_id, t.installment_id): TargetOutcome(
                sale_id=t.sale_id,
                installment_id=t.installment_id,
                outcome="already_linked" if (t.sale_id, t.installment_id) in pairs else "no_match",
            )
            for t in targets
        }
        for p in accepted:
            outcome = outcomes[(p.target.sale_id, p.target.installment_id)]
            outcome.candidates += 1
            outcome.multiple_matches = outcome.candidates > 1

        used_transactions: set[str] = set()
        created: list[HistoricalLink] = []
        for p in accepted:
            outcome = outcomes[(p.target.sale_id, p.target.installment_id)]
            if outcome.outcome != "no_match" or p.transaction.id in used_transactions:
                continue
            try:
                link = await self._write(user_id, p, outcome)
            except Exception:
                logger.exception(f"Failed to link {p.target.label}")
                outcome.outcome = "failed"
                continue
            if link is not None:
                used_transactions.add(p.transaction.id)
                created.append(
                    HistoricalLink(
                        link=link,
                        transaction=p.transaction,
                        sale=p.target.sale,
                        installment=p.target.installment,
                    )
                )

        for outcome in outcomes.values():
            tally(result, outcome)
        finalize(result)

        if created:
            self.pool.add(user_id, created)
            confidences = [h.link.confidence / 100 for h in created]
            stats = result.details.learning
            stats.average_confidence = sum(confidences) / len(confidences)
            stats.min_confidence = min(confidences)
            stats.max_confidence = max(confidences)

        duration_ms = int((datetime.now() - start_time).total_seconds() * 1000)
        logger.info(
            f"Learning reconciliation for user {user_id} done in {duration_ms}ms: "
            f"{result.matched} matched from {len(training)} training samples"
        )
        return result

    async def _write(self, user_id: str, p: Prediction, outcome: TargetOutcome) -> Optional[ReconciliationLink]:
        try:
            link = await self.engine.writer.write(
                user_id,
                p.target,
                p.transaction,
                confidence=p.confidence * 100,
                breakdown=p.features.model_dump(),
                scoring_method="learning",
            )
        except AlreadyLinked as e:
            logger.info(f"{p.target.label}: skipped, {e}")
            return None
        except NotFound as e:
            logger.warning(f"{p.target.label}: {e} before the link was written")
            return None

        outcome.outcome = "linked"
        outcome.transaction_id = p.transaction.id
        outcome.link_id = link.id
        outcome.confidence = link.confidence
        return link

    async def reconcile_transaction(self, user_id: str, transaction_id: str) -> TransactionReconciliationResult:
        if not await self.is_ready(user_id):
            return await self.engine.reconcile_transaction(user_id, transaction_id)

        txn = await self.store.get_transaction(user_id, transaction_id)
        if txn is None:
            raise NotFound("transaction", transaction_id)

        result = TransactionReconciliationResult(transaction_id=transaction_id, scoring_method="learning")
        if txn.is_reconciled or await self.store.find_link_for_transaction(transaction_id) is not None:
            result.already_linked = True
            return result

        window = timedelta(days=self.config.learning.single_transaction_window_days)
        sales = await self.store.fetch_sales(
            user_id, txn.transaction_date - window, txn.transaction_date + window
        )
        links = await self.store.fetch_active_links(user_id)
        pairs = linked_pairs(links)
        scorer = LearningScorer(self.config, await self.load_training(user_id))

        predictions: list[Prediction] = []
        for sale in sales:
            targets = (
                [ReconciliationTarget.for_installment(sale, i) for i in sale.installments]
                if sale.installments
                else [ReconciliationTarget.for_sale(sale)]
            )
            predictions.extend(
                Prediction(target=t, transaction=txn, features=scorer.features(txn, t))
                for t in targets
                if (t.sale_id, t.installment_id) not in pairs and scorer.admits(txn, t)
            )

        if not predictions:
            return result

        best = max(predictions, key=lambda p: p.confidence)
        result.confidence = best.confidence * 100
        if best.confidence < self.config.learning.acceptance_threshold:
            return result

        outcome = TargetOutcome(sale_id=best.target.sale_id, installment_id=best.target.installment_id, outcome="no_match")
        link = await self._write(user_id, best, outcome)
        result.matched = link is not None
        result.sale_id = best.target.sale_id
        result.installment_id = best.target.installment_id
        result.link_id = outcome.link_id
        return result
