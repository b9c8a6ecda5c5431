# tests/test_matching.py

"""
Tests for the core matching engine, candidate selection and the link writer.
"""

import logging

import pytest
from datetime import date

from app.config import MatchingConfig
from app.core.candidates import CandidateFinder, add_months
from app.core.errors import AlreadyLinked, NotFound, PersistenceFailure
from app.core.links import LinkWriter, target_state, transaction_state
from app.core.matching import ReconciliationEngine
from app.core.pagination import Pages
from app.models import ReconciliationState, ReconciliationTarget

from conftest import USER_ID, InMemoryStore, make_installment, make_sale, make_txn


def engine_for(store: InMemoryStore, **config) -> ReconciliationEngine:
    return ReconciliationEngine(store, MatchingConfig(**config))


# ============================================
# Pagination Tests
# ============================================

class TestPages:
    """Lazy page iteration over offset queries."""

    def setup_method(self):
        self.items = list(range(5))
        self.calls = []

    async def fetch(self, offset, limit):
        self.calls.append(offset)
        return self.items[offset:offset + limit]

    @pytest.mark.asyncio
    async def test_stops_on_short_page(self):
        pages = [page async for page in Pages(self.fetch, page_size=2, max_pages=10)]

        assert pages == [[0, 1], [2, 3], [4]]
        assert self.calls == [0, 2, 4]

    @pytest.mark.asyncio
    async def test_restartable(self):
        pages = Pages(self.fetch, page_size=2, max_pages=10)

        assert await pages.collect() == self.items
        assert await pages.collect() == self.items

    @pytest.mark.asyncio
    async def test_exact_multiple_ends_on_empty_page(self):
        self.items = list(range(4))
        pages = [page async for page in Pages(self.fetch, page_size=2, max_pages=10)]

        assert pages == [[0, 1], [2, 3]]

    @pytest.mark.asyncio
    async def test_page_cap(self, caplog):
        with caplog.at_level(logging.WARNING, logger="app.core.pagination"):
            items = await Pages(self.fetch, page_size=2, max_pages=2, label="sales").collect()

        assert items == [0, 1, 2, 3]
        assert "safety limit for sales" in caplog.text

    def test_rejects_non_positive_sizes(self):
        with pytest.raises(ValueError):
            Pages(self.fetch, page_size=0, max_pages=1)


# ============================================
# Candidate Selection Tests
# ============================================

class TestCandidates:

    @pytest.mark.asyncio
    async def test_standard_and_anticipation_sets(self, store, config):
        sale = store.add_sale(make_sale())
        store.add_transaction(make_txn(id="std"))
        store.add_transaction(make_txn(id="early", amount=880, txn_date=date(2024, 3, 25), description="Antecipação recebíveis"))
        store.add_transaction(make_txn(id="plain-low", amount=880, txn_date=date(2024, 3, 25), description="Transferencia"))
        store.add_transaction(make_txn(id="far", txn_date=date(2024, 4, 20)))
        store.add_transaction(make_txn(id="expense", txn_date=date(2024, 3, 11)).model_copy(update={"type": "EXPENSE"}))

        found = await CandidateFinder(store, config).find_candidates(USER_ID, ReconciliationTarget.for_sale(sale))

        assert [t.id for t in found.standard] == ["std"]
        assert [t.id for t in found.anticipation] == ["early"]
        assert [t.id for t in found.all] == ["std", "early"]

    @pytest.mark.asyncio
    async def test_wallet_filter(self, store, config):
        sale = store.add_sale(make_sale())
        store.add_transaction(make_txn(id="w1"))
        store.add_transaction(make_txn(id="w2", wallet_id="w2"))

        found = await CandidateFinder(store, config).find_candidates(
            USER_ID, ReconciliationTarget.for_sale(sale), wallet_id="w2"
        )

        assert [t.id for t in found.all] == ["w2"]

    @pytest.mark.asyncio
    async def test_candidates_span_pages(self, store):
        sale = store.add_sale(make_sale())
        for i in range(5):
            store.add_transaction(make_txn(id=f"t{i}"))

        finder = CandidateFinder(store, MatchingConfig(page_size=2))
        found = await finder.find_candidates(USER_ID, ReconciliationTarget.for_sale(sale))

        assert len(found.standard) == 5

    @pytest.mark.asyncio
    async def test_suggestions(self, store, config):
        sale = store.add_sale(make_sale())
        store.add_transaction(make_txn(id="later", amount=1020, txn_date=date(2024, 5, 1)))
        store.add_transaction(make_txn(id="soon", amount=990, txn_date=date(2024, 3, 12)))
        store.add_transaction(make_txn(id="too-high", amount=1100, txn_date=date(2024, 3, 12)))
        store.add_transaction(make_txn(id="before", amount=1000, txn_date=date(2024, 3, 1)))

        found = await CandidateFinder(store, config).suggest_for_sale(USER_ID, sale)

        assert [t.id for t in found] == ["soon", "later"]

    @pytest.mark.asyncio
    async def test_transactions_by_code(self, store, config):
        """Mentions of the code or a reconciliation under it, whatever the type or state."""
        store.add_transaction(make_txn(id="mention", txn_date=date(2024, 3, 12)))
        store.add_transaction(
            make_txn(id="flagged", txn_date=date(2024, 3, 11), description="Transferencia").model_copy(
                update={"is_reconciled": True, "reconciled_sale_code": "4821"}
            )
        )
        store.add_transaction(
            make_txn(id="refund", txn_date=date(2024, 3, 20), description="Estorno venda 4821").model_copy(
                update={"type": "EXPENSE"}
            )
        )
        store.add_transaction(make_txn(id="other", description="Venda #5000"))

        found = await CandidateFinder(store, config).find_transactions_by_code(USER_ID, "4821")

        assert [t.id for t in found] == ["flagged", "mention", "refund"]

    def test_add_months_clamps_day(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)


# ============================================
# Link Writer Tests
# ============================================

class RacyStore(InMemoryStore):
    """Pre-checks see nothing, as if another run wrote in between."""

    async def find_link_for_transaction(self, transaction_id):
        return None

    async def find_link_for_target(self, sale_id, installment_id):
        return None


class TestLinkWriter:

    def seed(self, store):
        store.add_sale(make_sale())
        store.add_sale(make_sale(id="s2", code="5000", description="Venda #5000"))
        store.add_transaction(make_txn(id="t1"))
        store.add_transaction(make_txn(id="t2"))

    @pytest.mark.asyncio
    async def test_manual_link(self, store):
        self.seed(store)

        link = await LinkWriter(store).create_manual_link(USER_ID, "s1", "t1")

        assert link.confidence == 100
        assert link.scoring_method == "manual"
        assert link.manually_confirmed
        assert store.transactions["t1"].is_reconciled
        assert store.transactions["t1"].reconciled_sale_code == "4821"

    @pytest.mark.asyncio
    async def test_transaction_already_linked(self, store):
        self.seed(store)
        store.add_link("s1", "t1")

        with pytest.raises(AlreadyLinked) as exc:
            await LinkWriter(store).create_manual_link(USER_ID, "s2", "t1")

        assert exc.value.side == "transaction"

    @pytest.mark.asyncio
    async def test_target_already_linked(self, store):
        self.seed(store)
        store.add_link("s1", "t1")

        with pytest.raises(AlreadyLinked) as exc:
            await LinkWriter(store).create_manual_link(USER_ID, "s1", "t2")

        assert exc.value.side == "target"

    @pytest.mark.asyncio
    async def test_uniqueness_enforced_by_store(self):
        store = RacyStore()
        self.seed(store)
        store.add_link("s1", "t1")

        with pytest.raises(AlreadyLinked):
            await LinkWriter(store).create_manual_link(USER_ID, "s2", "t1")

        assert len(store.links) == 1

    @pytest.mark.asyncio
    async def test_flag_failure_keeps_link(self, caplog):
        """The transaction flag failing after the insert still reports the link."""
        class FlagFailingStore(InMemoryStore):
            async def mark_transaction_reconciled(self, transaction_id, sale_code):
                raise PersistenceFailure("update timed out")

        store = FlagFailingStore()
        store.add_sale(make_sale())
        store.add_transaction(make_txn())

        with caplog.at_level(logging.WARNING, logger="app.core.links"):
            result = await engine_for(store).reconcile(USER_ID)

        assert result.matched == 1
        assert result.details.failed == 0
        assert (await store.find_link_for_transaction("t1")).sale_id == "s1"
        assert not store.transactions["t1"].is_reconciled
        assert "could not flag" in caplog.text

    @pytest.mark.asyncio
    async def test_missing_sides(self, store):
        self.seed(store)
        writer = LinkWriter(store)

        with pytest.raises(NotFound):
            await writer.create_manual_link(USER_ID, "nope", "t1")
        with pytest.raises(NotFound):
            await writer.create_manual_link(USER_ID, "s1", "nope")
        with pytest.raises(NotFound) as exc:
            await writer.create_manual_link(USER_ID, "s1", "t1", installment_id="nope")

        assert exc.value.entity == "installment"

    @pytest.mark.asyncio
    async def test_other_users_sale_is_not_found(self, store):
        self.seed(store)
        store.add_sale(make_sale(id="foreign", user_id="user-2"))

        with pytest.raises(NotFound):
            await LinkWriter(store).create_manual_link(USER_ID, "foreign", "t1")

    @pytest.mark.asyncio
    async def test_remove_round_trip(self, store):
        """reconcile -> remove leaves both sides as they were."""
        self.seed(store)
        engine = engine_for(store)
        target = ReconciliationTarget.for_sale(store.sales["s1"])

        assert await target_state(store, target) == ReconciliationState.UNRECONCILED
        await engine.reconcile_sale(USER_ID, "s1")
        link = await store.find_link_for_target("s1", None)
        assert await target_state(store, target) == ReconciliationState.RECONCILED
        assert await transaction_state(store, link.transaction_id) == ReconciliationState.RECONCILED

        removed = await LinkWriter(store).remove_link(USER_ID, "s1", link.transaction_id)

        assert removed.id == link.id
        assert await target_state(store, target) == ReconciliationState.UNRECONCILED
        assert await transaction_state(store, link.transaction_id) == ReconciliationState.UNRECONCILED
        assert not store.transactions[link.transaction_id].is_reconciled
        unresolved = await engine.finder.find_unresolved_sales(USER_ID, await store.fetch_active_links(USER_ID))
        assert "s1" in [s.id for s in unresolved]

    @pytest.mark.asyncio
    async def test_remove_missing_link(self, store):
        self.seed(store)

        with pytest.raises(NotFound):
            await LinkWriter(store).remove_link(USER_ID, "s1", "t1")


# ============================================
# Batch Reconciliation Tests
# ============================================

class TestReconciliation:
    """Full reconciliation flow over the in-memory store."""

    @pytest.mark.asyncio
    async def test_exact_match(self, store):
        """Code in the description, next-day settlement."""
        store.add_sale(make_sale())
        store.add_transaction(make_txn())

        result = await engine_for(store).reconcile(USER_ID)

        assert result.matched == 1
        assert result.details.new_links_created == 1
        assert result.details.sales_processed == 1
        link = next(iter(store.links.values()))
        assert link.transaction_id == "t1"
        assert link.confidence == pytest.approx(76.0)
        assert link.scoring_method == "deterministic"
        assert link.breakdown["value_proximity"] == 100

    @pytest.mark.asyncio
    async def test_discounted_early_settlement(self, store):
        store.add_sale(make_sale())
        store.add_transaction(make_txn(
            id="early", amount=950, txn_date=date(2024, 3, 15),
            description="Antecipação recebíveis venda #4821",
        ))

        result = await engine_for(store).reconcile(USER_ID)

        assert result.matched == 1
        link = next(iter(store.links.values()))
        assert link.breakdown["is_anticipation"]
        assert link.confidence == pytest.approx(88.57, abs=0.01)

    @pytest.mark.asyncio
    async def test_anticipation_below_standard_band(self, store):
        store.add_sale(make_sale())
        store.add_transaction(make_txn(
            id="early", amount=880, txn_date=date(2024, 3, 25),
            description="Antecipacao de recebiveis venda #4821",
        ))

        result = await engine_for(store).reconcile(USER_ID)

        assert result.matched == 1
        assert next(iter(store.links.values())).transaction_id == "early"

    @pytest.mark.asyncio
    async def test_near_duplicate_is_filtered(self, store):
        """A re-posting of an already reconciled entry is not linked."""
        store.add_sale(make_sale(id="s0", code="4800", description="Venda #4800", sale_date=date(2024, 3, 11)))
        store.add_sale(make_sale())
        store.add_transaction(make_txn(id="linked"))
        store.add_link("s0", "linked")
        store.add_transaction(make_txn(id="dup"))
        store.add_transaction(make_txn(id="ok", txn_date=date(2024, 3, 12)))

        result = await engine_for(store).reconcile(USER_ID)

        assert result.details.new_links_created == 1
        assert result.details.duplicates_filtered == 1
        link = await store.find_link_for_target("s1", None)
        assert link.transaction_id == "ok"
        assert not store.transactions["dup"].is_reconciled

    @pytest.mark.asyncio
    async def test_already_linked_sale(self, store):
        store.add_sale(make_sale())
        store.add_transaction(make_txn())
        store.add_transaction(make_txn(id="t2"))
        existing = store.add_link("s1", "t1")

        result = await engine_for(store).reconcile_sale(USER_ID, "s1")

        assert result.already_linked
        assert not result.matched
        assert list(store.links) == [existing.id]
        assert store.links[existing.id].transaction_id == "t1"

    @pytest.mark.asyncio
    async def test_installments(self, store):
        installments = [
            make_installment("i1", "s77", 1, 500, date(2024, 3, 10), total=2),
            make_installment("i2", "s77", 2, 500, date(2024, 4, 10), total=2),
        ]
        store.add_sale(make_sale(id="s77", code="77", description="Venda #77", channel=None, installments=installments))
        store.add_transaction(make_txn(id="p1", amount=500, txn_date=date(2024, 3, 10), description="Parcela 1/2 venda #77"))
        store.add_transaction(make_txn(id="p2", amount=500, txn_date=date(2024, 4, 11), description="Parcela 2/2 venda #77"))

        engine = engine_for(store)
        result = await engine.reconcile(USER_ID)

        assert result.matched == 2
        assert result.details.sales_processed == 1
        assert (await store.find_link_for_target("s77", "i1")).transaction_id == "p1"
        assert (await store.find_link_for_target("s77", "i2")).transaction_id == "p2"

        again = await engine.reconcile(USER_ID)
        assert again.details.sales_processed == 0
        assert again.matched == 0

    @pytest.mark.asyncio
    async def test_partially_linked_installments_count_as_skipped(self, store):
        installments = [
            make_installment("i1", "s77", 1, 500, date(2024, 3, 10)),
            make_installment("i2", "s77", 2, 500, date(2024, 4, 10)),
        ]
        store.add_sale(make_sale(id="s77", code="77", description="Venda #77", installments=installments))
        store.add_transaction(make_txn(id="p1", amount=500, txn_date=date(2024, 3, 10)))
        store.add_link("s77", "p1", installment_id="i1")

        result = await engine_for(store).reconcile(USER_ID)

        assert result.details.already_linked_skipped == 1
        assert result.details.no_match_found == 1
        assert result.total_processed == 2

    @pytest.mark.asyncio
    async def test_below_threshold(self, store):
        store.add_sale(make_sale(code=None, description=None))
        store.add_transaction(make_txn(amount=1060, txn_date=date(2024, 3, 15), description="Transferencia", source="CARD"))

        result = await engine_for(store).reconcile_sale(USER_ID, "s1")

        assert not result.matched
        assert result.outcomes[0].outcome == "no_match"
        assert result.outcomes[0].confidence < 50
        assert not store.links

    @pytest.mark.asyncio
    async def test_threshold_is_configurable(self, store):
        store.add_sale(make_sale(code=None, description=None))
        store.add_transaction(make_txn(amount=1060, txn_date=date(2024, 3, 15), description="Transferencia", source="CARD"))

        result = await engine_for(store, min_confidence=10).reconcile_sale(USER_ID, "s1")

        assert result.matched

    @pytest.mark.asyncio
    async def test_multiple_candidates_best_wins(self, store):
        store.add_sale(make_sale())
        store.add_transaction(make_txn(id="far", txn_date=date(2024, 3, 14)))
        store.add_transaction(make_txn(id="near"))

        result = await engine_for(store).reconcile_sale(USER_ID, "s1")

        outcome = result.outcomes[0]
        assert outcome.multiple_matches
        assert outcome.candidates == 2
        assert outcome.transaction_id == "near"

    @pytest.mark.asyncio
    async def test_no_candidates(self, store):
        store.add_sale(make_sale())

        result = await engine_for(store).reconcile(USER_ID)

        assert result.unmatched == 1
        assert result.details.no_match_found == 1
        assert result.details.transactions_processed == 0

    @pytest.mark.asyncio
    async def test_date_window(self, store):
        store.add_sale(make_sale())
        store.add_sale(make_sale(id="old", code="1", description="Venda #1", sale_date=date(2023, 1, 10)))
        store.add_transaction(make_txn())

        result = await engine_for(store).reconcile(USER_ID, date(2024, 3, 1), date(2024, 3, 31))

        assert result.details.sales_processed == 1
        assert result.matched == 1

    @pytest.mark.asyncio
    async def test_target_failure_is_counted(self):
        class FlakyStore(InMemoryStore):
            async def find_link_for_target(self, sale_id, installment_id):
                if sale_id == "bad":
                    raise RuntimeError("boom")
                return await super().find_link_for_target(sale_id, installment_id)

        store = FlakyStore()
        store.add_sale(make_sale())
        store.add_sale(make_sale(id="bad", code="9", description="Venda #9", amount=300))
        store.add_transaction(make_txn())

        result = await engine_for(store).reconcile(USER_ID)

        assert result.details.failed == 1
        assert result.details.new_links_created == 1
        assert result.total_processed == 2

    @pytest.mark.asyncio
    async def test_storage_failure_aborts_batch(self, store):
        store.add_sale(make_sale())
        store.unavailable = True

        with pytest.raises(PersistenceFailure):
            await engine_for(store).reconcile(USER_ID)

    @pytest.mark.asyncio
    async def test_unknown_sale(self, store):
        with pytest.raises(NotFound):
            await engine_for(store).reconcile_sale(USER_ID, "missing")


# ============================================
# Single Transaction Tests
# ============================================

class TestReconcileTransaction:

    @pytest.mark.asyncio
    async def test_finds_sale(self, store):
        store.add_sale(make_sale())
        store.add_transaction(make_txn())

        result = await engine_for(store).reconcile_transaction(USER_ID, "t1")

        assert result.matched
        assert result.sale_id == "s1"
        assert result.scoring_method == "deterministic"
        assert store.transactions["t1"].is_reconciled

    @pytest.mark.asyncio
    async def test_finds_sale_for_anticipation(self, store):
        store.add_sale(make_sale())
        store.add_transaction(make_txn(
            id="early", amount=880, txn_date=date(2024, 3, 25),
            description="Antecipacao de recebiveis venda #4821",
        ))

        result = await engine_for(store).reconcile_transaction(USER_ID, "early")

        assert result.matched
        assert result.sale_id == "s1"

    @pytest.mark.asyncio
    async def test_already_linked(self, store):
        store.add_sale(make_sale())
        store.add_transaction(make_txn())
        store.add_link("s1", "t1")

        result = await engine_for(store).reconcile_transaction(USER_ID, "t1")

        assert result.already_linked
        assert not result.matched

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, store):
        with pytest.raises(NotFound):
            await engine_for(store).reconcile_transaction(USER_ID, "missing")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
