# app/core/links.py

"""
Link writer.

Enforces at most one active link per transaction and per
(sale, installment) pair. The pre-insert checks are a fast path; the
storage unique indexes are what actually guarantee it, and a
constraint violation surfaces as AlreadyLinked.
"""

import logging
from typing import Optional

from app.core.errors import AlreadyLinked, NotFound, PersistenceFailure
from app.core.store import ReconciliationStore
from app.models import (
    LinkCreate,
    ReconciliationLink,
    ReconciliationState,
    ReconciliationTarget,
    ScoringMethod,
    Transaction,
)

logger = logging.getLogger(__name__)


class LinkWriter:
    def __init__(self, store: ReconciliationStore):
        self.store = store

    async def write(
        self,
        user_id: str,
        target: ReconciliationTarget,
        transaction: Transaction,
        confidence: float,
        breakdown: dict,
        scoring_method: ScoringMethod = "deterministic",
        manually_confirmed: bool = False,
    ) -> ReconciliationLink:
        """
        Link a transaction to a target.

        Re-reads both sides right before inserting. Raises NotFound if
        either vanished, AlreadyLinked if either side is taken.
        """
        sale = await self.store.get_sale(user_id, target.sale_id)
        if sale is None:
            raise NotFound("sale", target.sale_id)
        if target.installment_id and not any(i.id == target.installment_id for i in sale.installments):
            raise NotFound("installment", target.installment_id)

        current = await self.store.get_transaction(user_id, transaction.id)
        if current is None:
            raise NotFound("transaction", transaction.id)

        if await self.store.find_link_for_transaction(transaction.id) is not None:
            raise AlreadyLinked("transaction", transaction.id)
        if await self.store.find_link_for_target(target.sale_id, target.installment_id) is not None:
            raise AlreadyLinked("target", target.installment_id or target.sale_id)

        link = await self.store.insert_link(
            LinkCreate(
                user_id=user_id,
                sale_id=target.sale_id,
                transaction_id=transaction.id,
                installment_id=target.installment_id,
                confidence=min(100.0, max(0.0, confidence)),
                breakdown=breakdown,
                scoring_method=scoring_method,
                manually_confirmed=manually_confirmed,
            )
        )
        # The link row is authoritative; the transaction flag is a denormalized copy
        try:
            await self.store.mark_transaction_reconciled(transaction.id, sale.reference_code)
        except PersistenceFailure as e:
            logger.warning(f"Linked transaction {transaction.id} but could not flag it as reconciled: {e}")

        logger.info(
            f"Linked transaction {transaction.id} to {target.label} "
            f"({scoring_method}, confidence {link.confidence:.1f})"
        )
        return link

    # ============================================
    # Manual override
    # ============================================

    async def create_manual_link(
        self,
        user_id: str,
        sale_id: str,
        transaction_id: str,
        installment_id: Optional[str] = None,
    ) -> ReconciliationLink:
        """Operator-chosen link. No scoring, same uniqueness checks."""
        sale = await self.store.get_sale(user_id, sale_id)
        if sale is None:
            raise NotFound("sale", sale_id)

        if installment_id:
            installment = next((i for i in sale.installments if i.id == installment_id), None)
            if installment is None:
                raise NotFound("installment", installment_id)
            target = ReconciliationTarget.for_installment(sale, installment)
        else:
            target = ReconciliationTarget.for_sale(sale)

        transaction = await self.store.get_transaction(user_id, transaction_id)
        if transaction is None:
            raise NotFound("transaction", transaction_id)

        return await self.write(
            user_id,
            target,
            transaction,
            confidence=100.0,
            breakdown={"reason": "Manually confirmed"},
            scoring_method="manual",
            manually_confirmed=True,
        )

    async def remove_link(self, user_id: str, sale_id: str, transaction_id: str) -> ReconciliationLink:
        """Delete a link and return the transaction to the unreconciled state."""
        link = await self.store.find_link(sale_id, transaction_id)
        if link is None:
            raise NotFound("link", f"{sale_id}/{transaction_id}")

        if await self.store.get_sale(user_id, sale_id) is None:
            raise NotFound("sale", sale_id)
        if await self.store.get_transaction(user_id, transaction_id) is None:
            raise NotFound("transaction", transaction_id)

        await self.store.delete_link(link.id)
        await self.store.clear_transaction_reconciliation(transaction_id)

        logger.info(f"Removed link {link.id} between sale {sale_id} and transaction {transaction_id}")
        return link


# ============================================
# State
# ============================================

async def target_state(store: ReconciliationStore, target: ReconciliationTarget) -> ReconciliationState:
    link = await store.find_link_for_target(target.sale_id, target.installment_id)
    return ReconciliationState.RECONCILED if link else ReconciliationState.UNRECONCILED


async def transaction_state(store: ReconciliationStore, transaction_id: str) -> ReconciliationState:
    link = await store.find_link_for_transaction(transaction_id)
    return ReconciliationState.RECONCILED if link else ReconciliationState.UNRECONCILED
