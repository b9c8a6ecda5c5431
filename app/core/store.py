# app/core/store.py

"""
Storage queries the reconciliation core depends on.

`app.database.SupabaseStore` is the production implementation; tests
use an in-memory one.
"""

from datetime import date
from typing import Optional, Protocol

from pydantic import BaseModel

from app.models import (
    HistoricalLink,
    LinkCreate,
    ReconciliationLink,
    Sale,
    Transaction,
)


class TransactionQuery(BaseModel):
    """Filter for candidate transactions."""

    user_id: str
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None
    max_exclusive: bool = False
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    wallet_id: Optional[str] = None
    type: Optional[str] = "INCOME"
    unreconciled_only: bool = True
    # any of these, case-insensitive, in description or name
    text_terms: tuple[str, ...] = ()
    # alternative to text_terms: the sale code a transaction was reconciled under
    reconciled_sale_code: Optional[str] = None

    def matches(self, txn: Transaction) -> bool:
        if txn.user_id != self.user_id:
            return False
        if self.type and txn.type != self.type:
            return False
        if self.unreconciled_only and txn.is_reconciled:
            return False
        if self.wallet_id and txn.wallet_id != self.wallet_id:
            return False
        if self.min_amount is not None and txn.amount < self.min_amount:
            return False
        if self.max_amount is not None:
            if txn.amount > self.max_amount:
                return False
            if self.max_exclusive and txn.amount >= self.max_amount:
                return False
        if self.start_date and txn.transaction_date < self.start_date:
            return False
        if self.end_date and txn.transaction_date > self.end_date:
            return False
        if self.text_terms or self.reconciled_sale_code:
            haystack = f"{txn.description or ''} {txn.name or ''}".lower()
            by_text = any(term.lower() in haystack for term in self.text_terms)
            by_code = bool(self.reconciled_sale_code) and txn.reconciled_sale_code == self.reconciled_sale_code
            if not (by_text or by_code):
                return False
        return True


class ReconciliationStore(Protocol):
    # ============================================
    # Sales & transactions
    # ============================================

    async def fetch_sales(
        self, user_id: str, start_date: Optional[date] = None, end_date: Optional[date] = None
    ) -> list[Sale]:
        """Sales (with installments) dated within the window."""
        ...

    async def get_sale(self, user_id: str, sale_id: str) -> Optional[Sale]: ...

    async def get_transaction(self, user_id: str, transaction_id: str) -> Optional[Transaction]: ...

    async def fetch_transactions_page(
        self, query: TransactionQuery, offset: int, limit: int
    ) -> list[Transaction]:
        """One page of matching transactions, ordered by date then id."""
        ...

    async def count_customer_transactions(self, user_id: str, customer_name: str, limit: int) -> int:
        """Transactions whose description or name mentions the customer, capped at limit."""
        ...

    async def mark_transaction_reconciled(self, transaction_id: str, sale_code: Optional[str]) -> None: ...

    async def clear_transaction_reconciliation(self, transaction_id: str) -> None: ...

    # ============================================
    # Links
    # ============================================

    async def fetch_active_links(self, user_id: str) -> list[ReconciliationLink]:
        """Every active link of the user, with its transaction attached."""
        ...

    async def find_link_for_transaction(self, transaction_id: str) -> Optional[ReconciliationLink]: ...

    async def find_link_for_target(
        self, sale_id: str, installment_id: Optional[str]
    ) -> Optional[ReconciliationLink]:
        """The link of exactly this (sale, installment) pair; installment None means the whole sale."""
        ...

    async def find_link(self, sale_id: str, transaction_id: str) -> Optional[ReconciliationLink]: ...

    async def get_link(self, user_id: str, link_id: str) -> Optional[ReconciliationLink]: ...

    async def insert_link(self, link: LinkCreate) -> ReconciliationLink:
        """Atomic insert. Raises AlreadyLinked on a uniqueness violation."""
        ...

    async def delete_link(self, link_id: str) -> None: ...

    async def fetch_link_history(
        self,
        user_id: str,
        since: date,
        limit: int,
        manually_confirmed: Optional[bool] = None,
    ) -> list[HistoricalLink]:
        """Most recent links first, with both sides attached."""
        ...

    async def count_confirmed_links(self, user_id: str) -> int: ...
