# tests/conftest.py

"""
Shared fixtures: an in-memory store and builders for sales/transactions.
"""

import os
import uuid
from datetime import date, datetime
from typing import Optional

import pytest

os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_ANON_KEY", "test-anon-key")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["ENABLE_AI_EXPLANATIONS"] = "false"

from app.config import MatchingConfig
from app.core.errors import AlreadyLinked, PersistenceFailure
from app.core.store import TransactionQuery
from app.models import (
    HistoricalLink,
    Installment,
    LinkCreate,
    ReconciliationLink,
    Sale,
    Transaction,
)

USER_ID = "user-1"


# ============================================
# Builders
# ============================================

def make_sale(
    id: str = "s1",
    amount: float = 1000.0,
    sale_date: date = date(2024, 3, 10),
    code: Optional[str] = "4821",
    description: Optional[str] = "Venda #4821",
    channel: Optional[str] = "Whatsapp",
    customer_name: Optional[str] = None,
    installments: list[Installment] = None,
    user_id: str = USER_ID,
) -> Sale:
    return Sale(
        id=id,
        user_id=user_id,
        code=code,
        customer_name=customer_name,
        channel=channel,
        description=description,
        sale_date=sale_date,
        total_amount=amount,
        installments=installments or [],
    )


def make_installment(
    id: str,
    sale_id: str,
    number: int,
    amount: float,
    due_date: date,
    total: int = None,
) -> Installment:
    return Installment(
        id=id,
        sale_id=sale_id,
        number=number,
        amount=amount,
        due_date=due_date,
        total_installments=total,
    )


def make_txn(
    id: str = "t1",
    amount: float = 1000.0,
    txn_date: date = date(2024, 3, 11),
    description: Optional[str] = "PIX recebido venda #4821",
    source: Optional[str] = "PIX",
    wallet_id: str = "w1",
    provenance: dict = None,
    name: Optional[str] = None,
    user_id: str = USER_ID,
) -> Transaction:
    if provenance is None:
        provenance = {"kind": "bank_statement", "source": source}
    return Transaction(
        id=id,
        user_id=user_id,
        wallet_id=wallet_id,
        transaction_date=txn_date,
        amount=amount,
        description=description,
        name=name,
        provenance=provenance,
    )


# ============================================
# In-memory store
# ============================================

class InMemoryStore:
    """
    ReconciliationStore kept in dicts.

    insert_link enforces the same uniqueness the database indexes do,
    so tests can bypass the writer's pre-checks and still see AlreadyLinked.
    """

    def __init__(self):
        self.sales: dict[str, Sale] = {}
        self.transactions: dict[str, Transaction] = {}
        self.links: dict[str, ReconciliationLink] = {}
        # links from earlier periods, only visible through fetch_link_history
        self.history: list[HistoricalLink] = []
        self.unavailable = False

    def _check(self):
        if self.unavailable:
            raise PersistenceFailure("store unavailable")

    # Seeding

    def add_sale(self, sale: Sale) -> Sale:
        self.sales[sale.id] = sale
        return sale

    def add_transaction(self, txn: Transaction) -> Transaction:
        self.transactions[txn.id] = txn
        return txn

    def add_link(
        self,
        sale_id: str,
        transaction_id: str,
        installment_id: str = None,
        manually_confirmed: bool = False,
    ) -> ReconciliationLink:
        link = ReconciliationLink(
            id=str(uuid.uuid4()),
            user_id=USER_ID,
            sale_id=sale_id,
            transaction_id=transaction_id,
            installment_id=installment_id,
            confidence=100.0,
            manually_confirmed=manually_confirmed,
            scoring_method="manual" if manually_confirmed else "deterministic",
            created_at=datetime.now(),
        )
        self.links[link.id] = link
        self.transactions[transaction_id] = self.transactions[transaction_id].model_copy(
            update={"is_reconciled": True}
        )
        return link

    # Sales & transactions

    async def fetch_sales(self, user_id, start_date=None, end_date=None):
        self._check()
        sales = [
            s for s in self.sales.values()
            if s.user_id == user_id
            and (start_date is None or s.sale_date >= start_date)
            and (end_date is None or s.sale_date <= end_date)
        ]
        return sorted(sales, key=lambda s: (s.sale_date, s.id))

    async def get_sale(self, user_id, sale_id):
        self._check()
        sale = self.sales.get(sale_id)
        return sale if sale and sale.user_id == user_id else None

    async def get_transaction(self, user_id, transaction_id):
        self._check()
        txn = self.transactions.get(transaction_id)
        return txn if txn and txn.user_id == user_id else None

    async def fetch_transactions_page(self, query: TransactionQuery, offset, limit):
        self._check()
        found = sorted(
            (t for t in self.transactions.values() if query.matches(t)),
            key=lambda t: (t.transaction_date, t.id),
        )
        return found[offset:offset + limit]

    async def count_customer_transactions(self, user_id, customer_name, limit):
        self._check()
        name = customer_name.lower()
        count = sum(
            1 for t in self.transactions.values()
            if t.user_id == user_id and name in f"{t.description or ''} {t.name or ''}".lower()
        )
        return min(count, limit)

    async def mark_transaction_reconciled(self, transaction_id, sale_code):
        self._check()
        self.transactions[transaction_id] = self.transactions[transaction_id].model_copy(
            update={"is_reconciled": True, "reconciled_sale_code": sale_code, "reconciled_at": datetime.now()}
        )

    async def clear_transaction_reconciliation(self, transaction_id):
        self._check()
        self.transactions[transaction_id] = self.transactions[transaction_id].model_copy(
            update={"is_reconciled": False, "reconciled_sale_code": None, "reconciled_at": None}
        )

    # Links

    def _with_transaction(self, link: ReconciliationLink) -> ReconciliationLink:
        return link.model_copy(update={"transaction": self.transactions.get(link.transaction_id)})

    async def fetch_active_links(self, user_id):
        self._check()
        return [self._with_transaction(l) for l in self.links.values() if l.user_id == user_id]

    async def find_link_for_transaction(self, transaction_id):
        self._check()
        return next((l for l in self.links.values() if l.transaction_id == transaction_id), None)

    async def find_link_for_target(self, sale_id, installment_id):
        self._check()
        return next(
            (l for l in self.links.values() if l.sale_id == sale_id and l.installment_id == installment_id),
            None,
        )

    async def find_link(self, sale_id, transaction_id):
        self._check()
        return next(
            (l for l in self.links.values() if l.sale_id == sale_id and l.transaction_id == transaction_id),
            None,
        )

    async def get_link(self, user_id, link_id):
        self._check()
        link = self.links.get(link_id)
        return self._with_transaction(link) if link and link.user_id == user_id else None

    async def insert_link(self, link: LinkCreate):
        self._check()
        for existing in self.links.values():
            if existing.transaction_id == link.transaction_id:
                raise AlreadyLinked("transaction", link.transaction_id)
            if existing.sale_id == link.sale_id and existing.installment_id == link.installment_id:
                raise AlreadyLinked("target", link.installment_id or link.sale_id)

        created = ReconciliationLink(id=str(uuid.uuid4()), created_at=datetime.now(), **link.model_dump())
        self.links[created.id] = created
        return created

    async def delete_link(self, link_id):
        self._check()
        self.links.pop(link_id, None)

    async def fetch_link_history(self, user_id, since, limit, manually_confirmed=None):
        self._check()
        history = list(self.history)
        for link in self.links.values():
            sale = self.sales[link.sale_id]
            installment = next((i for i in sale.installments if i.id == link.installment_id), None)
            history.append(
                HistoricalLink(
                    link=link,
                    transaction=self.transactions[link.transaction_id],
                    sale=sale,
                    installment=installment,
                )
            )
        history = [
            h for h in history
            if h.link.user_id == user_id
            and h.link.created_at.date() >= since
            and (manually_confirmed is None or h.link.manually_confirmed == manually_confirmed)
        ]
        history.sort(key=lambda h: h.link.created_at, reverse=True)
        return history[:limit]

    async def count_confirmed_links(self, user_id):
        self._check()
        history = await self.fetch_link_history(user_id, date.min, 10**6, manually_confirmed=True)
        return len(history)


def confirmed_history(count: int, lag_days: int = 0) -> list[HistoricalLink]:
    """Manually confirmed pairs from an earlier period, settled `lag_days` after the sale."""
    examples = []
    for i in range(count):
        sale = make_sale(id=f"hs{i}", code=str(1000 + i), description=f"Venda #{1000 + i}", channel=None)
        txn = make_txn(
            id=f"ht{i}",
            amount=sale.amount,
            txn_date=date.fromordinal(sale.sale_date.toordinal() + lag_days),
            description=f"Venda #{1000 + i}",
        )
        link = ReconciliationLink(
            id=f"hl{i}",
            user_id=USER_ID,
            sale_id=sale.id,
            transaction_id=txn.id,
            confidence=100.0,
            scoring_method="manual",
            manually_confirmed=True,
            created_at=datetime.now(),
        )
        examples.append(HistoricalLink(link=link, transaction=txn, sale=sale))
    return examples


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def config() -> MatchingConfig:
    return MatchingConfig()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()
