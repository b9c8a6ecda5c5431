# app/database.py

import logging
from datetime import date, datetime, timezone
from functools import lru_cache
from typing import Optional

import httpx
from postgrest.exceptions import APIError
from supabase import create_client, Client

from app.config import get_settings
from app.core.errors import AlreadyLinked, PersistenceFailure
from app.core.normalizers import normalize_amount, normalize_date
from app.core.pagination import Pages
from app.core.store import TransactionQuery
from app.models import (
    HistoricalLink,
    Installment,
    LinkCreate,
    ReconciliationLink,
    Sale,
    Transaction,
)

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
PAGE_SIZE = 1000
MAX_PAGES = 20

LINK_WITH_TRANSACTION = "*, transaction:transactions(*)"
LINK_WITH_BOTH_SIDES = (
    "*, transaction:transactions(*), sale:sales(*, installments(*)), installment:installments(*)"
)


@lru_cache()
def get_supabase_admin() -> Client:
    """Admin client (bypasses RLS - use carefully)."""
    settings = get_settings()
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


def _execute(query):
    """Run a PostgREST query, translating client errors."""
    try:
        return query.execute()
    except APIError as e:
        if e.code == UNIQUE_VIOLATION:
            raise
        logger.error(f"Supabase query failed: {e.message}")
        raise PersistenceFailure(e.message or "Supabase query failed") from e
    except httpx.HTTPError as e:
        logger.error(f"Supabase unreachable: {e}")
        raise PersistenceFailure("Supabase unreachable") from e


def _first(response) -> Optional[dict]:
    return response.data[0] if response.data else None


def _ilike_value(term: str) -> str:
    # or_() filters are comma separated and parenthesized
    return "".join(c for c in term if c not in ",()")


# ============================================
# Row mapping
# ============================================

def _installment_from_row(row: dict) -> Installment:
    return Installment(
        id=row["id"],
        sale_id=row["sale_id"],
        number=row.get("number") or 1,
        amount=normalize_amount(row["amount"]),
        due_date=normalize_date(row["due_date"]),
        total_installments=row.get("total_installments"),
        status=row.get("status") or "pending",
    )


def _sale_from_row(row: dict) -> Sale:
    return Sale(
        id=row["id"],
        user_id=row["user_id"],
        code=row.get("code"),
        external_id=row.get("external_id"),
        customer_id=row.get("customer_id"),
        customer_name=row.get("customer_name"),
        channel=row.get("channel") or row.get("source"),
        source=row.get("source"),
        description=row.get("description"),
        sale_date=normalize_date(row["sale_date"]),
        total_amount=normalize_amount(row["total_amount"]),
        net_amount=normalize_amount(row["net_amount"]) if row.get("net_amount") is not None else None,
        installments=[_installment_from_row(i) for i in row.get("installments") or []],
    )


def _transaction_from_row(row: dict) -> Transaction:
    return Transaction(
        id=row["id"],
        user_id=row["user_id"],
        wallet_id=row.get("wallet_id"),
        transaction_date=normalize_date(row["transaction_date"]),
        amount=normalize_amount(row["amount"]),
        type=row.get("type") or "INCOME",
        description=row.get("description"),
        name=row.get("name"),
        payment_method=row.get("payment_method"),
        provenance=row.get("provenance") or row.get("metadata"),
        is_reconciled=bool(row.get("is_reconciled")),
        reconciled_sale_code=row.get("reconciled_sale_code"),
        reconciled_at=row.get("reconciled_at"),
    )


def _link_from_row(row: dict) -> ReconciliationLink:
    transaction = row.get("transaction")
    return ReconciliationLink(
        id=row["id"],
        user_id=row["user_id"],
        sale_id=row["sale_id"],
        transaction_id=row["transaction_id"],
        installment_id=row.get("installment_id"),
        confidence=float(row.get("confidence") or 0),
        breakdown=row.get("breakdown") or {},
        scoring_method=row.get("scoring_method") or "deterministic",
        manually_confirmed=bool(row.get("manually_confirmed")),
        created_at=row["created_at"],
        transaction=_transaction_from_row(transaction) if transaction else None,
    )


# ============================================
# Store
# ============================================

class SupabaseStore:
    """ReconciliationStore on Supabase (PostgREST)."""

    def __init__(self, client: Client | None = None):
        self.client = client or get_supabase_admin()

    def _table(self, name: str):
        return self.client.table(name)

    # Sales & transactions

    async def fetch_sales(
        self, user_id: str, start_date: Optional[date] = None, end_date: Optional[date] = None
    ) -> list[Sale]:
        async def fetch(offset: int, limit: int) -> list[Sale]:
            query = self._table("sales").select("*, installments(*)").eq("user_id", user_id)
            if start_date:
                query = query.gte("sale_date", start_date.isoformat())
            if end_date:
                query = query.lte("sale_date", end_date.isoformat())
            response = _execute(query.order("sale_date").order("id").range(offset, offset + limit - 1))
            return [_sale_from_row(row) for row in response.data]

        return await Pages(fetch, PAGE_SIZE, MAX_PAGES, label="sales").collect()

    async def get_sale(self, user_id: str, sale_id: str) -> Optional[Sale]:
        response = _execute(
            self._table("sales").select("*, installments(*)").eq("id", sale_id).eq("user_id", user_id)
        )
        row = _first(response)
        return _sale_from_row(row) if row else None

    async def get_transaction(self, user_id: str, transaction_id: str) -> Optional[Transaction]:
        response = _execute(
            self._table("transactions").select("*").eq("id", transaction_id).eq("user_id", user_id)
        )
        row = _first(response)
        return _transaction_from_row(row) if row else None

    async def fetch_transactions_page(self, query: TransactionQuery, offset: int, limit: int) -> list[Transaction]:
        q = (
            self._table("transactions")
            .select("*")
            .eq("user_id", query.user_id)
        )
        if query.type:
            q = q.eq("type", query.type)
        if query.unreconciled_only:
            q = q.eq("is_reconciled", False)
        if query.wallet_id:
            q = q.eq("wallet_id", query.wallet_id)
        if query.min_amount is not None:
            q = q.gte("amount", query.min_amount)
        if query.max_amount is not None:
            q = q.lt("amount", query.max_amount) if query.max_exclusive else q.lte("amount", query.max_amount)
        if query.start_date:
            q = q.gte("transaction_date", query.start_date.isoformat())
        if query.end_date:
            q = q.lte("transaction_date", query.end_date.isoformat())
        if query.text_terms or query.reconciled_sale_code:
            clauses = []
            for term in query.text_terms:
                value = _ilike_value(term)
                clauses.append(f"description.ilike.*{value}*")
                clauses.append(f"name.ilike.*{value}*")
            if query.reconciled_sale_code:
                clauses.append(f"reconciled_sale_code.eq.{_ilike_value(query.reconciled_sale_code)}")
            q = q.or_(",".join(clauses))

        response = _execute(q.order("transaction_date").order("id").range(offset, offset + limit - 1))
        return [_transaction_from_row(row) for row in response.data]

    async def count_customer_transactions(self, user_id: str, customer_name: str, limit: int) -> int:
        value = _ilike_value(customer_name)
        response = _execute(
            self._table("transactions")
            .select("id")
            .eq("user_id", user_id)
            .or_(f"description.ilike.*{value}*,name.ilike.*{value}*")
            .limit(limit)
        )
        return len(response.data)

    async def mark_transaction_reconciled(self, transaction_id: str, sale_code: Optional[str]) -> None:
        _execute(
            self._table("transactions").update({
                "is_reconciled": True,
                "reconciled_sale_code": sale_code,
                "reconciled_at": datetime.now(timezone.utc).isoformat(),
            }).eq("id", transaction_id)
        )

    async def clear_transaction_reconciliation(self, transaction_id: str) -> None:
        _execute(
            self._table("transactions").update({
                "is_reconciled": False,
                "reconciled_sale_code": None,
                "reconciled_at": None,
            }).eq("id", transaction_id)
        )

    # Links

    async def fetch_active_links(self, user_id: str) -> list[ReconciliationLink]:
        async def fetch(offset: int, limit: int) -> list[ReconciliationLink]:
            response = _execute(
                self._table("reconciliation_links")
                .select(LINK_WITH_TRANSACTION)
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .range(offset, offset + limit - 1)
            )
            return [_link_from_row(row) for row in response.data]

        return await Pages(fetch, PAGE_SIZE, MAX_PAGES, label="links").collect()

    async def _find_link(self, **filters) -> Optional[ReconciliationLink]:
        query = self._table("reconciliation_links").select(LINK_WITH_TRANSACTION)
        for column, value in filters.items():
            query = query.is_(column, "null") if value is None else query.eq(column, value)
        row = _first(_execute(query.limit(1)))
        return _link_from_row(row) if row else None

    async def find_link_for_transaction(self, transaction_id: str) -> Optional[ReconciliationLink]:
        return await self._find_link(transaction_id=transaction_id)

    async def find_link_for_target(
        self, sale_id: str, installment_id: Optional[str]
    ) -> Optional[ReconciliationLink]:
        return await self._find_link(sale_id=sale_id, installment_id=installment_id)

    async def find_link(self, sale_id: str, transaction_id: str) -> Optional[ReconciliationLink]:
        return await self._find_link(sale_id=sale_id, transaction_id=transaction_id)

    async def get_link(self, user_id: str, link_id: str) -> Optional[ReconciliationLink]:
        return await self._find_link(id=link_id, user_id=user_id)

    async def insert_link(self, link: LinkCreate) -> ReconciliationLink:
        try:
            response = _execute(self._table("reconciliation_links").insert(link.model_dump()))
        except APIError as e:
            side = "transaction" if "transaction" in (e.message or "") else "target"
            raise AlreadyLinked(side, link.transaction_id if side == "transaction" else link.sale_id) from e
        return _link_from_row(response.data[0])

    async def delete_link(self, link_id: str) -> None:
        _execute(self._table("reconciliation_links").delete().eq("id", link_id))

    async def fetch_link_history(
        self,
        user_id: str,
        since: date,
        limit: int,
        manually_confirmed: Optional[bool] = None,
    ) -> list[HistoricalLink]:
        query = (
            self._table("reconciliation_links")
            .select(LINK_WITH_BOTH_SIDES)
            .eq("user_id", user_id)
            .gte("created_at", since.isoformat())
        )
        if manually_confirmed is not None:
            query = query.eq("manually_confirmed", manually_confirmed)
        response = _execute(query.order("created_at", desc=True).limit(limit))

        history = []
        for row in response.data:
            if not row.get("transaction") or not row.get("sale"):
                continue
            installment = row.get("installment")
            history.append(
                HistoricalLink(
                    link=_link_from_row(row),
                    transaction=_transaction_from_row(row["transaction"]),
                    sale=_sale_from_row(row["sale"]),
                    installment=_installment_from_row(installment) if installment else None,
                )
            )
        return history

    async def count_confirmed_links(self, user_id: str) -> int:
        response = _execute(
            self._table("reconciliation_links")
            .select("id", count="exact")
            .eq("user_id", user_id)
            .eq("manually_confirmed", True)
            .limit(1)
        )
        return response.count or 0


# ============================================
# Run history
# ============================================

async def save_reconciliation_run(run: dict) -> dict:
    """Save a reconciliation run."""
    response = _execute(get_supabase_admin().table("reconciliation_runs").insert(run))
    return _first(response)


async def get_reconciliation_history(user_id: str, limit: int = 30) -> list[dict]:
    """Get reconciliation run history for a user."""
    response = _execute(
        get_supabase_admin().table("reconciliation_runs")
        .select("*")
        .eq("user_id", user_id)
        .order("created_at", desc=True)
        .limit(limit)
    )
    return response.data
