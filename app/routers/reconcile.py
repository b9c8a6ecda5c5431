# app/routers/reconcile.py

"""
Reconciliation routes.

Runs the matching engine over a date window, a single sale, or a
single transaction.
"""

import logging
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.config import get_settings
from app.core.errors import PersistenceFailure, ReconciliationError
from app.core.groups import InstallmentGroupReconciler
from app.core.learning import LearningReconciler
from app.core.matching import ReconciliationEngine
from app.database import get_reconciliation_history, save_reconciliation_run
from app.dependencies import (
    get_current_user,
    get_engine,
    get_group_reconciler,
    get_learning_reconciler,
    to_http_error,
)
from app.models import ReconciliationRun

logger = logging.getLogger(__name__)
router = APIRouter()


class ReconcileRequest(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    wallet_id: Optional[str] = None
    use_learning: bool = True
    persist: bool = True


class ReconcileResponse(BaseModel):
    success: bool
    scoring_method: str
    result: dict
    duration_ms: int


async def _persist_run(run: ReconciliationRun) -> None:
    try:
        await save_reconciliation_run(run.model_dump(mode="json", exclude_none=True))
    except PersistenceFailure as e:
        logger.warning(f"Failed to persist reconciliation run: {e}")


# ============================================
# Main Reconciliation Endpoint
# ============================================

@router.post("/reconcile", response_model=ReconcileResponse)
async def run_reconciliation(
    request: ReconcileRequest,
    user_id: str = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
    learning: LearningReconciler = Depends(get_learning_reconciler),
):
    """
    Run reconciliation for the authenticated user.

    1. Picks the learning path if enabled (it falls back on its own)
    2. Links unresolved sales/installments to transactions
    3. Optionally records the run
    """
    settings = get_settings()
    start_time = datetime.now()

    try:
        if request.use_learning and settings.enable_learning:
            result = await learning.reconcile(user_id, request.start_date, request.end_date, request.wallet_id)
        else:
            result = await engine.reconcile(user_id, request.start_date, request.end_date, request.wallet_id)
    except ReconciliationError as e:
        if request.persist:
            await _persist_run(ReconciliationRun(
                user_id=user_id,
                period_start=request.start_date,
                period_end=request.end_date,
                wallet_id=request.wallet_id,
                total_processed=0,
                matched=0,
                unmatched=0,
                status="failed",
                error=str(e),
                duration_ms=int((datetime.now() - start_time).total_seconds() * 1000),
            ))
        raise to_http_error(e)

    scoring_method = "learning" if result.details.learning and result.details.learning.active else "deterministic"
    duration_ms = int((datetime.now() - start_time).total_seconds() * 1000)

    if request.persist:
        await _persist_run(ReconciliationRun(
            user_id=user_id,
            period_start=request.start_date,
            period_end=request.end_date,
            wallet_id=request.wallet_id,
            scoring_method=scoring_method,
            total_processed=result.total_processed,
            matched=result.matched,
            unmatched=result.unmatched,
            details=result.details.model_dump(by_alias=True),
            duration_ms=duration_ms,
        ))

    return ReconcileResponse(
        success=True,
        scoring_method=scoring_method,
        result=result.model_dump(by_alias=True),
        duration_ms=duration_ms,
    )


# ============================================
# Single sale / single transaction
# ============================================

@router.post("/reconcile/sales/{sale_id}")
async def reconcile_sale(
    sale_id: str,
    wallet_id: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Reconcile one sale (each of its installments, or the sale itself)."""
    try:
        result = await engine.reconcile_sale(user_id, sale_id, wallet_id)
    except ReconciliationError as e:
        raise to_http_error(e)

    return {
        "success": True,
        **result.model_dump(by_alias=True),
    }


@router.post("/reconcile/transactions/{transaction_id}")
async def reconcile_transaction(
    transaction_id: str,
    user_id: str = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
    learning: LearningReconciler = Depends(get_learning_reconciler),
):
    """Find the best unresolved sale or installment for one transaction."""
    settings = get_settings()
    try:
        if settings.enable_learning:
            result = await learning.reconcile_transaction(user_id, transaction_id)
        else:
            result = await engine.reconcile_transaction(user_id, transaction_id)
    except ReconciliationError as e:
        raise to_http_error(e)

    return {
        "success": True,
        **result.model_dump(by_alias=True),
    }


# ============================================
# Installment groups / lookup by sale code
# ============================================

class GroupReconcileRequest(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    wallet_id: Optional[str] = None


@router.post("/reconcile/installment-groups")
async def reconcile_installment_groups(
    request: GroupReconcileRequest,
    user_id: str = Depends(get_current_user),
    groups: InstallmentGroupReconciler = Depends(get_group_reconciler),
):
    """
    Link series of similar payments to the installments of one sale.

    Only sales with installments and no link yet are considered.
    """
    try:
        result = await groups.reconcile(user_id, request.start_date, request.end_date, request.wallet_id)
    except ReconciliationError as e:
        raise to_http_error(e)

    return {
        "success": True,
        **result.model_dump(by_alias=True),
    }


@router.get("/transactions/by-code/{code}")
async def find_transactions_by_code(
    code: str,
    user_id: str = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Transactions that mention a sale code or were reconciled under it."""
    try:
        transactions = await engine.finder.find_transactions_by_code(user_id, code)
    except ReconciliationError as e:
        raise to_http_error(e)

    return {
        "code": code,
        "transactions": [t.model_dump(mode="json") for t in transactions],
        "count": len(transactions),
    }


# ============================================
# Reconciliation History (for trend chart)
# ============================================

@router.get("/reconcile/history")
async def get_reconciliation_history_endpoint(
    user_id: str = Depends(get_current_user),
    limit: int = Query(30, ge=1, le=90),
):
    """
    Get reconciliation run history for the authenticated user.

    Returns historical runs for charting reconciliation trends.
    """
    try:
        runs = await get_reconciliation_history(user_id, limit)
    except PersistenceFailure as e:
        raise to_http_error(e)

    return {
        "user_id": user_id,
        "runs": runs,
        "count": len(runs),
    }
