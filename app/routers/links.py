# app/routers/links.py

"""
Reconciliation link routes.

Listing, manual link/unlink, explanations and manual suggestions.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel

from app.core.errors import NotFound, ReconciliationError
from app.core.matching import ReconciliationEngine
from app.core.links import LinkWriter
from app.core.store import ReconciliationStore
from app.dependencies import (
    get_current_user,
    get_engine,
    get_link_writer,
    get_store,
    to_http_error,
)
from app.integrations.claude import explain_link

router = APIRouter()


# ============================================
# Request Models
# ============================================

class CreateLinkRequest(BaseModel):
    sale_id: str
    transaction_id: str
    installment_id: Optional[str] = None


class RemoveLinkRequest(BaseModel):
    sale_id: str
    transaction_id: str


# ============================================
# List Links
# ============================================

@router.get("")
async def list_links(
    user_id: str = Depends(get_current_user),
    store: ReconciliationStore = Depends(get_store),
    manually_confirmed: Optional[bool] = Query(None, description="Filter by manual confirmation"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """List active links for the authenticated user, newest first."""
    try:
        links = await store.fetch_active_links(user_id)
    except ReconciliationError as e:
        raise to_http_error(e)

    if manually_confirmed is not None:
        links = [link for link in links if link.manually_confirmed == manually_confirmed]
    links.sort(key=lambda link: link.created_at, reverse=True)
    total = len(links)

    return {
        "success": True,
        "links": [link.model_dump(mode="json") for link in links[offset:offset + limit]],
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + limit < total,
        },
    }


# ============================================
# Manual link / unlink
# ============================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_link(
    request: CreateLinkRequest,
    user_id: str = Depends(get_current_user),
    writer: LinkWriter = Depends(get_link_writer),
):
    """Link a transaction to a sale (or installment) chosen by the operator."""
    try:
        link = await writer.create_manual_link(
            user_id, request.sale_id, request.transaction_id, request.installment_id
        )
    except ReconciliationError as e:
        raise to_http_error(e)

    return {
        "success": True,
        "link": link.model_dump(mode="json"),
    }


@router.delete("")
async def remove_link(
    request: RemoveLinkRequest,
    user_id: str = Depends(get_current_user),
    writer: LinkWriter = Depends(get_link_writer),
):
    """Remove a link; the sale and transaction go back to unreconciled."""
    try:
        link = await writer.remove_link(user_id, request.sale_id, request.transaction_id)
    except ReconciliationError as e:
        raise to_http_error(e)

    return {
        "success": True,
        "removed": link.id,
    }


# ============================================
# Suggestions
# ============================================

@router.get("/suggestions/{sale_id}")
async def get_suggestions(
    sale_id: str,
    user_id: str = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Transactions an operator might link to this sale by hand."""
    try:
        sale = await engine.store.get_sale(user_id, sale_id)
        if sale is None:
            raise NotFound("sale", sale_id)
        transactions = await engine.finder.suggest_for_sale(user_id, sale)
    except ReconciliationError as e:
        raise to_http_error(e)

    return {
        "success": True,
        "sale_id": sale_id,
        "transactions": [t.model_dump(mode="json") for t in transactions],
        "count": len(transactions),
    }


# ============================================
# Explanations
# ============================================

@router.get("/{link_id}/explain")
async def get_explanation(
    link_id: str,
    user_id: str = Depends(get_current_user),
    store: ReconciliationStore = Depends(get_store),
):
    """Plain-language explanation of why a link was made."""
    try:
        link = await store.get_link(user_id, link_id)
        if link is None:
            raise NotFound("link", link_id)
        sale = await store.get_sale(user_id, link.sale_id)
    except ReconciliationError as e:
        raise to_http_error(e)

    explanation = await explain_link(link, sale)

    return {
        "success": True,
        "link_id": link_id,
        "explanation": explanation,
    }
