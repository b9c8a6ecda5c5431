# app/integrations/claude.py

"""
Claude AI integration for reconciliation explanations.

Turns a link's factor breakdown into a short plain-language
explanation. Falls back to the breakdown's own factor list when
AI explanations are disabled or the API call fails.
"""

import logging
from functools import lru_cache
from typing import Optional

from anthropic import Anthropic, APIError

from app.config import get_settings
from app.models import ReconciliationLink, Sale

logger = logging.getLogger(__name__)


@lru_cache()
def get_client() -> Optional[Anthropic]:
    settings = get_settings()
    if not settings.anthropic_api_key:
        return None
    return Anthropic(api_key=settings.anthropic_api_key)


def fallback_explanation(link: ReconciliationLink) -> str:
    """Explanation assembled from the stored breakdown."""
    if link.manually_confirmed:
        return "This link was confirmed manually by an operator."

    factors = link.breakdown.get("factors") or []
    if link.scoring_method == "learning":
        return (
            f"Matched by comparison with previously confirmed reconciliations "
            f"(confidence {link.confidence:.0f}%)."
        )
    if not factors:
        return f"Matched with confidence {link.confidence:.0f}%."
    return f"Matched with confidence {link.confidence:.0f}%: " + "; ".join(factors) + "."


async def explain_link(link: ReconciliationLink, sale: Optional[Sale] = None) -> str:
    """
    Explain why a transaction was linked to a sale.

    Concise (2-3 sentences), written for a finance operator.
    """
    settings = get_settings()
    client = get_client()
    if not settings.enable_ai_explanations or client is None:
        return fallback_explanation(link)

    txn = link.transaction
    breakdown = {k: v for k, v in link.breakdown.items() if k != "factors"}
    prompt = f"""You are a financial reconciliation assistant. A bank/ERP transaction was
linked to a sale automatically. Explain in plain language, in 2-3 sentences, why the
link is plausible and what (if anything) the operator should double-check.

SALE:
- Code: {sale.reference_code if sale else 'N/A'}
- Customer: {sale.customer_name if sale else 'N/A'}
- Amount: {sale.amount if sale else 'N/A'}

TRANSACTION:
- Description: {txn.text if txn else 'N/A'}
- Amount: {txn.amount if txn else 'N/A'}
- Date: {txn.transaction_date.isoformat() if txn else 'N/A'}

SCORING METHOD: {link.scoring_method}
CONFIDENCE: {link.confidence:.1f}
FACTOR SCORES: {breakdown}
FACTORS: {'; '.join(link.breakdown.get('factors') or [])}

Don't repeat the data - focus on what it means."""

    try:
        response = client.messages.create(
            model=settings.anthropic_model,
            max_tokens=200,
            messages=[{"role": "user", "content": prompt}],
        )
        return response.content[0].text
    except APIError as e:
        logger.warning(f"Claude API error: {e}")
        return fallback_explanation(link)
