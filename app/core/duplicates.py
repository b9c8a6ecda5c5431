# app/core/duplicates.py

"""
Near-duplicate suppression.

A candidate that looks like a re-posting of an already reconciled
transaction (split postings, reversed-and-reposted entries) is dropped
before scoring.
"""

import logging

from app.config import MatchingConfig
from app.core.text_similarity import text_similarity
from app.models import ReconciliationLink, Transaction

logger = logging.getLogger(__name__)


def is_near_duplicate(candidate: Transaction, linked: Transaction, config: MatchingConfig) -> bool:
    """Same day, same wallet, amount within 1% and text similarity above 70."""
    if candidate.id == linked.id:
        return False
    if candidate.transaction_date != linked.transaction_date:
        return False
    if candidate.wallet_id != linked.wallet_id:
        return False
    if not linked.amount:
        return False
    if abs(candidate.amount - linked.amount) / abs(linked.amount) >= config.duplicate_amount_tolerance:
        return False

    similarity = text_similarity(candidate.text, linked.text, config.stop_words)
    return similarity > config.duplicate_text_threshold


def filter_duplicates(
    candidates: list[Transaction],
    links: list[ReconciliationLink],
    config: MatchingConfig,
) -> tuple[list[Transaction], list[Transaction]]:
    """
    Split candidates into (kept, dropped).

    Order of the kept candidates is preserved.
    """
    linked = [link.transaction for link in links if link.transaction is not None]
    if not candidates or not linked:
        return list(candidates), []

    kept: list[Transaction] = []
    dropped: list[Transaction] = []
    for txn in candidates:
        if any(is_near_duplicate(txn, other, config) for other in linked):
            dropped.append(txn)
        else:
            kept.append(txn)

    if dropped:
        logger.debug(f"Dropped {len(dropped)} near-duplicate candidates")
    return kept, dropped
