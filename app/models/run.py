# app/models/run.py

from datetime import date, datetime
from typing import Optional, Literal
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Summary(BaseModel):
    """Serialized with camelCase keys for the notification collaborator."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================
# Batch results
# ============================================

class LearningStats(_Summary):
    active: bool = False
    training_samples: int = 0
    average_confidence: Optional[float] = None
    min_confidence: Optional[float] = None
    max_confidence: Optional[float] = None


class ReconciliationDetails(_Summary):
    sales_processed: int = 0
    transactions_processed: int = 0
    new_links_created: int = 0
    already_linked_skipped: int = 0
    no_match_found: int = 0
    multiple_matches_found: int = 0
    duplicates_filtered: int = 0
    failed: int = 0
    learning: Optional[LearningStats] = None


class ReconciliationResult(_Summary):
    """Summary of a batch run."""

    total_processed: int = 0
    matched: int = 0
    unmatched: int = 0
    details: ReconciliationDetails = Field(default_factory=ReconciliationDetails)


# ============================================
# Per-target outcomes
# ============================================

OutcomeKind = Literal["linked", "already_linked", "no_match", "not_found", "failed"]


class TargetOutcome(_Summary):
    """What happened to one sale or installment."""

    sale_id: str
    installment_id: Optional[str] = None
    outcome: OutcomeKind
    transaction_id: Optional[str] = None
    link_id: Optional[str] = None
    confidence: Optional[float] = None
    candidates: int = 0
    multiple_matches: bool = False
    possible_duplicates: int = 0

    @property
    def matched(self) -> bool:
        return self.outcome == "linked"

    @property
    def already_linked(self) -> bool:
        return self.outcome == "already_linked"


class SaleReconciliationResult(_Summary):
    sale_id: str
    matched: bool = False
    already_linked: bool = False
    outcomes: list[TargetOutcome] = Field(default_factory=list)


class TransactionReconciliationResult(_Summary):
    transaction_id: str
    matched: bool = False
    already_linked: bool = False
    sale_id: Optional[str] = None
    installment_id: Optional[str] = None
    link_id: Optional[str] = None
    confidence: Optional[float] = None
    scoring_method: Optional[str] = None


# ============================================
# Installment groups
# ============================================

GroupOutcomeKind = Literal["linked", "already_linked", "no_match", "failed"]


class GroupOutcome(_Summary):
    """One group of transactions that look like parcels of a single sale."""

    transaction_ids: list[str]
    total_amount: float
    outcome: GroupOutcomeKind = "no_match"
    sale_id: Optional[str] = None
    link_ids: list[str] = Field(default_factory=list)
    confidence: Optional[float] = None


class InstallmentGroupResult(_Summary):
    groups_found: int = 0
    groups_reconciled: int = 0
    transactions_reconciled: int = 0
    failed: int = 0
    groups: list[GroupOutcome] = Field(default_factory=list)


# ============================================
# Run history
# ============================================

class ReconciliationRun(BaseModel):
    """A persisted batch run."""

    id: Optional[str] = None
    user_id: str
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    wallet_id: Optional[str] = None
    scoring_method: str = "deterministic"
    total_processed: int
    matched: int
    unmatched: int
    details: dict = Field(default_factory=dict)
    status: Literal["completed", "failed"] = "completed"
    error: Optional[str] = None
    triggered_by: str = "manual"
    duration_ms: int = 0
    created_at: Optional[datetime] = None
