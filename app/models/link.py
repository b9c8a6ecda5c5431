# app/models/link.py

from datetime import datetime
from enum import Enum
from typing import Optional, Literal
from pydantic import BaseModel, Field

from app.models.sale import Installment, Sale
from app.models.transaction import Transaction


# ============================================
# Confidence Scoring
# ============================================

class ConfidenceBreakdown(BaseModel):
    """Breakdown of how a deterministic confidence score was calculated."""

    value_proximity: float = Field(ge=0, le=100)
    date_proximity: float = Field(ge=0, le=100)
    channel_match: float = Field(ge=0, le=100)
    customer_recurrence: float = Field(ge=0, le=100)
    historical_patterns: float = Field(ge=0, le=100)
    text_similarity: float = Field(ge=0, le=100)
    vendor_pattern: float = Field(ge=0, le=100)
    seasonal_pattern: float = Field(ge=0, le=100)
    anticipation_bonus: float = 0
    total: float = Field(ge=0, description="Weighted sum plus bonus")
    is_anticipation: bool = False
    factors: list[str] = Field(default_factory=list, description="Human-readable factors")


class LearningFeatures(BaseModel):
    """Feature vector of the learning scorer. All features 0-1."""

    value_distance: float = Field(ge=0, le=1)
    date_distance: float = Field(ge=0, le=1)
    text_similarity: float = Field(ge=0, le=1)
    channel_match: float = Field(ge=0, le=1)
    customer_pattern: float = Field(ge=0, le=1)
    seasonal_pattern: float = Field(ge=0, le=1)
    raw_score: float = 0
    confidence: float = Field(default=0, ge=0, le=1)


# ============================================
# Links
# ============================================

ScoringMethod = Literal["deterministic", "learning", "manual"]


class ReconciliationState(str, Enum):
    UNRECONCILED = "unreconciled"
    RECONCILED = "reconciled"


class LinkCreate(BaseModel):
    """A link about to be written."""

    user_id: str
    sale_id: str
    transaction_id: str
    installment_id: Optional[str] = None
    confidence: float = Field(ge=0, le=100)
    breakdown: dict = Field(default_factory=dict)
    scoring_method: ScoringMethod = "deterministic"
    manually_confirmed: bool = False


class ReconciliationLink(LinkCreate):
    """An active link between a transaction and a sale (or installment)."""

    id: str
    created_at: datetime
    transaction: Optional[Transaction] = None


class HistoricalLink(BaseModel):
    """A past link re-read with both sides, used as history/training data."""

    link: ReconciliationLink
    transaction: Transaction
    sale: Sale
    installment: Optional[Installment] = None

    @property
    def target_amount(self) -> float:
        return self.installment.amount if self.installment else self.sale.amount

    @property
    def target_date(self):
        return self.installment.due_date if self.installment else self.sale.sale_date
