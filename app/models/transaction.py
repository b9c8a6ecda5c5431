# app/models/transaction.py

from datetime import date, datetime
from typing import Annotated, Any, Optional, Literal, Union
from pydantic import BaseModel, Field, field_validator

TransactionType = Literal["INCOME", "EXPENSE", "TRANSFER"]


# ============================================
# Provenance (where a ledger entry came from)
# ============================================

class _ProvenanceBase(BaseModel):
    """Common answers every provenance shape gives."""

    @property
    def payment_source(self) -> Optional[str]:
        return None

    @property
    def is_anticipation(self) -> bool:
        return False

    @property
    def original_amount(self) -> Optional[float]:
        return None

    @property
    def customer_name(self) -> Optional[str]:
        return None


class BankStatementProvenance(_ProvenanceBase):
    """Line fetched from a bank statement (OFX/Open Finance)."""

    kind: Literal["bank_statement"] = "bank_statement"
    bank_code: Optional[str] = None
    statement_id: Optional[str] = None
    source: Optional[str] = None
    counterparty: Optional[str] = None

    @property
    def payment_source(self) -> Optional[str]:
        return self.source

    @property
    def customer_name(self) -> Optional[str]:
        return self.counterparty


class ErpImportProvenance(_ProvenanceBase):
    """Financial entry imported from the ERP."""

    kind: Literal["erp_import"] = "erp_import"
    erp: str = "GESTAO_CLICK"
    external_id: Optional[str] = None
    source: Optional[str] = None
    customer: Optional[str] = None

    @property
    def payment_source(self) -> Optional[str]:
        return self.source or self.erp

    @property
    def customer_name(self) -> Optional[str]:
        return self.customer


class PaymentGatewayProvenance(_ProvenanceBase):
    """Settlement reported by a card/PIX acquirer."""

    kind: Literal["payment_gateway"] = "payment_gateway"
    gateway: Optional[str] = None
    source: Optional[str] = None
    anticipation: bool = False
    gross_amount: Optional[float] = None
    payer_name: Optional[str] = None

    @property
    def payment_source(self) -> Optional[str]:
        return "ANTICIPATION" if self.anticipation and not self.source else self.source

    @property
    def is_anticipation(self) -> bool:
        return self.anticipation

    @property
    def original_amount(self) -> Optional[float]:
        return self.gross_amount

    @property
    def customer_name(self) -> Optional[str]:
        return self.payer_name


class ManualProvenance(_ProvenanceBase):
    """Entry typed in by a user."""

    kind: Literal["manual"] = "manual"
    source: Optional[str] = None
    note: Optional[str] = None

    @property
    def payment_source(self) -> Optional[str]:
        return self.source


class OpaqueProvenance(_ProvenanceBase):
    """Anything a connector sent that we don't have a shape for yet."""

    kind: Literal["unknown"] = "unknown"
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def payment_source(self) -> Optional[str]:
        source = self.data.get("source")
        return str(source) if source else None

    @property
    def is_anticipation(self) -> bool:
        return (
            self.data.get("isAnticipation") is True
            or self.data.get("type") == "ANTICIPATION"
            or self.data.get("source") == "ANTICIPATION"
        )

    @property
    def original_amount(self) -> Optional[float]:
        value = self.data.get("originalAmount")
        try:
            return float(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    @property
    def customer_name(self) -> Optional[str]:
        name = self.data.get("customerName")
        return str(name) if name else None


Provenance = Annotated[
    Union[
        BankStatementProvenance,
        ErpImportProvenance,
        PaymentGatewayProvenance,
        ManualProvenance,
        OpaqueProvenance,
    ],
    Field(discriminator="kind"),
]

_KNOWN_KINDS = {"bank_statement", "erp_import", "payment_gateway", "manual", "unknown"}


def parse_provenance(raw: Any) -> Any:
    """
    Route raw metadata to a provenance shape.

    Tagged dicts of a known kind pass through; untagged or unknown
    blobs are wrapped in the opaque variant.
    """
    if raw is None:
        return OpaqueProvenance()
    if isinstance(raw, _ProvenanceBase):
        return raw
    if isinstance(raw, dict):
        if raw.get("kind") in _KNOWN_KINDS:
            return raw
        return {"kind": "unknown", "data": raw}
    return OpaqueProvenance()


# ============================================
# Transaction
# ============================================

class Transaction(BaseModel):
    """A ledger movement (bank or ERP)."""

    id: str
    user_id: str
    wallet_id: Optional[str] = None
    transaction_date: date
    amount: float
    type: TransactionType = "INCOME"
    description: Optional[str] = None
    name: Optional[str] = None
    payment_method: Optional[str] = None
    provenance: Provenance = Field(default_factory=OpaqueProvenance)
    is_reconciled: bool = False
    reconciled_sale_code: Optional[str] = None
    reconciled_at: Optional[datetime] = None

    @field_validator("provenance", mode="before")
    @classmethod
    def _wrap_provenance(cls, value: Any) -> Any:
        return parse_provenance(value)

    @property
    def text(self) -> str:
        return self.description or self.name or ""

    @property
    def full_text(self) -> str:
        """Description and name together, for marker detection."""
        return f"{self.description or ''} {self.name or ''}".strip()
