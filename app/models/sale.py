# app/models/sale.py

from datetime import date
from typing import Optional, Literal
from pydantic import BaseModel, Field

InstallmentStatus = Literal["pending", "paid", "overdue", "cancelled"]


class Installment(BaseModel):
    """A scheduled partial payment of a sale."""

    id: str
    sale_id: str
    number: int
    amount: float
    due_date: date
    total_installments: Optional[int] = None
    status: InstallmentStatus = "pending"


class Sale(BaseModel):
    """A sale recorded by the ERP import."""

    id: str
    user_id: str
    code: Optional[str] = None
    external_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    channel: Optional[str] = None
    source: Optional[str] = None
    description: Optional[str] = None
    sale_date: date
    total_amount: float
    net_amount: Optional[float] = None
    installments: list[Installment] = Field(default_factory=list)

    @property
    def reference_code(self) -> Optional[str]:
        return self.code or self.external_id

    @property
    def amount(self) -> float:
        """Amount expected to reach the ledger."""
        return self.net_amount if self.net_amount else self.total_amount


class ReconciliationTarget(BaseModel):
    """
    The thing a transaction gets linked to: a whole sale, or one of its installments.

    Flattens what the scorer needs so it never has to look at both models.
    """

    sale: Sale
    installment: Optional[Installment] = None

    @classmethod
    def for_sale(cls, sale: Sale) -> "ReconciliationTarget":
        return cls(sale=sale)

    @classmethod
    def for_installment(cls, sale: Sale, installment: Installment) -> "ReconciliationTarget":
        return cls(sale=sale, installment=installment)

    @property
    def sale_id(self) -> str:
        return self.sale.id

    @property
    def installment_id(self) -> Optional[str]:
        return self.installment.id if self.installment else None

    @property
    def amount(self) -> float:
        return self.installment.amount if self.installment else self.sale.amount

    @property
    def due_date(self) -> date:
        return self.installment.due_date if self.installment else self.sale.sale_date

    @property
    def code(self) -> Optional[str]:
        return self.sale.reference_code

    @property
    def customer_name(self) -> Optional[str]:
        return self.sale.customer_name

    @property
    def channel(self) -> Optional[str]:
        return self.sale.channel

    @property
    def label(self) -> str:
        if self.installment:
            return f"sale {self.sale_id} installment {self.installment.number}"
        return f"sale {self.sale_id}"
