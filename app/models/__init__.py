# app/models/__init__.py

from app.models.sale import (
    Installment,
    InstallmentStatus,
    Sale,
    ReconciliationTarget,
)
from app.models.transaction import (
    Transaction,
    TransactionType,
    Provenance,
    BankStatementProvenance,
    ErpImportProvenance,
    PaymentGatewayProvenance,
    ManualProvenance,
    OpaqueProvenance,
    parse_provenance,
)
from app.models.link import (
    ConfidenceBreakdown,
    LearningFeatures,
    ScoringMethod,
    ReconciliationState,
    LinkCreate,
    ReconciliationLink,
    HistoricalLink,
)
from app.models.run import (
    LearningStats,
    ReconciliationDetails,
    ReconciliationResult,
    OutcomeKind,
    TargetOutcome,
    SaleReconciliationResult,
    TransactionReconciliationResult,
    GroupOutcome,
    InstallmentGroupResult,
    ReconciliationRun,
)

__all__ = [
    # Sale
    "Installment",
    "InstallmentStatus",
    "Sale",
    "ReconciliationTarget",
    # Transaction
    "Transaction",
    "TransactionType",
    "Provenance",
    "BankStatementProvenance",
    "ErpImportProvenance",
    "PaymentGatewayProvenance",
    "ManualProvenance",
    "OpaqueProvenance",
    "parse_provenance",
    # Link
    "ConfidenceBreakdown",
    "LearningFeatures",
    "ScoringMethod",
    "ReconciliationState",
    "LinkCreate",
    "ReconciliationLink",
    "HistoricalLink",
    # Run
    "LearningStats",
    "ReconciliationDetails",
    "ReconciliationResult",
    "OutcomeKind",
    "TargetOutcome",
    "SaleReconciliationResult",
    "TransactionReconciliationResult",
    "GroupOutcome",
    "InstallmentGroupResult",
    "ReconciliationRun",
]
