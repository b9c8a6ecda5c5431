# app/core/errors.py

"""
Errors raised by the reconciliation core.

"No match" and "several candidates" are outcomes, not errors; they are
reported through TargetOutcome.
"""

from typing import Literal, Optional


class ReconciliationError(Exception):
    """Base class for reconciliation failures."""


class NotFound(ReconciliationError):
    """A referenced sale, installment, transaction or link is missing or not owned by the caller."""

    def __init__(self, entity: str, entity_id: Optional[str]):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class AlreadyLinked(ReconciliationError):
    """One side of a link is already part of an active link."""

    def __init__(self, side: Literal["transaction", "target"], entity_id: Optional[str]):
        self.side = side
        self.entity_id = entity_id
        super().__init__(f"{side} {entity_id} is already reconciled")


class PersistenceFailure(ReconciliationError):
    """Storage is unavailable or rejected the operation."""
