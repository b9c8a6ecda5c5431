# app/core/__init__.py

from app.core.errors import (
    ReconciliationError,
    NotFound,
    AlreadyLinked,
    PersistenceFailure,
)
from app.core.tolerance import tolerance_percentage, tolerance_band, anticipation_band
from app.core.text_similarity import text_similarity
from app.core.patterns import PatternDetector
from app.core.confidence import ConfidenceScorer
from app.core.duplicates import filter_duplicates
from app.core.links import LinkWriter
from app.core.matching import ReconciliationEngine
from app.core.learning import LearningReconciler, TrainingPool
from app.core.groups import InstallmentGroupReconciler, find_installment_groups

__all__ = [
    "ReconciliationError",
    "NotFound",
    "AlreadyLinked",
    "PersistenceFailure",
    "tolerance_percentage",
    "tolerance_band",
    "anticipation_band",
    "text_similarity",
    "PatternDetector",
    "ConfidenceScorer",
    "filter_duplicates",
    "LinkWriter",
    "ReconciliationEngine",
    "LearningReconciler",
    "TrainingPool",
    "InstallmentGroupReconciler",
    "find_installment_groups",
]
