"""Bank reconciliation and pattern learning."""

from contaflix.reconciliation.matching import (
    BankReconciler,
    MatchStrategy,
    ReconciliationConfig,
    ReconciliationMatch,
    ReconciliationResult,
)
from contaflix.reconciliation.patterns import (
    DetectedPattern,
    PatternAnalysis,
    PatternConfig,
    PatternDetector,
    PatternType,
    TransactionMapping,
)

__all__ = [
    "BankReconciler",
    "DetectedPattern",
    "MatchStrategy",
    "PatternAnalysis",
    "PatternConfig",
    "PatternDetector",
    "PatternType",
    "ReconciliationConfig",
    "ReconciliationMatch",
    "ReconciliationResult",
    "TransactionMapping",
]
