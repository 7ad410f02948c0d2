"""Data models for bank reconciliation."""

from .transaction import (
    BankTransaction,
    GeneralLedgerEntry,
    RecordSide,
    new_id,
    normalize_reference,
    to_decimal,
)
from .reconciliation import (
    AdjustmentClass,
    BalanceSide,
    ItemTypeRule,
    PENDING_ITEM_RULES,
    PendingItem,
    PendingItemType,
    Reconciliation,
    ReconciliationStatus,
    TransitionRecord,
)
from .suggestion import (
    ConfidenceBand,
    DEFAULT_BAND_THRESHOLDS,
    MatchRunRecord,
    MatchType,
    Suggestion,
    SuggestionStatus,
    band_for,
    band_range,
)
from .metrics import (
    BreakdownMetric,
    GlobalMetrics,
    MetricsReport,
    RejectionReasonMetric,
    TimeSeriesPoint,
    UserProductivity,
    VolumePerformanceMetric,
)

__all__ = [
    "BankTransaction",
    "GeneralLedgerEntry",
    "RecordSide",
    "new_id",
    "normalize_reference",
    "to_decimal",
    "AdjustmentClass",
    "BalanceSide",
    "ItemTypeRule",
    "PENDING_ITEM_RULES",
    "PendingItem",
    "PendingItemType",
    "Reconciliation",
    "ReconciliationStatus",
    "TransitionRecord",
    "ConfidenceBand",
    "DEFAULT_BAND_THRESHOLDS",
    "MatchRunRecord",
    "MatchType",
    "Suggestion",
    "SuggestionStatus",
    "band_for",
    "band_range",
    "BreakdownMetric",
    "GlobalMetrics",
    "MetricsReport",
    "RejectionReasonMetric",
    "TimeSeriesPoint",
    "UserProductivity",
    "VolumePerformanceMetric",
]
