"""Report models produced by the metrics aggregator."""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional

from .transaction import ZERO


@dataclass
class GlobalMetrics:
    """Headline figures over the analysed period."""

    total_analyses: int = 0
    total_transactions_analyzed: int = 0
    total_generated: int = 0
    total_applied: int = 0
    total_rejected: int = 0
    total_pending: int = 0
    total_expired: int = 0
    precision_rate: Decimal = ZERO
    average_confidence: Decimal = ZERO
    average_run_seconds: Optional[float] = None
    median_run_seconds: Optional[float] = None
    p95_run_seconds: Optional[float] = None


@dataclass
class BreakdownMetric:
    """Counters for one confidence band or one match type."""

    key: str
    count: int = 0
    applied: int = 0
    rejected: int = 0
    application_rate: Decimal = ZERO
    share: Decimal = ZERO
    average_confidence: Decimal = ZERO
    score_range: Optional[str] = None


@dataclass
class RejectionReasonMetric:
    reason: str
    count: int
    share: Decimal
    suggested_action: str
    priority: str


@dataclass
class VolumePerformanceMetric:
    """Reconciliations grouped by number of records analysed."""

    volume_range: str
    analyses_count: int
    average_precision: Decimal
    average_seconds: Optional[float] = None
    max_seconds: Optional[float] = None
    p95_seconds: Optional[float] = None
    status: str = "OK"


@dataclass
class TimeSeriesPoint:
    bucket: date
    generated: int = 0
    applied: int = 0
    rejected: int = 0
    precision_rate: Decimal = ZERO


@dataclass
class UserProductivity:
    """Decisions taken by one reviewer."""

    user: str
    decisions: int = 0
    applied: int = 0
    rejected: int = 0
    application_rate: Decimal = ZERO
    average_decision_seconds: Optional[float] = None


@dataclass
class MetricsReport:
    """Complete matching quality report for a period."""

    start_date: date
    end_date: date
    company_id: Optional[str] = None
    global_metrics: GlobalMetrics = field(default_factory=GlobalMetrics)
    confidence_breakdown: list[BreakdownMetric] = field(default_factory=list)
    match_type_breakdown: list[BreakdownMetric] = field(default_factory=list)
    top_rejection_reasons: list[RejectionReasonMetric] = field(default_factory=list)
    volume_performance: list[VolumePerformanceMetric] = field(default_factory=list)
    time_series: list[TimeSeriesPoint] = field(default_factory=list)
    time_series_granularity: str = "daily"
    user_productivity: list[UserProductivity] = field(default_factory=list)
    team_productivity: Optional[UserProductivity] = None
    recommendations: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.global_metrics.total_generated == 0
