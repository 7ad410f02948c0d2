"""
Matching quality metrics.

Pure read-side computation over the suggestion history and the match-run log:
precision, confidence distribution, rejection reasons, volume performance,
time series, reviewer productivity and rule-based recommendations.
"""

from collections import defaultdict
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from math import ceil
from statistics import mean, median
from typing import Iterable, Optional
import logging

from ..config import ReconConfig
from ..models.metrics import (
    BreakdownMetric,
    GlobalMetrics,
    MetricsReport,
    RejectionReasonMetric,
    TimeSeriesPoint,
    UserProductivity,
    VolumePerformanceMetric,
)
from ..models.suggestion import (
    ConfidenceBand,
    MatchRunRecord,
    MatchType,
    Suggestion,
    SuggestionStatus,
    band_range,
)
from ..models.transaction import ZERO

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
CENT = Decimal("0.01")

# (label, lower bound inclusive, upper bound exclusive)
VOLUME_BUCKETS: list[tuple[str, int, Optional[int]]] = [
    ("< 50", 0, 50),
    ("50-100", 50, 100),
    ("100-200", 100, 200),
    ("200-500", 200, 500),
    ("> 500", 500, None),
]

# keyword -> action, first match wins
REJECTION_ACTIONS: list[tuple[tuple[str, ...], str]] = [
    (("amount", "montant"), "Adjust the amount tolerance in the configuration"),
    (("date",), "Widen the accepted date window"),
    (("description", "libelle", "libellé"), "Improve the text similarity settings"),
    (("duplicate", "doublon", "double"), "Detect duplicates before matching"),
]
DEFAULT_REJECTION_ACTION = "Review manually and adjust the configuration"


def _rate(part: int, whole: int) -> Decimal:
    if whole == 0:
        return ZERO
    return (Decimal(part) * HUNDRED / Decimal(whole)).quantize(CENT, rounding=ROUND_HALF_UP)


def _average(values: list[Decimal]) -> Decimal:
    if not values:
        return ZERO
    return (sum(values, ZERO) / len(values)).quantize(CENT, rounding=ROUND_HALF_UP)


def _percentile(values: list[float], percentile: int) -> Optional[float]:
    """Nearest-rank percentile."""
    if not values:
        return None
    ordered = sorted(values)
    index = max(0, ceil(percentile / 100 * len(ordered)) - 1)
    return ordered[index]


def _volume_bucket(records: int) -> str:
    for label, low, high in VOLUME_BUCKETS:
        if records >= low and (high is None or records < high):
            return label
    return VOLUME_BUCKETS[-1][0]


def _normalize_reason(reason: str) -> str:
    return " ".join(reason.split()).casefold()


class MetricsAggregator:
    """Computes a MetricsReport over a date range."""

    def __init__(self, config: ReconConfig):
        self.config = config
        self.settings = config.metrics
        thresholds = config.matching.thresholds
        self.band_thresholds = {
            ConfidenceBand.EXCELLENT: Decimal(str(thresholds.excellent)),
            ConfidenceBand.GOOD: Decimal(str(thresholds.good)),
            ConfidenceBand.FAIR: Decimal(str(thresholds.fair)),
            ConfidenceBand.LOW: Decimal(str(thresholds.low)),
        }

    def compute(
        self,
        suggestions: Iterable[Suggestion],
        start: date,
        end: date,
        company_id: Optional[str] = None,
        runs: Iterable[MatchRunRecord] = (),
    ) -> MetricsReport:
        """
        Compute matching metrics for suggestions created between two dates.

        Args:
            suggestions: Suggestion history
            start: First day of the period (inclusive)
            end: Last day of the period (inclusive)
            company_id: Restrict to one company (all companies when None)
            runs: Match-run log, used for durations and volumes

        Returns:
            MetricsReport for the period
        """
        if end < start:
            start, end = end, start

        def in_scope(created, owner: str) -> bool:
            return start <= created.date() <= end and (company_id is None or owner == company_id)

        selected = [s for s in suggestions if in_scope(s.created_at, s.company_id)]
        selected_runs = [r for r in runs if in_scope(r.started_at, r.company_id)]
        logger.info(
            f"Computing matching metrics for {start} - {end}: "
            f"{len(selected)} suggestion(s), {len(selected_runs)} run(s)"
        )

        report = MetricsReport(start_date=start, end_date=end, company_id=company_id)
        if not selected:
            logger.warning("No suggestions found for the requested period")
            report.global_metrics = self._global_metrics([], selected_runs)
            report.recommendations = ["No data available for this period"]
            return report

        report.global_metrics = self._global_metrics(selected, selected_runs)
        report.confidence_breakdown = self._band_breakdown(selected)
        report.match_type_breakdown = self._match_type_breakdown(selected)
        report.top_rejection_reasons = self._rejection_reasons(selected)
        report.volume_performance = self._volume_performance(selected, selected_runs)
        report.time_series_granularity, report.time_series = self._time_series(selected, start, end)
        report.user_productivity, report.team_productivity = self._productivity(selected)
        report.recommendations = self._recommendations(report)
        return report

    def _global_metrics(
        self, suggestions: list[Suggestion], runs: list[MatchRunRecord]
    ) -> GlobalMetrics:
        counts = defaultdict(int)
        for suggestion in suggestions:
            counts[suggestion.status] += 1

        if runs:
            analyzed = sum(r.records_analyzed for r in runs)
        else:
            analyzed = sum(len(s.record_ids) for s in suggestions)
        durations = [r.duration_seconds for r in runs]

        return GlobalMetrics(
            total_analyses=len({s.reconciliation_id for s in suggestions}),
            total_transactions_analyzed=analyzed,
            total_generated=len(suggestions),
            total_applied=counts[SuggestionStatus.APPLIED],
            total_rejected=counts[SuggestionStatus.REJECTED],
            total_pending=counts[SuggestionStatus.PENDING],
            total_expired=counts[SuggestionStatus.EXPIRED],
            precision_rate=_rate(counts[SuggestionStatus.APPLIED], len(suggestions)),
            average_confidence=_average([s.confidence_score for s in suggestions]),
            average_run_seconds=mean(durations) if durations else None,
            median_run_seconds=median(durations) if durations else None,
            p95_run_seconds=_percentile(durations, 95),
        )

    def _breakdown(self, key: str, group: list[Suggestion], total: int) -> BreakdownMetric:
        applied = sum(1 for s in group if s.status is SuggestionStatus.APPLIED)
        rejected = sum(1 for s in group if s.status is SuggestionStatus.REJECTED)
        return BreakdownMetric(
            key=key,
            count=len(group),
            applied=applied,
            rejected=rejected,
            application_rate=_rate(applied, len(group)),
            share=_rate(len(group), total),
            average_confidence=_average([s.confidence_score for s in group]),
        )

    def _band_breakdown(self, suggestions: list[Suggestion]) -> list[BreakdownMetric]:
        by_band: dict[ConfidenceBand, list[Suggestion]] = defaultdict(list)
        for suggestion in suggestions:
            if suggestion.confidence_band is not None:
                by_band[suggestion.confidence_band].append(suggestion)

        metrics = []
        for band in (
            ConfidenceBand.EXCELLENT,
            ConfidenceBand.GOOD,
            ConfidenceBand.FAIR,
            ConfidenceBand.LOW,
        ):
            if band not in by_band:
                continue
            metric = self._breakdown(band.name, by_band[band], len(suggestions))
            metric.score_range = band_range(band, self.band_thresholds)
            metrics.append(metric)
        return metrics

    def _match_type_breakdown(self, suggestions: list[Suggestion]) -> list[BreakdownMetric]:
        by_type: dict[MatchType, list[Suggestion]] = defaultdict(list)
        for suggestion in suggestions:
            by_type[suggestion.match_type].append(suggestion)
        return [
            self._breakdown(match_type.name, by_type[match_type], len(suggestions))
            for match_type in MatchType
            if match_type in by_type
        ]

    def _rejection_reasons(self, suggestions: list[Suggestion]) -> list[RejectionReasonMetric]:
        rejected = [
            s
            for s in suggestions
            if s.status is SuggestionStatus.REJECTED and s.rejection_reason and s.rejection_reason.strip()
        ]
        if not rejected:
            return []

        counts: dict[str, int] = defaultdict(int)
        labels: dict[str, str] = {}
        for suggestion in rejected:
            key = _normalize_reason(suggestion.rejection_reason)
            counts[key] += 1
            labels.setdefault(key, " ".join(suggestion.rejection_reason.split()))

        metrics = []
        for key, count in sorted(counts.items(), key=lambda item: (-item[1], item[0])):
            share = _rate(count, len(rejected))
            metrics.append(
                RejectionReasonMetric(
                    reason=labels[key],
                    count=count,
                    share=share,
                    suggested_action=self._suggested_action(key),
                    priority="HIGH" if share > 20 else "MEDIUM" if share > 10 else "LOW",
                )
            )
        return metrics[: self.settings.top_rejection_reasons]

    def _suggested_action(self, reason: str) -> str:
        for keywords, action in REJECTION_ACTIONS:
            if any(keyword in reason for keyword in keywords):
                return action
        return DEFAULT_REJECTION_ACTION

    def _volume_performance(
        self, suggestions: list[Suggestion], runs: list[MatchRunRecord]
    ) -> list[VolumePerformanceMetric]:
        by_reconciliation: dict[str, list[Suggestion]] = defaultdict(list)
        for suggestion in suggestions:
            by_reconciliation[suggestion.reconciliation_id].append(suggestion)
        runs_by_reconciliation: dict[str, list[MatchRunRecord]] = defaultdict(list)
        for run in runs:
            runs_by_reconciliation[run.reconciliation_id].append(run)

        precisions: dict[str, list[Decimal]] = defaultdict(list)
        durations: dict[str, list[float]] = defaultdict(list)
        for reconciliation_id, group in by_reconciliation.items():
            recon_runs = runs_by_reconciliation.get(reconciliation_id, [])
            if recon_runs:
                records = max(r.records_analyzed for r in recon_runs)
            else:
                records = sum(len(s.record_ids) for s in group)
            bucket = _volume_bucket(records)
            applied = sum(1 for s in group if s.status is SuggestionStatus.APPLIED)
            precisions[bucket].append(_rate(applied, len(group)))
            durations[bucket].extend(r.duration_seconds for r in recon_runs)

        metrics = []
        for label, _, _ in VOLUME_BUCKETS:
            if label not in precisions:
                continue
            times = durations[label]
            average = mean(times) if times else None
            metrics.append(
                VolumePerformanceMetric(
                    volume_range=label,
                    analyses_count=len(precisions[label]),
                    average_precision=_average(precisions[label]),
                    average_seconds=average,
                    max_seconds=max(times) if times else None,
                    p95_seconds=_percentile(times, 95),
                    status=self._performance_status(average),
                )
            )
        return metrics

    def _performance_status(self, average_seconds: Optional[float]) -> str:
        if average_seconds is None:
            return "UNKNOWN"
        if average_seconds < self.settings.volume_warning_seconds:
            return "OK"
        if average_seconds < self.settings.volume_critical_seconds:
            return "WARNING"
        return "CRITICAL"

    def _time_series(
        self, suggestions: list[Suggestion], start: date, end: date
    ) -> tuple[str, list[TimeSeriesPoint]]:
        daily = (end - start).days + 1 <= self.settings.daily_series_max_days

        def bucket_of(day: date) -> date:
            return day if daily else day.replace(day=1)

        points: dict[date, TimeSeriesPoint] = {}
        cursor = bucket_of(start)
        while cursor <= end:
            points[cursor] = TimeSeriesPoint(bucket=cursor)
            if daily:
                cursor += timedelta(days=1)
            else:
                cursor = (cursor + timedelta(days=32)).replace(day=1)

        for suggestion in suggestions:
            point = points[bucket_of(suggestion.created_at.date())]
            point.generated += 1
            if suggestion.status is SuggestionStatus.APPLIED:
                point.applied += 1
            elif suggestion.status is SuggestionStatus.REJECTED:
                point.rejected += 1

        for point in points.values():
            point.precision_rate = _rate(point.applied, point.generated)
        return ("daily" if daily else "monthly"), list(points.values())

    def _productivity(
        self, suggestions: list[Suggestion]
    ) -> tuple[list[UserProductivity], Optional[UserProductivity]]:
        decided = [
            s
            for s in suggestions
            if s.processed_by
            and s.status in (SuggestionStatus.APPLIED, SuggestionStatus.REJECTED)
        ]
        if not decided:
            return [], None

        by_user: dict[str, list[Suggestion]] = defaultdict(list)
        for suggestion in decided:
            by_user[suggestion.processed_by].append(suggestion)

        users = [self._user_metrics(user, group) for user, group in by_user.items()]
        users.sort(key=lambda u: (-u.decisions, u.user))
        return users, self._user_metrics("team", decided)

    def _user_metrics(self, user: str, decided: list[Suggestion]) -> UserProductivity:
        applied = sum(1 for s in decided if s.status is SuggestionStatus.APPLIED)
        delays = [
            (s.processed_at - s.created_at).total_seconds() for s in decided if s.processed_at
        ]
        return UserProductivity(
            user=user,
            decisions=len(decided),
            applied=applied,
            rejected=len(decided) - applied,
            application_rate=_rate(applied, len(decided)),
            average_decision_seconds=mean(delays) if delays else None,
        )

    def _recommendations(self, report: MetricsReport) -> list[str]:
        settings = self.settings
        recommendations: list[str] = []
        precision = report.global_metrics.precision_rate
        bands = {metric.key: metric for metric in report.confidence_breakdown}

        excellent = bands.get(ConfidenceBand.EXCELLENT.name)
        auto_apply = (
            excellent is not None
            and excellent.count >= settings.min_sample_size
            and excellent.application_rate >= Decimal(str(settings.auto_apply_rate_threshold))
        )
        if auto_apply:
            recommendations.append(
                f"Enable auto-apply above {self.config.matching.thresholds.excellent:g}% "
                f"confidence: {excellent.application_rate}% of {excellent.count} "
                f"EXCELLENT suggestions were applied"
            )

        if precision < Decimal(str(settings.low_precision_threshold)):
            recommendations.append(
                f"Low precision ({precision}%): consider tightening the amount tolerance "
                f"or improving the detection keywords"
            )
        elif precision >= Decimal(str(settings.excellent_precision_threshold)) and not auto_apply:
            recommendations.append(
                f"Excellent precision ({precision}%): auto-apply can be considered once "
                f"{settings.min_sample_size} EXCELLENT suggestions have been reviewed"
            )

        weak_rate = Decimal(str(settings.weak_band_rate_threshold))
        for metric in report.confidence_breakdown + report.match_type_breakdown:
            if metric.count >= settings.min_sample_size and metric.application_rate < weak_rate:
                recommendations.append(
                    f"{metric.key} suggestions have a low application rate "
                    f"({metric.application_rate}%): raise their threshold or improve detection"
                )

        if report.top_rejection_reasons:
            top = report.top_rejection_reasons[0]
            if top.count >= settings.dominant_reason_min_count:
                recommendations.append(
                    f'Frequent rejection reason "{top.reason}" ({top.count} times): '
                    f"{top.suggested_action}"
                )

        volumes = report.volume_performance
        for metric in volumes:
            if metric.status in ("WARNING", "CRITICAL"):
                recommendations.append(
                    f"Matching runs for {metric.volume_range} records are slow "
                    f"({metric.average_seconds:.1f}s on average, {metric.status})"
                )
        if len(volumes) > 1 and volumes[-1].average_precision + 10 < volumes[0].average_precision:
            recommendations.append(
                f"Precision degrades at high volume: {volumes[-1].average_precision}% for "
                f"{volumes[-1].volume_range} records against {volumes[0].average_precision}% "
                f"for {volumes[0].volume_range}"
            )

        if not recommendations:
            recommendations.append("System performing well: no corrective action needed")
        return recommendations
