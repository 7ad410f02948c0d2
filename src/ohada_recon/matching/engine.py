"""
Matching engine for bank reconciliation.
Proposes suggestions pairing bank transactions with ledger entries.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Iterable, Optional, Sequence
import logging
import threading
import time

from ..config import ReconConfig
from ..models.reconciliation import PendingItemType, Reconciliation
from ..models.suggestion import (
    ConfidenceBand,
    MatchRunRecord,
    MatchType,
    Suggestion,
    band_for,
)
from ..models.transaction import ZERO, BankTransaction, GeneralLedgerEntry, RecordSide
from ..utils.exceptions import ValidationError
from .classifier import UnmatchedClassifier, UnmatchedRecord
from .combinations import (
    GroupMatchStrategy,
    ManyToManyStrategy,
    ManyToOneStrategy,
    OneToManyStrategy,
)
from .strategies import Candidate, MatchScorer, SingleMatchStrategy

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cooperative cancellation of a matching run.

    Cancelled explicitly with ``cancel()`` or implicitly once the optional
    deadline has passed.
    """

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._event = threading.Event()
        self._clock = clock
        self._deadline = clock() + timeout_seconds if timeout_seconds else None
        self.timed_out = False

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self.timed_out = True
            self._event.set()
            return True
        return False


@dataclass
class SkippedRecord:
    """A record left out of matching because it is malformed."""

    side: RecordSide
    record_id: str
    reason: str


@dataclass
class MatchStatistics:
    transactions_analyzed: int = 0
    entries_analyzed: int = 0
    by_match_type: dict[str, int] = field(default_factory=dict)
    by_band: dict[str, int] = field(default_factory=dict)
    average_confidence: Decimal = ZERO
    auto_apply_eligible: int = 0


@dataclass
class MatchRunResult:
    """Outcome of one matching run."""

    reconciliation_id: str
    company_id: str
    started_at: datetime
    finished_at: datetime
    suggestions: list[Suggestion] = field(default_factory=list)
    existing_suggestions: list[Suggestion] = field(default_factory=list)
    unmatched: list[UnmatchedRecord] = field(default_factory=list)
    skipped: list[SkippedRecord] = field(default_factory=list)
    statistics: MatchStatistics = field(default_factory=MatchStatistics)
    messages: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_run_record(self) -> MatchRunRecord:
        return MatchRunRecord(
            reconciliation_id=self.reconciliation_id,
            company_id=self.company_id,
            started_at=self.started_at,
            finished_at=self.finished_at,
            transactions_analyzed=self.statistics.transactions_analyzed,
            entries_analyzed=self.statistics.entries_analyzed,
            suggestions_generated=len(self.suggestions),
            cancelled=self.cancelled,
        )


class MatchingEngine:
    """
    Orchestrates a matching run.

    Single candidates are scored in parallel on a read-only snapshot of the
    pools; claims are then merged by a single writer in a fixed order:
    confident singles, one-to-many, many-to-one, many-to-many, low singles.
    The engine never mutates the records it is given.
    """

    def __init__(self, config: ReconConfig, clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize the matching engine.

        Args:
            config: Application configuration
            clock: Source of timestamps for suggestions (defaults to now)
        """
        self.config = config
        self.matching = config.matching
        self.clock = clock or datetime.now
        self.scorer = MatchScorer(self.matching)
        self.single = SingleMatchStrategy(self.matching, self.scorer)
        self.group_phases: list[tuple[str, GroupMatchStrategy]] = self._build_group_phases()
        self.classifier = UnmatchedClassifier(self.matching)

        thresholds = self.matching.thresholds
        self.thresholds = {
            ConfidenceBand.EXCELLENT: Decimal(str(thresholds.excellent)),
            ConfidenceBand.GOOD: Decimal(str(thresholds.good)),
            ConfidenceBand.FAIR: Decimal(str(thresholds.fair)),
            ConfidenceBand.LOW: Decimal(str(thresholds.low)),
        }

    def _build_group_phases(self) -> list[tuple[str, GroupMatchStrategy]]:
        settings = self.matching.multiple_matching
        if not settings.enabled:
            return []
        phases: list[tuple[str, GroupMatchStrategy]] = [
            ("one_to_many", OneToManyStrategy(self.matching, self.scorer)),
            ("many_to_one", ManyToOneStrategy(self.matching, self.scorer)),
        ]
        if settings.many_to_many_enabled:
            phases.append(("many_to_many", ManyToManyStrategy(self.matching, self.scorer)))
        return phases

    def run(
        self,
        reconciliation: Reconciliation,
        bank_transactions: Iterable[BankTransaction],
        gl_entries: Iterable[GeneralLedgerEntry],
        pending_suggestions: Iterable[Suggestion] = (),
        cancel_token: Optional[CancellationToken] = None,
    ) -> MatchRunResult:
        """
        Propose matches for a reconciliation.

        Args:
            reconciliation: Reconciliation giving company, accounts and period
            bank_transactions: Candidate bank transactions
            gl_entries: Candidate ledger entries
            pending_suggestions: Suggestions already awaiting review
            cancel_token: Optional token; a deadline is derived from the
                configured timeout when omitted

        Returns:
            MatchRunResult with new and existing suggestions, unmatched and
            skipped records
        """
        token = cancel_token or CancellationToken(self.matching.performance.timeout_seconds)
        started_at = self.clock()
        result = MatchRunResult(
            reconciliation_id=reconciliation.id,
            company_id=reconciliation.company_id,
            started_at=started_at,
            finished_at=started_at,
        )

        bank_pool = self._bank_pool(reconciliation, bank_transactions, result)
        gl_pool = self._gl_pool(reconciliation, gl_entries, result)
        result.statistics.transactions_analyzed = len(bank_pool)
        result.statistics.entries_analyzed = len(gl_pool)

        logger.info(
            f"Starting matching for reconciliation {reconciliation.id}: "
            f"{len(bank_pool)} bank transactions, {len(gl_pool)} ledger entries"
        )

        bank_pool, gl_pool = self._exclude_pending(
            reconciliation, bank_pool, gl_pool, pending_suggestions, result
        )

        candidates_by_txn = self._score_singles(bank_pool, gl_pool, token)
        if candidates_by_txn is None:
            result.cancelled = True
            candidates_by_txn = {}

        accepted = self._merge(bank_pool, gl_pool, candidates_by_txn, token, result)
        result.suggestions = [self._to_suggestion(reconciliation, c) for c in accepted]

        if token.is_cancelled():
            result.cancelled = True

        if result.cancelled:
            reason = "timeout" if token.timed_out else "cancellation"
            result.messages.append(
                f"Run stopped by {reason}; {len(result.suggestions)} completed suggestion(s) kept"
            )
            logger.warning(f"Matching for reconciliation {reconciliation.id} stopped by {reason}")
        else:
            claimed = set()
            for candidate in accepted:
                claimed |= candidate.record_ids
            result.unmatched = [
                self.classifier.classify_bank_transaction(t)
                for t in bank_pool
                if t.id not in claimed
            ] + [
                self.classifier.classify_ledger_entry(e)
                for e in gl_pool
                if e.id not in claimed
            ]

        self._collect_statistics(result)
        result.finished_at = self.clock()

        logger.info(
            f"Matching complete in {result.duration_seconds:.2f}s: "
            f"{len(result.suggestions)} new suggestion(s), "
            f"{len(result.existing_suggestions)} already pending, "
            f"{len(result.unmatched)} unmatched, {len(result.skipped)} skipped"
        )
        return result

    # Pools

    def _bank_pool(
        self,
        reconciliation: Reconciliation,
        transactions: Iterable[BankTransaction],
        result: MatchRunResult,
    ) -> list[BankTransaction]:
        pool: list[BankTransaction] = []
        for txn in transactions:
            if txn.is_reconciled or txn.company_id != reconciliation.company_id:
                continue
            if txn.account_number != reconciliation.bank_account_number:
                continue
            try:
                txn.validate()
            except ValidationError as e:
                self._skip(result, RecordSide.BANK, txn.id, e.message)
                continue
            if reconciliation.covers(txn.transaction_date):
                pool.append(txn)
        return self._truncate(pool, lambda t: t.transaction_date, "bank transactions", result)

    def _gl_pool(
        self,
        reconciliation: Reconciliation,
        entries: Iterable[GeneralLedgerEntry],
        result: MatchRunResult,
    ) -> list[GeneralLedgerEntry]:
        pool: list[GeneralLedgerEntry] = []
        for entry in entries:
            if entry.is_reconciled or entry.company_id != reconciliation.company_id:
                continue
            if entry.account_number != reconciliation.gl_account_number:
                continue
            try:
                entry.validate()
            except ValidationError as e:
                self._skip(result, RecordSide.LEDGER, entry.id, e.message)
                continue
            if reconciliation.covers(entry.entry_date):
                pool.append(entry)
        return self._truncate(pool, lambda e: e.entry_date, "ledger entries", result)

    def _skip(self, result: MatchRunResult, side: RecordSide, record_id: str, reason: str) -> None:
        logger.warning(f"Skipping {side.value} record {record_id}: {reason}")
        result.skipped.append(SkippedRecord(side, record_id, reason))

    def _truncate(self, pool: list, date_of: Callable, label: str, result: MatchRunResult) -> list:
        limit = self.matching.performance.max_items_per_phase
        if len(pool) <= limit:
            return pool
        message = f"{len(pool)} {label} exceed the limit of {limit}; keeping the most recent"
        logger.warning(message)
        result.messages.append(message)
        return sorted(pool, key=lambda r: (date_of(r), r.id), reverse=True)[:limit]

    def _exclude_pending(
        self,
        reconciliation: Reconciliation,
        bank_pool: list[BankTransaction],
        gl_pool: list[GeneralLedgerEntry],
        pending_suggestions: Iterable[Suggestion],
        result: MatchRunResult,
    ) -> tuple[list[BankTransaction], list[GeneralLedgerEntry]]:
        pool_ids = {t.id for t in bank_pool} | {e.id for e in gl_pool}
        referenced: set[str] = set()
        for suggestion in pending_suggestions:
            if not suggestion.is_pending:
                continue
            if suggestion.reconciliation_id == reconciliation.id or pool_ids & set(
                suggestion.record_ids
            ):
                result.existing_suggestions.append(suggestion)
                referenced |= set(suggestion.record_ids)

        if referenced:
            logger.debug(f"{len(referenced)} record(s) already covered by pending suggestions")
        return (
            [t for t in bank_pool if t.id not in referenced],
            [e for e in gl_pool if e.id not in referenced],
        )

    # Scoring

    def _score_singles(
        self,
        bank_pool: Sequence[BankTransaction],
        gl_pool: Sequence[GeneralLedgerEntry],
        token: CancellationToken,
    ) -> Optional[dict[str, list[Candidate]]]:
        """Score every transaction against the ledger pool; None when cancelled."""
        if not bank_pool or not gl_pool:
            return {}

        snapshot = tuple(gl_pool)

        def score(txn: BankTransaction) -> Optional[list[Candidate]]:
            if token.is_cancelled():
                return None
            return self.single.candidates_for(txn, snapshot)

        with ThreadPoolExecutor(max_workers=self.matching.performance.max_workers) as executor:
            scored = list(executor.map(score, bank_pool))

        if any(candidates is None for candidates in scored):
            return None
        return {txn.id: candidates for txn, candidates in zip(bank_pool, scored)}

    # Merge

    def _merge(
        self,
        bank_pool: Sequence[BankTransaction],
        gl_pool: Sequence[GeneralLedgerEntry],
        candidates_by_txn: dict[str, list[Candidate]],
        token: CancellationToken,
        result: MatchRunResult,
    ) -> list[Candidate]:
        fair = self.thresholds[ConfidenceBand.FAIR]
        low = self.thresholds[ConfidenceBand.LOW]
        singles = sorted(
            (c for candidates in candidates_by_txn.values() for c in candidates),
            key=lambda c: (-c.score, c.bank_transactions[0].id, c.gl_entries[0].id),
        )

        accepted: list[Candidate] = []
        claimed: set[str] = set()

        def claim_singles(minimum: Decimal, maximum: Optional[Decimal]) -> None:
            for candidate in singles:
                if token.is_cancelled():
                    result.cancelled = True
                    return
                if candidate.score < minimum or (maximum is not None and candidate.score >= maximum):
                    continue
                if candidate.record_ids & claimed:
                    continue
                accepted.append(candidate)
                claimed.update(candidate.record_ids)

        claim_singles(fair, None)

        for phase, strategy in self.group_phases:
            if result.cancelled or token.is_cancelled():
                result.cancelled = True
                break
            remaining_bank = [t for t in bank_pool if t.id not in claimed]
            remaining_gl = [e for e in gl_pool if e.id not in claimed]
            groups = strategy.find_matches(remaining_bank, remaining_gl, should_stop=token.is_cancelled)
            for candidate in groups:
                accepted.append(candidate)
                claimed.update(candidate.record_ids)
            logger.debug(f"Phase {phase}: {len(groups)} group(s)")

        if not result.cancelled and not token.is_cancelled():
            claim_singles(low, fair)

        return accepted

    # Emission

    def _to_suggestion(self, reconciliation: Reconciliation, candidate: Candidate) -> Suggestion:
        band = band_for(candidate.score, self.thresholds)
        match_type = MatchType.from_counts(
            len(candidate.bank_transactions), len(candidate.gl_entries)
        )
        bank_total = candidate.bank_total
        book_total = candidate.book_total
        variance = bank_total - book_total

        suggested_type: Optional[PendingItemType] = None
        if variance < ZERO:
            suggested_type = PendingItemType.BANK_FEES_NOT_RECORDED
        elif variance > ZERO:
            suggested_type = PendingItemType.CREDIT_NOT_RECORDED

        first_txn = candidate.bank_transactions[0]
        third_party = first_txn.third_party_name or next(
            (e.third_party_name for e in candidate.gl_entries if e.third_party_name), None
        )

        return Suggestion(
            company_id=reconciliation.company_id,
            reconciliation_id=reconciliation.id,
            bank_transaction_ids=tuple(t.id for t in candidate.bank_transactions),
            gl_entry_ids=tuple(e.id for e in candidate.gl_entries),
            confidence_score=candidate.score,
            matching_reason=candidate.match_score.reason,
            confidence_band=band,
            requires_manual_review=(
                match_type is not MatchType.SINGLE
                or band.rank < ConfidenceBand.GOOD.rank
            ),
            bank_total=bank_total,
            book_total=book_total,
            suggested_item_type=suggested_type,
            transaction_date=first_txn.transaction_date,
            third_party=third_party,
            created_at=self.clock(),
        )

    def _collect_statistics(self, result: MatchRunResult) -> None:
        stats = result.statistics
        auto_threshold = Decimal(str(self.matching.auto_apply.threshold))
        for suggestion in result.suggestions:
            match_type = suggestion.match_type.value
            stats.by_match_type[match_type] = stats.by_match_type.get(match_type, 0) + 1
            band = suggestion.confidence_band.value
            stats.by_band[band] = stats.by_band.get(band, 0) + 1
            if (
                suggestion.match_type is MatchType.SINGLE
                and suggestion.confidence_score >= auto_threshold
            ):
                stats.auto_apply_eligible += 1
        if result.suggestions:
            total = sum((s.confidence_score for s in result.suggestions), ZERO)
            stats.average_confidence = (total / len(result.suggestions)).quantize(
                Decimal("0.01"), rounding=ROUND_HALF_UP
            )
