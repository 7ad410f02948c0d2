"""
Reconciliation service.

Entry point used by the CLI and by embedding applications. Every mutating
operation runs in one unit of work and is retried once when it loses an
optimistic-locking race.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional, TypeVar
import logging

from .config import ReconConfig
from .ledger.balances import ReconciliationLedger
from .ledger.pending_items import PendingItemTracker
from .matching.classifier import UnmatchedRecord
from .matching.engine import CancellationToken, MatchingEngine, MatchRunResult
from .metrics.aggregator import MetricsAggregator
from .models.metrics import MetricsReport
from .models.reconciliation import (
    PendingItem,
    PendingItemType,
    Reconciliation,
    ReconciliationStatus,
)
from .models.suggestion import MatchType, Suggestion, SuggestionStatus
from .models.transaction import ZERO, RecordSide, to_decimal
from .review.lifecycle import SuggestionLifecycle
from .store import RECONCILIATION, SUGGESTION, InMemoryStore, UnitOfWork
from .utils.exceptions import ConcurrencyConflict, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ReconciliationStatistics:
    """Workflow overview of a company's reconciliations."""

    company_id: str
    total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    balanced: int = 0
    unbalanced: int = 0
    approval_rate: Decimal = ZERO


class ReconciliationService:
    """Facade over the ledger, matching, review and metrics components."""

    def __init__(
        self,
        store: Optional[InMemoryStore] = None,
        config: Optional[ReconConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the service.

        Args:
            store: Persistence (a fresh in-memory store when omitted)
            config: Application configuration (defaults when omitted)
            clock: Source of timestamps (defaults to now)
        """
        self.store = store or InMemoryStore()
        self.config = config or ReconConfig()
        self.clock = clock or datetime.now
        self.ledger = ReconciliationLedger(self.clock)
        self.tracker = PendingItemTracker(self.ledger)
        self.lifecycle = SuggestionLifecycle(self.tracker, self.clock)
        self.engine = MatchingEngine(self.config, self.clock)
        self.metrics = MetricsAggregator(self.config)

    def _execute(self, description: str, operation: Callable[[UnitOfWork], T]) -> T:
        """Run an operation in a unit of work, retrying once on a concurrency conflict."""
        attempt = 1
        while True:
            try:
                with self.store.unit_of_work() as uow:
                    result = operation(uow)
                    uow.commit()
                return result
            except ConcurrencyConflict as e:
                if attempt >= 2:
                    logger.error(f"{description} failed after retry: {e}")
                    raise
                logger.warning(f"{description} conflicted ({e}), retrying")
                attempt += 1

    # Reconciliations

    def book_balance_from_ledger(self, company_id: str, gl_account_number: str, as_of: date) -> Decimal:
        """Book balance of a bank GL account: sum of debit - credit up to a date."""
        entries = self.store.gl_entries(
            lambda e: e.company_id == company_id
            and e.account_number == gl_account_number
            and e.entry_date is not None
            and e.entry_date <= as_of
        )
        return sum((e.signed_amount for e in entries), ZERO)

    def create_reconciliation(
        self,
        company_id: str,
        bank_account_number: str,
        period_start: date,
        period_end: date,
        statement_balance,
        book_balance=None,
        actor: Optional[str] = None,
        **details,
    ) -> Reconciliation:
        """
        Create a DRAFT reconciliation for a bank account and period.

        Args:
            company_id: Owning company
            bank_account_number: Bank account being reconciled
            period_start: First day of the period
            period_end: Last day of the period (statement date)
            statement_balance: Balance shown on the bank statement
            book_balance: Book balance; derived from the ledger when omitted
            actor: User preparing the reconciliation
            **details: Optional header fields (bank_name, gl_account_number,
                statement_reference, notes, reconciliation_date)

        Returns:
            The created reconciliation

        Raises:
            ValidationError: On an inverted period, a missing statement
                balance or a duplicate (company, account, period)
        """
        key = f"{company_id}/{bank_account_number}/{period_start}..{period_end}"
        if period_end < period_start:
            raise ValidationError(
                f"Period end {period_end} is before period start {period_start}",
                entity_id=key,
                invariant="period-order",
            )
        if to_decimal(statement_balance) is None:
            raise ValidationError(
                "A statement balance is required", entity_id=key, invariant="statement-balance"
            )

        reconciliation = Reconciliation(
            company_id=company_id,
            bank_account_number=bank_account_number,
            period_start=period_start,
            period_end=period_end,
            statement_balance=statement_balance,
            book_balance=book_balance,
            prepared_by=actor,
            **details,
        )
        reconciliation.created_at = self.clock()
        if reconciliation.book_balance is None:
            reconciliation.book_balance = self.book_balance_from_ledger(
                company_id, reconciliation.gl_account_number, period_end
            )
            logger.info(
                f"Book balance derived from ledger account {reconciliation.gl_account_number}: "
                f"{reconciliation.book_balance}"
            )
        self.ledger.recalculate(reconciliation)

        existing = self.store.reconciliations(lambda r: r.key == reconciliation.key)
        if existing:
            raise ValidationError(
                "A reconciliation already exists for this account and period",
                entity_id=existing[0].id,
                invariant="unique-period",
            )

        def operation(uow: UnitOfWork) -> Reconciliation:
            return uow.add_reconciliation(reconciliation)

        created = self._execute("Create reconciliation", operation)
        logger.info(
            f"Created reconciliation {created.id} for account {bank_account_number} "
            f"({period_start} - {period_end}), difference {created.difference}"
        )
        return created

    def get_reconciliation(self, reconciliation_id: str) -> Reconciliation:
        reconciliation = self.store.get(RECONCILIATION, reconciliation_id)
        if reconciliation is None:
            raise NotFoundError("Reconciliation not found", entity_id=reconciliation_id)
        return reconciliation

    def verify_reconciliation(self, reconciliation_id: str) -> Reconciliation:
        """Check stored totals against a recomputation; raises ConsistencyError on drift."""
        reconciliation = self.get_reconciliation(reconciliation_id)
        self.ledger.verify(reconciliation)
        return reconciliation

    def _list(self, predicate: Callable[[Reconciliation], bool]) -> list[Reconciliation]:
        reconciliations = self.store.reconciliations(predicate)
        reconciliations.sort(key=lambda r: (r.period_end, r.created_at), reverse=True)
        return reconciliations

    def list_reconciliations(self, company_id: str) -> list[Reconciliation]:
        return self._list(lambda r: r.company_id == company_id)

    def list_by_account(self, company_id: str, bank_account_number: str) -> list[Reconciliation]:
        return self._list(
            lambda r: r.company_id == company_id and r.bank_account_number == bank_account_number
        )

    def list_unbalanced(self, company_id: str) -> list[Reconciliation]:
        return self._list(lambda r: r.company_id == company_id and not r.is_balanced)

    def list_pending_review(self, company_id: str) -> list[Reconciliation]:
        return self._list(
            lambda r: r.company_id == company_id
            and r.status is ReconciliationStatus.PENDING_REVIEW
        )

    def update_balances(
        self,
        reconciliation_id: str,
        statement_balance=None,
        book_balance=None,
    ) -> Reconciliation:
        """Change the statement and/or book balance of an editable reconciliation."""

        def operation(uow: UnitOfWork) -> Reconciliation:
            reconciliation = uow.reconciliation(reconciliation_id)
            self.ledger.ensure_editable(reconciliation)
            if statement_balance is not None:
                reconciliation.statement_balance = to_decimal(statement_balance)
            if book_balance is not None:
                reconciliation.book_balance = to_decimal(book_balance)
            return self.ledger.recalculate(reconciliation)

        return self._execute("Update balances", operation)

    def delete_reconciliation(self, reconciliation_id: str) -> None:
        """
        Delete an editable reconciliation with its pending items.

        Its PENDING suggestions are deleted, decided suggestions stay as
        history, and records reconciled under it are released.
        """

        def operation(uow: UnitOfWork) -> int:
            reconciliation = uow.reconciliation(reconciliation_id)
            self.ledger.ensure_editable(reconciliation)
            pending = uow.pending_suggestions(reconciliation_id)
            for suggestion in pending:
                uow.delete(SUGGESTION, suggestion.id)
            for txn in self.store.bank_transactions(lambda t: t.reconciliation_id == reconciliation_id):
                self._release(uow.bank_transaction(txn.id))
            for entry in self.store.gl_entries(lambda e: e.reconciliation_id == reconciliation_id):
                self._release(uow.gl_entry(entry.id))
            uow.delete(RECONCILIATION, reconciliation_id)
            return len(pending)

        deleted = self._execute("Delete reconciliation", operation)
        logger.info(
            f"Deleted reconciliation {reconciliation_id} and {deleted} pending suggestion(s)"
        )

    @staticmethod
    def _release(record) -> None:
        record.is_reconciled = False
        record.match_group_id = None
        record.reconciliation_id = None
        if hasattr(record, "matched_gl_entry_ids"):
            record.matched_gl_entry_ids = []
        else:
            record.matched_bank_transaction_ids = []

    # Pending items

    def add_pending_item(self, reconciliation_id: str, item: PendingItem) -> PendingItem:
        """
        Add a pending item to an editable reconciliation.

        Raises:
            ValidationError: If the item is malformed or links a record that
                is unknown or belongs to another company
        """

        def operation(uow: UnitOfWork) -> PendingItem:
            reconciliation = uow.reconciliation(reconciliation_id)
            self._check_links(uow, reconciliation, item)
            return self.tracker.add_item(reconciliation, item)

        return self._execute("Add pending item", operation)

    def add_item_from_unmatched(
        self,
        reconciliation_id: str,
        record: UnmatchedRecord,
        item_type: Optional[PendingItemType] = None,
    ) -> PendingItem:
        """Turn an unmatched record into a pending item, by default of its proposed type."""
        item = PendingItem(
            item_type=item_type or record.proposed_type,
            amount=abs(record.amount),
            transaction_date=record.record_date,
            description=record.description,
            reference=record.reference,
            third_party=record.third_party,
            bank_transaction_id=record.record_id if record.side is RecordSide.BANK else None,
            gl_entry_id=record.record_id if record.side is RecordSide.LEDGER else None,
        )
        return self.add_pending_item(reconciliation_id, item)

    def remove_pending_item(self, reconciliation_id: str, item_id: str) -> PendingItem:
        def operation(uow: UnitOfWork) -> PendingItem:
            return self.tracker.remove_item(uow.reconciliation(reconciliation_id), item_id)

        return self._execute("Remove pending item", operation)

    def resolve_pending_item(
        self, reconciliation_id: str, item_id: str, notes: Optional[str] = None
    ) -> PendingItem:
        def operation(uow: UnitOfWork) -> PendingItem:
            return self.tracker.resolve_item(
                uow.reconciliation(reconciliation_id), item_id, notes, self.clock().date()
            )

        return self._execute("Resolve pending item", operation)

    def _check_links(self, uow: UnitOfWork, reconciliation: Reconciliation, item: PendingItem) -> None:
        links = [
            ("bank transaction", uow.bank_transaction, item.bank_transaction_id),
            ("ledger entry", uow.gl_entry, item.gl_entry_id),
        ]
        for label, load, record_id in links:
            if record_id is None:
                continue
            try:
                record = load(record_id)
            except NotFoundError as e:
                raise ValidationError(
                    f"Pending item links an unknown {label}",
                    entity_id=record_id,
                    invariant="item-links",
                ) from e
            if record.company_id != reconciliation.company_id:
                raise ValidationError(
                    "Pending item links a record of another company",
                    entity_id=record_id,
                    invariant="same-company",
                )

    # Workflow

    def _transition(self, description: str, reconciliation_id: str, step) -> Reconciliation:
        def operation(uow: UnitOfWork) -> Reconciliation:
            return step(uow, uow.reconciliation(reconciliation_id))

        return self._execute(description, operation)

    def submit_for_review(self, reconciliation_id: str, actor: str) -> Reconciliation:
        return self._transition(
            "Submit for review",
            reconciliation_id,
            lambda uow, rec: self.ledger.submit_for_review(rec, actor),
        )

    def review(self, reconciliation_id: str, actor: str) -> Reconciliation:
        return self._transition(
            "Review", reconciliation_id, lambda uow, rec: self.ledger.review(rec, actor)
        )

    def approve(self, reconciliation_id: str, actor: str) -> Reconciliation:
        """Approve a reconciliation and expire its remaining pending suggestions."""

        def step(uow: UnitOfWork, reconciliation: Reconciliation) -> Reconciliation:
            self.ledger.approve(reconciliation, actor)
            self.lifecycle.expire_pending(uow, reconciliation.id, actor)
            return reconciliation

        return self._transition("Approve", reconciliation_id, step)

    def reject(self, reconciliation_id: str, actor: str, reason: str) -> Reconciliation:
        return self._transition(
            "Reject", reconciliation_id, lambda uow, rec: self.ledger.reject(rec, actor, reason)
        )

    def reopen(self, reconciliation_id: str, actor: str) -> Reconciliation:
        return self._transition(
            "Reopen", reconciliation_id, lambda uow, rec: self.ledger.reopen(rec, actor)
        )

    def archive(self, reconciliation_id: str, actor: str) -> Reconciliation:
        return self._transition(
            "Archive", reconciliation_id, lambda uow, rec: self.ledger.archive(rec, actor)
        )

    # Matching

    def run_matching(
        self,
        reconciliation_id: str,
        actor: str = "system",
        cancel_token: Optional[CancellationToken] = None,
    ) -> MatchRunResult:
        """
        Run the matching engine and persist its suggestions and run record.

        EXCELLENT single suggestions are applied straight away when
        auto-apply is enabled in the configuration.

        Args:
            reconciliation_id: Reconciliation to match
            actor: User recorded on auto-applied suggestions
            cancel_token: Optional cancellation token

        Returns:
            MatchRunResult of the persisted run
        """
        auto_apply = self.config.matching.auto_apply

        def operation(uow: UnitOfWork) -> MatchRunResult:
            reconciliation = uow.reconciliation(reconciliation_id)
            self.ledger.ensure_editable(reconciliation)
            result = self.engine.run(
                reconciliation,
                self.store.bank_transactions(lambda t: t.company_id == reconciliation.company_id),
                self.store.gl_entries(lambda e: e.company_id == reconciliation.company_id),
                self.store.suggestions(
                    lambda s: s.company_id == reconciliation.company_id and s.is_pending
                ),
                cancel_token,
            )
            for suggestion in result.suggestions:
                uow.add_suggestion(suggestion)
            uow.add_run(result.to_run_record())

            if auto_apply.enabled:
                threshold = Decimal(str(auto_apply.threshold))
                applied = [
                    self.lifecycle.apply(uow, s.id, actor)
                    for s in result.suggestions
                    if s.match_type is MatchType.SINGLE and s.confidence_score >= threshold
                ]
                if applied:
                    result.messages.append(f"{len(applied)} suggestion(s) applied automatically")
            return result

        return self._execute("Run matching", operation)

    def list_suggestions(
        self, reconciliation_id: str, status: Optional[SuggestionStatus] = None
    ) -> list[Suggestion]:
        suggestions = self.store.suggestions(
            lambda s: s.reconciliation_id == reconciliation_id
            and (status is None or s.status is status)
        )
        suggestions.sort(key=lambda s: (-s.confidence_score, s.created_at))
        return suggestions

    def apply_suggestion(self, suggestion_id: str, actor: str) -> Suggestion:
        return self._execute(
            "Apply suggestion", lambda uow: self.lifecycle.apply(uow, suggestion_id, actor)
        )

    def reject_suggestion(self, suggestion_id: str, actor: str, reason: str) -> Suggestion:
        return self._execute(
            "Reject suggestion",
            lambda uow: self.lifecycle.reject(uow, suggestion_id, actor, reason),
        )

    # Reporting

    def compute_metrics(
        self, start: date, end: date, company_id: Optional[str] = None
    ) -> MetricsReport:
        return self.metrics.compute(self.store.suggestions(), start, end, company_id, self.store.runs())

    def reconciliation_statistics(self, company_id: str) -> ReconciliationStatistics:
        reconciliations = self.store.reconciliations(lambda r: r.company_id == company_id)
        stats = ReconciliationStatistics(company_id=company_id, total=len(reconciliations))
        for status in ReconciliationStatus:
            stats.by_status[status.name] = sum(1 for r in reconciliations if r.status is status)
        stats.balanced = sum(1 for r in reconciliations if r.is_balanced)
        stats.unbalanced = stats.total - stats.balanced
        approved = stats.by_status[ReconciliationStatus.APPROVED.name] + stats.by_status[
            ReconciliationStatus.ARCHIVED.name
        ]
        if stats.total:
            stats.approval_rate = (Decimal(approved) * 100 / stats.total).quantize(Decimal("0.01"))
        return stats
