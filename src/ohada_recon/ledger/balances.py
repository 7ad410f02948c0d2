"""Balance arithmetic and approval workflow of a reconciliation statement."""

from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional
import logging

from ..models.reconciliation import (
    AdjustmentClass,
    BalanceSide,
    PendingItem,
    Reconciliation,
    ReconciliationStatus,
    TransitionRecord,
)
from ..models.transaction import ZERO
from ..utils.exceptions import ConsistencyError, InvalidStateError, ValidationError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def compute_class_totals(items: Iterable[PendingItem]) -> dict[AdjustmentClass, Decimal]:
    """Sum item amounts per adjustment class. Uncategorized items are ignored."""
    totals = {adjustment_class: ZERO for adjustment_class in AdjustmentClass}
    for item in items:
        if item.adjustment_class is not None:
            totals[item.adjustment_class] += item.amount
    return totals


def _adjusted_balance(
    base: Decimal, reconciliation: Reconciliation, side: BalanceSide
) -> Decimal:
    balance = base
    for adjustment_class in AdjustmentClass:
        if adjustment_class.side is not side:
            continue
        total = reconciliation.adjustment_total(adjustment_class)
        balance = balance + total if adjustment_class.is_addition else balance - total
    return balance


class ReconciliationLedger:
    """
    Owns the derived balances of a reconciliation and its status workflow.

    The adjusted balances are pure functions of the statement balance, the
    book balance and the per-class totals:

        adjusted bank = statement + cheques - deposits + bank errors
        adjusted book = book + credits - debits - fees + book errors
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or datetime.now

    def recalculate(self, reconciliation: Reconciliation) -> Reconciliation:
        """
        Recompute adjusted balances, difference and balanced flag.

        Args:
            reconciliation: Reconciliation whose per-class totals are current

        Returns:
            The same reconciliation, updated in place

        Raises:
            ValidationError: If the book balance is unknown
        """
        self.require_book_balance(reconciliation)

        adjusted_bank, adjusted_book, difference = self._expected_balances(reconciliation)
        reconciliation.adjusted_bank_balance = adjusted_bank
        reconciliation.adjusted_book_balance = adjusted_book
        reconciliation.difference = difference
        reconciliation.is_balanced = difference == ZERO

        logger.debug(
            f"Reconciliation {reconciliation.id}: bank={adjusted_bank} "
            f"book={adjusted_book} difference={difference}"
        )
        return reconciliation

    def verify(self, reconciliation: Reconciliation) -> None:
        """
        Check stored totals and balances against a recomputation.

        Raises:
            ConsistencyError: On the first field that drifted
        """
        for adjustment_class, expected in compute_class_totals(
            reconciliation.pending_items
        ).items():
            stored = reconciliation.adjustment_total(adjustment_class)
            if stored != expected:
                raise ConsistencyError(
                    f"Stored total {adjustment_class.value} does not match its pending items",
                    entity_id=reconciliation.id,
                    invariant="class-total",
                    expected=expected,
                    actual=stored,
                )

        if reconciliation.book_balance is None:
            return

        adjusted_bank, adjusted_book, difference = self._expected_balances(reconciliation)
        checks = [
            ("adjusted_bank_balance", adjusted_bank, reconciliation.adjusted_bank_balance),
            ("adjusted_book_balance", adjusted_book, reconciliation.adjusted_book_balance),
            ("difference", difference, reconciliation.difference),
            ("is_balanced", difference == ZERO, reconciliation.is_balanced),
        ]
        for field_name, expected, stored in checks:
            if expected != stored:
                raise ConsistencyError(
                    f"Stored {field_name} does not match recomputation",
                    entity_id=reconciliation.id,
                    invariant="derived-balance",
                    expected=expected,
                    actual=stored,
                )

    def require_book_balance(self, reconciliation: Reconciliation) -> None:
        """Raise ValidationError when the book balance is still unknown."""
        if reconciliation.book_balance is None:
            raise ValidationError(
                "Book balance is required before balances can be computed",
                entity_id=reconciliation.id,
                invariant="book-balance-required",
            )

    def ensure_editable(self, reconciliation: Reconciliation) -> None:
        """Raise InvalidStateError unless items and balances may change."""
        if not reconciliation.status.can_edit:
            raise InvalidStateError(
                "Reconciliation cannot be modified in its current status",
                entity_id=reconciliation.id,
                current=reconciliation.status,
                attempted="edit",
                invariant="editable-status",
            )

    # Workflow

    def submit_for_review(self, reconciliation: Reconciliation, actor: str) -> Reconciliation:
        self._require(reconciliation, ReconciliationStatus.PENDING_REVIEW, ReconciliationStatus.DRAFT)
        if not reconciliation.is_balanced:
            raise InvalidStateError(
                f"Reconciliation is not balanced (difference={reconciliation.difference})",
                entity_id=reconciliation.id,
                current=reconciliation.status,
                attempted=ReconciliationStatus.PENDING_REVIEW,
                invariant="balanced-before-review",
            )
        self._transition(reconciliation, ReconciliationStatus.PENDING_REVIEW, actor)
        reconciliation.prepared_by = actor
        reconciliation.prepared_at = reconciliation.history[-1].at
        return reconciliation

    def review(self, reconciliation: Reconciliation, actor: str) -> Reconciliation:
        self._require(
            reconciliation, ReconciliationStatus.REVIEWED, ReconciliationStatus.PENDING_REVIEW
        )
        self._transition(reconciliation, ReconciliationStatus.REVIEWED, actor)
        reconciliation.reviewed_by = actor
        reconciliation.reviewed_at = reconciliation.history[-1].at
        return reconciliation

    def approve(self, reconciliation: Reconciliation, actor: str) -> Reconciliation:
        self._require(
            reconciliation,
            ReconciliationStatus.APPROVED,
            ReconciliationStatus.REVIEWED,
            ReconciliationStatus.PENDING_REVIEW,
        )
        self._transition(reconciliation, ReconciliationStatus.APPROVED, actor)
        reconciliation.approved_by = actor
        reconciliation.approved_at = reconciliation.history[-1].at
        return reconciliation

    def reject(self, reconciliation: Reconciliation, actor: str, reason: str) -> Reconciliation:
        if reconciliation.status.is_final:
            raise InvalidStateError(
                "A final reconciliation cannot be rejected",
                entity_id=reconciliation.id,
                current=reconciliation.status,
                attempted=ReconciliationStatus.REJECTED,
                invariant="workflow",
            )
        if not reason or not reason.strip():
            raise ValidationError(
                "A rejection reason is required",
                entity_id=reconciliation.id,
                invariant="rejection-reason",
            )
        self._transition(reconciliation, ReconciliationStatus.REJECTED, actor, reason.strip())
        reconciliation.rejection_reason = reason.strip()
        return reconciliation

    def reopen(self, reconciliation: Reconciliation, actor: str) -> Reconciliation:
        self._require(reconciliation, ReconciliationStatus.DRAFT, ReconciliationStatus.REJECTED)
        self._transition(reconciliation, ReconciliationStatus.DRAFT, actor)
        return reconciliation

    def archive(self, reconciliation: Reconciliation, actor: str) -> Reconciliation:
        self._require(reconciliation, ReconciliationStatus.ARCHIVED, ReconciliationStatus.APPROVED)
        self._transition(reconciliation, ReconciliationStatus.ARCHIVED, actor)
        return reconciliation

    def _expected_balances(self, reconciliation: Reconciliation) -> tuple[Decimal, Decimal, Decimal]:
        adjusted_bank = _adjusted_balance(
            reconciliation.statement_balance, reconciliation, BalanceSide.BANK
        )
        adjusted_book = _adjusted_balance(
            reconciliation.book_balance, reconciliation, BalanceSide.BOOK
        )
        return adjusted_bank, adjusted_book, adjusted_bank - adjusted_book

    def _require(
        self,
        reconciliation: Reconciliation,
        attempted: ReconciliationStatus,
        *allowed: ReconciliationStatus,
    ) -> None:
        if reconciliation.status not in allowed:
            allowed_names = ", ".join(status.value for status in allowed)
            raise InvalidStateError(
                f"Transition requires status {allowed_names}",
                entity_id=reconciliation.id,
                current=reconciliation.status,
                attempted=attempted,
                invariant="workflow",
            )

    def _transition(
        self,
        reconciliation: Reconciliation,
        target: ReconciliationStatus,
        actor: str,
        reason: Optional[str] = None,
    ) -> None:
        record = TransitionRecord(
            from_status=reconciliation.status,
            to_status=target,
            actor=actor,
            at=self.clock(),
            reason=reason,
        )
        reconciliation.history.append(record)
        reconciliation.status = target
        logger.info(
            f"Reconciliation {reconciliation.id}: {record.from_status.value} -> "
            f"{target.value} by {actor} at {record.at.isoformat()}"
        )
