"""Accept/reject workflow of match suggestions."""

from datetime import datetime
from typing import Callable, Optional
import logging

from ..ledger.balances import ReconciliationLedger
from ..ledger.pending_items import PendingItemTracker
from ..models.reconciliation import PendingItem, Reconciliation
from ..models.suggestion import Suggestion, SuggestionStatus
from ..models.transaction import ZERO
from ..store import UnitOfWork
from ..utils.exceptions import InvalidStateError, ValidationError

logger = logging.getLogger(__name__)


class SuggestionLifecycle:
    """
    Moves suggestions out of PENDING.

    Every operation works inside the caller's unit of work so the suggestion,
    the referenced records and the reconciliation balances commit together.
    """

    def __init__(
        self,
        tracker: Optional[PendingItemTracker] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.clock = clock or datetime.now
        self.tracker = tracker or PendingItemTracker(ReconciliationLedger(self.clock))
        self.ledger = self.tracker.ledger

    def apply(self, uow: UnitOfWork, suggestion_id: str, actor: str) -> Suggestion:
        """
        Accept a suggestion.

        Marks every referenced record reconciled and linked to the others,
        records any amount variance as a pending item and recalculates the
        reconciliation.

        Args:
            uow: Open unit of work
            suggestion_id: Suggestion to apply
            actor: User applying it

        Returns:
            The applied suggestion

        Raises:
            InvalidStateError: If the suggestion is not pending, the
                reconciliation is not editable or a record is already reconciled
        """
        suggestion = uow.suggestion(suggestion_id)
        self._require_pending(suggestion, SuggestionStatus.APPLIED)
        reconciliation = uow.reconciliation(suggestion.reconciliation_id)
        self.ledger.ensure_editable(reconciliation)

        bank_txns = [uow.bank_transaction(i) for i in suggestion.bank_transaction_ids]
        gl_entries = [uow.gl_entry(i) for i in suggestion.gl_entry_ids]
        for record in [*bank_txns, *gl_entries]:
            if record.company_id != suggestion.company_id:
                raise ValidationError(
                    "Suggestion references a record of another company",
                    entity_id=record.id,
                    invariant="same-company",
                )
            if record.is_reconciled:
                raise InvalidStateError(
                    "Record is already reconciled",
                    entity_id=record.id,
                    current="reconciled",
                    attempted=SuggestionStatus.APPLIED,
                    invariant="unreconciled-records",
                )

        for txn in bank_txns:
            txn.is_reconciled = True
            txn.matched_gl_entry_ids = list(suggestion.gl_entry_ids)
            txn.match_group_id = suggestion.id
            txn.reconciliation_id = reconciliation.id
        for entry in gl_entries:
            entry.is_reconciled = True
            entry.matched_bank_transaction_ids = list(suggestion.bank_transaction_ids)
            entry.match_group_id = suggestion.id
            entry.reconciliation_id = reconciliation.id

        if suggestion.amount_variance != ZERO and suggestion.suggested_item_type is not None:
            self.tracker.add_item(reconciliation, self._variance_item(suggestion, reconciliation))
        else:
            self.ledger.recalculate(reconciliation)

        suggestion.status = SuggestionStatus.APPLIED
        suggestion.processed_by = actor
        suggestion.processed_at = self.clock()
        logger.info(
            f"Suggestion {suggestion.id} applied by {actor}: "
            f"{len(bank_txns)} transaction(s), {len(gl_entries)} ledger entries, "
            f"variance {suggestion.amount_variance}"
        )
        return suggestion

    def reject(self, uow: UnitOfWork, suggestion_id: str, actor: str, reason: str) -> Suggestion:
        """
        Reject a suggestion with a reason. Referenced records are untouched.

        Raises:
            ValidationError: If the reason is blank
            InvalidStateError: If the suggestion is not pending
        """
        if not reason or not reason.strip():
            raise ValidationError(
                "A rejection reason is required",
                entity_id=suggestion_id,
                invariant="rejection-reason",
            )
        suggestion = uow.suggestion(suggestion_id)
        self._require_pending(suggestion, SuggestionStatus.REJECTED)

        suggestion.status = SuggestionStatus.REJECTED
        suggestion.rejection_reason = reason.strip()
        suggestion.processed_by = actor
        suggestion.processed_at = self.clock()
        logger.info(f"Suggestion {suggestion.id} rejected by {actor}: {suggestion.rejection_reason}")
        return suggestion

    def expire_pending(self, uow: UnitOfWork, reconciliation_id: str, actor: str) -> list[Suggestion]:
        """Expire the suggestions still pending on a reconciliation being approved."""
        expired = uow.pending_suggestions(reconciliation_id)
        now = self.clock()
        for suggestion in expired:
            suggestion.status = SuggestionStatus.EXPIRED
            suggestion.processed_by = actor
            suggestion.processed_at = now
        if expired:
            logger.info(
                f"Expired {len(expired)} pending suggestion(s) of reconciliation {reconciliation_id}"
            )
        return expired

    def _require_pending(self, suggestion: Suggestion, attempted: SuggestionStatus) -> None:
        if suggestion.status is not SuggestionStatus.PENDING:
            raise InvalidStateError(
                "Suggestion has already been processed",
                entity_id=suggestion.id,
                current=suggestion.status,
                attempted=attempted,
                invariant="suggestion-one-way",
            )

    def _variance_item(self, suggestion: Suggestion, reconciliation: Reconciliation) -> PendingItem:
        return PendingItem(
            item_type=suggestion.suggested_item_type,
            amount=abs(suggestion.amount_variance),
            transaction_date=suggestion.transaction_date or reconciliation.period_end,
            description=f"Variance on applied match: {suggestion.matching_reason}",
            third_party=suggestion.third_party,
            bank_transaction_id=(
                suggestion.bank_transaction_ids[0]
                if len(suggestion.bank_transaction_ids) == 1
                else None
            ),
            gl_entry_id=(
                suggestion.gl_entry_ids[0] if len(suggestion.gl_entry_ids) == 1 else None
            ),
        )
