"""Itemised differences between the bank statement and the books."""

from datetime import date
from decimal import Decimal
from typing import Optional
import logging

from ..models.reconciliation import PendingItem, Reconciliation
from ..models.transaction import ZERO
from ..utils.exceptions import NotFoundError, ValidationError
from .balances import ReconciliationLedger, compute_class_totals

logger = logging.getLogger(__name__)


class PendingItemTracker:
    """
    Maintains the pending items of a reconciliation and the per-class totals
    derived from them.

    Totals are always recomputed from the full item list, never adjusted
    incrementally, and every mutation ends with a balance recalculation.
    """

    def __init__(self, ledger: Optional[ReconciliationLedger] = None):
        self.ledger = ledger or ReconciliationLedger()

    def add_item(self, reconciliation: Reconciliation, item: PendingItem) -> PendingItem:
        """
        Attach a pending item to a reconciliation.

        Args:
            reconciliation: Owning reconciliation (must be editable)
            item: Item to add

        Returns:
            The added item

        Raises:
            ValidationError: If the item is malformed or the book balance is unknown
            InvalidStateError: If the reconciliation cannot be edited
        """
        self.ledger.ensure_editable(reconciliation)
        self.ledger.require_book_balance(reconciliation)
        self.validate_item(item)
        if reconciliation.find_item(item.id) is not None:
            raise ValidationError(
                "Pending item already belongs to this reconciliation",
                entity_id=item.id,
                invariant="unique-item",
            )

        item.reconciliation_id = reconciliation.id
        reconciliation.pending_items.append(item)
        self.recompute_totals(reconciliation)
        logger.info(
            f"Added {item.item_type.value} item {item.id} ({item.amount}) "
            f"to reconciliation {reconciliation.id}"
        )
        return item

    def remove_item(self, reconciliation: Reconciliation, item_id: str) -> PendingItem:
        self.ledger.ensure_editable(reconciliation)
        self.ledger.require_book_balance(reconciliation)
        item = self._get(reconciliation, item_id)
        reconciliation.pending_items.remove(item)
        self.recompute_totals(reconciliation)
        logger.info(f"Removed item {item_id} from reconciliation {reconciliation.id}")
        return item

    def resolve_item(
        self,
        reconciliation: Reconciliation,
        item_id: str,
        notes: Optional[str] = None,
        resolved_on: Optional[date] = None,
    ) -> PendingItem:
        """Mark an item resolved. Totals are unchanged."""
        self.ledger.ensure_editable(reconciliation)
        item = self._get(reconciliation, item_id)
        item.is_resolved = True
        item.resolved_date = resolved_on or date.today()
        item.resolution_notes = notes
        logger.info(f"Resolved item {item_id} of reconciliation {reconciliation.id}")
        return item

    def recompute_totals(self, reconciliation: Reconciliation) -> Reconciliation:
        """Rebuild every per-class total from the current items, then recalculate."""
        for adjustment_class, total in compute_class_totals(reconciliation.pending_items).items():
            setattr(reconciliation, adjustment_class.value, total)
        return self.ledger.recalculate(reconciliation)

    def validate_item(self, item: PendingItem) -> None:
        if not isinstance(item.amount, Decimal) or item.amount == ZERO:
            raise ValidationError(
                f"Pending item amount must be a non-zero decimal, got {item.amount!r}",
                entity_id=item.id,
                invariant="non-zero-amount",
            )
        if item.amount.is_nan() or item.amount.is_infinite():
            raise ValidationError(
                "Pending item amount must be finite",
                entity_id=item.id,
                invariant="non-zero-amount",
            )
        if item.transaction_date is None:
            raise ValidationError(
                "Pending item requires a transaction date",
                entity_id=item.id,
                invariant="date-required",
            )

    def _get(self, reconciliation: Reconciliation, item_id: str) -> PendingItem:
        item = reconciliation.find_item(item_id)
        if item is None:
            raise NotFoundError(
                f"Pending item not found in reconciliation {reconciliation.id}",
                entity_id=item_id,
            )
        return item
