"""Tests for pending item tracking."""

from datetime import date
from decimal import Decimal

import pytest

from ohada_recon.models import (
    AdjustmentClass,
    PendingItem,
    PendingItemType,
    ReconciliationStatus,
)
from ohada_recon.utils.exceptions import InvalidStateError, NotFoundError, ValidationError


class TestPendingItemTracker:
    def test_totals_follow_any_add_remove_sequence(self, make_reconciliation, make_item, tracker):
        rec = make_reconciliation("500000", "500000")
        items = [
            make_item(PendingItemType.CHEQUE_ISSUED_NOT_CASHED, "12000"),
            make_item(PendingItemType.CHEQUE_ISSUED_NOT_CASHED, "3000"),
            make_item(PendingItemType.BANK_FEES_NOT_RECORDED, "750"),
            make_item(PendingItemType.BANK_CHARGES_NOT_RECORDED, "250"),
        ]
        for item in items:
            tracker.add_item(rec, item)
        tracker.remove_item(rec, items[0].id)
        tracker.remove_item(rec, items[2].id)

        assert rec.cheques_issued_not_cashed == Decimal("3000")
        assert rec.bank_fees_not_recorded == Decimal("250")
        for adjustment_class in AdjustmentClass:
            expected = sum(
                (i.amount for i in rec.pending_items if i.adjustment_class is adjustment_class),
                Decimal("0"),
            )
            assert rec.adjustment_total(adjustment_class) == expected
        assert rec.difference == rec.adjusted_bank_balance - rec.adjusted_book_balance

    def test_add_links_item_to_reconciliation(self, make_reconciliation, make_item, tracker):
        rec = make_reconciliation()
        item = tracker.add_item(rec, make_item())
        assert item.reconciliation_id == rec.id
        assert rec.find_item(item.id) is item

    def test_item_type_accepts_its_value(self):
        item = PendingItem(
            item_type="bank_fees_not_recorded", amount="1500", transaction_date=date(2024, 1, 5)
        )
        assert item.item_type is PendingItemType.BANK_FEES_NOT_RECORDED
        assert item.amount == Decimal("1500")
        assert item.signed_amount == Decimal("-1500")

    def test_zero_amount_rejected_before_mutation(self, make_reconciliation, make_item, tracker):
        rec = make_reconciliation()
        with pytest.raises(ValidationError):
            tracker.add_item(rec, make_item(amount="0"))
        assert rec.pending_items == []
        assert rec.deposits_in_transit == Decimal("0")

    def test_unknown_book_balance_rejected_before_mutation(self, make_reconciliation, make_item, tracker):
        rec = make_reconciliation(book_balance=None)
        with pytest.raises(ValidationError) as exc_info:
            tracker.add_item(rec, make_item())
        assert exc_info.value.invariant == "book-balance-required"
        assert rec.pending_items == []
        assert rec.deposits_in_transit == Decimal("0")

    def test_remove_with_unknown_book_balance_keeps_item(self, make_reconciliation, make_item, tracker):
        rec = make_reconciliation()
        item = tracker.add_item(rec, make_item())
        rec.book_balance = None

        with pytest.raises(ValidationError):
            tracker.remove_item(rec, item.id)

        assert rec.pending_items == [item]
        assert rec.deposits_in_transit == Decimal("50000")

    def test_missing_date_rejected(self, make_reconciliation, make_item, tracker):
        rec = make_reconciliation()
        with pytest.raises(ValidationError):
            tracker.add_item(rec, make_item(day=None))

    def test_duplicate_item_rejected(self, make_reconciliation, make_item, tracker):
        rec = make_reconciliation()
        item = tracker.add_item(rec, make_item())
        with pytest.raises(ValidationError):
            tracker.add_item(rec, item)
        assert len(rec.pending_items) == 1

    def test_remove_unknown_item(self, make_reconciliation, tracker):
        with pytest.raises(NotFoundError):
            tracker.remove_item(make_reconciliation(), "missing")

    def test_resolve_keeps_totals(self, make_reconciliation, make_item, tracker):
        rec = make_reconciliation("1000000", "950000")
        item = tracker.add_item(rec, make_item(PendingItemType.DEPOSIT_IN_TRANSIT, "50000"))

        tracker.resolve_item(rec, item.id, "cleared on 2024-02-02", date(2024, 2, 2))

        assert item.is_resolved
        assert item.resolved_date == date(2024, 2, 2)
        assert item.resolution_notes == "cleared on 2024-02-02"
        assert rec.deposits_in_transit == Decimal("50000")
        assert rec.is_balanced

    def test_recompute_totals_repairs_from_items(self, make_reconciliation, make_item, tracker, ledger):
        rec = make_reconciliation()
        tracker.add_item(rec, make_item(PendingItemType.CREDIT_NOT_RECORDED, "800"))
        rec.credits_not_recorded = Decimal("0")

        tracker.recompute_totals(rec)

        assert rec.credits_not_recorded == Decimal("800")
        ledger.verify(rec)

    @pytest.mark.parametrize(
        "status",
        [
            ReconciliationStatus.PENDING_REVIEW,
            ReconciliationStatus.APPROVED,
            ReconciliationStatus.ARCHIVED,
        ],
    )
    def test_resolve_requires_editable_status(self, make_reconciliation, make_item, tracker, status):
        rec = make_reconciliation()
        item = tracker.add_item(rec, make_item())
        rec.status = status

        with pytest.raises(InvalidStateError):
            tracker.resolve_item(rec, item.id, "late")

        assert not item.is_resolved
        assert item.resolution_notes is None
