"""Tests for applying, rejecting and expiring suggestions."""

from decimal import Decimal

import pytest

from ohada_recon.models import PendingItemType, ReconciliationStatus, Suggestion, SuggestionStatus
from ohada_recon.review import SuggestionLifecycle
from ohada_recon.store import BANK_TRANSACTION, GL_ENTRY, RECONCILIATION, SUGGESTION
from ohada_recon.utils.exceptions import InvalidStateError, ValidationError

from conftest import NOW


@pytest.fixture
def lifecycle(tracker, clock):
    return SuggestionLifecycle(tracker, clock)


@pytest.fixture
def setup(store, make_reconciliation, make_bank, make_gl):
    """A stored reconciliation with one bank line, one entry and a pending suggestion."""

    def _setup(bank_amount="-25000", gl_amount="-25000", status=ReconciliationStatus.DRAFT, **kwargs):
        rec = make_reconciliation(status=status)
        bank = make_bank(bank_amount)
        entry = make_gl(gl_amount)
        suggestion = Suggestion(
            company_id=rec.company_id,
            reconciliation_id=rec.id,
            bank_transaction_ids=(bank.id,),
            gl_entry_ids=(entry.id,),
            confidence_score=Decimal("82"),
            bank_total=bank.amount,
            book_total=entry.signed_amount,
            **kwargs,
        )
        store.add_bank_transactions([bank])
        store.add_gl_entries([entry])
        with store.unit_of_work() as uow:
            uow.add_reconciliation(rec)
            uow.add_suggestion(suggestion)
            uow.commit()
        return rec, bank, entry, suggestion

    return _setup


class TestApply:
    def test_apply_reconciles_and_links_records(self, store, lifecycle, setup):
        rec, bank, entry, suggestion = setup()

        with store.unit_of_work() as uow:
            lifecycle.apply(uow, suggestion.id, "alice")
            uow.commit()

        stored = store.get(SUGGESTION, suggestion.id)
        assert stored.status is SuggestionStatus.APPLIED
        assert stored.processed_by == "alice"
        assert stored.processed_at >= NOW

        txn = store.get(BANK_TRANSACTION, bank.id)
        gl = store.get(GL_ENTRY, entry.id)
        assert txn.is_reconciled and gl.is_reconciled
        assert txn.matched_gl_entry_ids == [entry.id]
        assert gl.matched_bank_transaction_ids == [bank.id]
        assert txn.match_group_id == gl.match_group_id == suggestion.id
        assert txn.reconciliation_id == rec.id
        assert store.get(RECONCILIATION, rec.id).pending_items == []

    def test_apply_twice_is_refused(self, store, lifecycle, setup):
        _, _, _, suggestion = setup()
        with store.unit_of_work() as uow:
            lifecycle.apply(uow, suggestion.id, "alice")
            uow.commit()

        with store.unit_of_work() as uow:
            with pytest.raises(InvalidStateError) as exc_info:
                lifecycle.apply(uow, suggestion.id, "bob")
        assert exc_info.value.current == "applied"
        assert exc_info.value.attempted == "applied"

    def test_variance_becomes_pending_item(self, store, lifecycle, setup):
        rec, bank, _, suggestion = setup(
            "-25000", "-24800", suggested_item_type=PendingItemType.BANK_FEES_NOT_RECORDED
        )

        with store.unit_of_work() as uow:
            lifecycle.apply(uow, suggestion.id, "alice")
            uow.commit()

        stored = store.get(RECONCILIATION, rec.id)
        assert len(stored.pending_items) == 1
        item = stored.pending_items[0]
        assert item.item_type is PendingItemType.BANK_FEES_NOT_RECORDED
        assert item.amount == Decimal("200")
        assert item.bank_transaction_id == bank.id
        assert stored.bank_fees_not_recorded == Decimal("200")
        assert stored.version == 1

    def test_already_reconciled_record_blocks_apply(self, store, lifecycle, setup):
        _, bank, _, suggestion = setup()
        with store.unit_of_work() as uow:
            uow.bank_transaction(bank.id).is_reconciled = True
            uow.commit()

        with store.unit_of_work() as uow:
            with pytest.raises(InvalidStateError):
                lifecycle.apply(uow, suggestion.id, "alice")
        assert store.get(SUGGESTION, suggestion.id).is_pending

    def test_approved_reconciliation_blocks_apply(self, store, lifecycle, setup):
        _, _, _, suggestion = setup(status=ReconciliationStatus.APPROVED)
        with store.unit_of_work() as uow:
            with pytest.raises(InvalidStateError):
                lifecycle.apply(uow, suggestion.id, "alice")


class TestReject:
    def test_rejection_leaves_records_untouched(self, store, lifecycle, setup):
        """A wrong amount is rejected and both records stay open."""
        _, bank, entry, suggestion = setup("-25000", "-24000")

        with store.unit_of_work() as uow:
            lifecycle.reject(uow, suggestion.id, "bob", "  amount mismatch ")
            uow.commit()

        stored = store.get(SUGGESTION, suggestion.id)
        assert stored.status is SuggestionStatus.REJECTED
        assert stored.rejection_reason == "amount mismatch"
        assert stored.processed_by == "bob"
        assert not store.get(BANK_TRANSACTION, bank.id).is_reconciled
        assert not store.get(GL_ENTRY, entry.id).is_reconciled
        assert store.pending_suggestion_for(bank.id) is None

    def test_blank_reason_refused(self, store, lifecycle, setup):
        _, _, _, suggestion = setup()
        with store.unit_of_work() as uow:
            with pytest.raises(ValidationError):
                lifecycle.reject(uow, suggestion.id, "bob", "   ")
        assert store.get(SUGGESTION, suggestion.id).is_pending

    def test_rejected_cannot_be_applied(self, store, lifecycle, setup):
        _, _, _, suggestion = setup()
        with store.unit_of_work() as uow:
            lifecycle.reject(uow, suggestion.id, "bob", "wrong supplier")
            uow.commit()
        with store.unit_of_work() as uow:
            with pytest.raises(InvalidStateError):
                lifecycle.apply(uow, suggestion.id, "alice")


class TestExpire:
    def test_expire_pending_only(self, store, lifecycle, setup):
        rec, _, _, suggestion = setup()

        with store.unit_of_work() as uow:
            expired = lifecycle.expire_pending(uow, rec.id, "controller")
            uow.commit()

        assert [s.id for s in expired] == [suggestion.id]
        stored = store.get(SUGGESTION, suggestion.id)
        assert stored.status is SuggestionStatus.EXPIRED
        assert stored.processed_by == "controller"

    def test_nothing_to_expire(self, store, lifecycle, make_reconciliation):
        rec = make_reconciliation()
        with store.unit_of_work() as uow:
            assert lifecycle.expire_pending(uow, rec.id, "controller") == []
