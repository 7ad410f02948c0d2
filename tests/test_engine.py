"""Tests for the matching engine run."""

from datetime import timedelta
from decimal import Decimal

from ohada_recon.config import MatchingConfig, PerformanceConfig, ReconConfig
from ohada_recon.matching import CancellationToken, MatchingEngine
from ohada_recon.models import (
    ConfidenceBand,
    MatchType,
    PendingItemType,
    RecordSide,
    Suggestion,
)

from conftest import PERIOD_END, PERIOD_START


def _engine(config, clock):
    return MatchingEngine(config, clock)


class TestMatchingRun:
    def test_split_payment_becomes_one_group(self, config, clock, make_reconciliation, make_bank, make_gl):
        rec = make_reconciliation()
        bank = make_bank("-15000")
        first = make_gl("-10000", day=bank.transaction_date)
        second = make_gl("-5000", day=bank.transaction_date + timedelta(days=1))

        result = _engine(config, clock).run(rec, [bank], [first, second])

        assert len(result.suggestions) == 1
        suggestion = result.suggestions[0]
        assert suggestion.match_type is MatchType.ONE_TO_MANY
        assert suggestion.confidence_score == Decimal("75.63")
        assert suggestion.confidence_band is ConfidenceBand.FAIR
        assert suggestion.requires_manual_review
        assert suggestion.reconciliation_id == rec.id
        assert result.unmatched == []
        assert not result.cancelled

    def test_exact_single_is_excellent(self, config, clock, make_reconciliation, make_bank, make_gl):
        rec = make_reconciliation()
        bank = make_bank("-25000", bank_reference="CHQ-0042")
        entry = make_gl("-25000", reference="CHQ0042")

        result = _engine(config, clock).run(rec, [bank], [entry])

        suggestion = result.suggestions[0]
        assert suggestion.match_type is MatchType.SINGLE
        assert suggestion.confidence_band is ConfidenceBand.EXCELLENT
        assert not suggestion.requires_manual_review
        assert result.statistics.auto_apply_eligible == 1
        assert result.statistics.by_match_type == {"single": 1}

    def test_no_record_in_two_suggestions(self, config, clock, make_reconciliation, make_bank, make_gl):
        rec = make_reconciliation()
        banks = [
            make_bank("-15000"),
            make_bank("-15000", day=PERIOD_START + timedelta(days=15)),
            make_bank("40000"),
            make_bank("60000"),
            make_bank("-10000"),
        ]
        entries = [
            make_gl("-15000"),
            make_gl("-10000"),
            make_gl("-5000"),
            make_gl("100000"),
            make_gl("-15000", day=PERIOD_START + timedelta(days=16)),
        ]

        result = _engine(config, clock).run(rec, banks, entries)

        seen: list[str] = []
        for suggestion in result.suggestions:
            seen.extend(suggestion.record_ids)
        assert len(seen) == len(set(seen))

    def test_runs_are_deterministic(self, config, clock, make_reconciliation, make_bank, make_gl):
        rec = make_reconciliation()
        banks = [make_bank("-15000"), make_bank("-15000"), make_bank("-5000")]
        entries = [make_gl("-15000"), make_gl("-15000"), make_gl("-10000"), make_gl("-5000")]
        engine = _engine(config, clock)

        first = engine.run(rec, banks, entries)
        second = engine.run(rec, banks, entries)

        def pairs(result):
            return sorted(
                (s.bank_transaction_ids, s.gl_entry_ids, s.confidence_score)
                for s in result.suggestions
            )

        assert pairs(first) == pairs(second)

    def test_amount_variance_proposes_item_type(self, config, clock, make_reconciliation, make_bank, make_gl):
        rec = make_reconciliation()
        result = _engine(config, clock).run(rec, [make_bank("-25000")], [make_gl("-24800")])

        suggestion = result.suggestions[0]
        assert suggestion.amount_variance == Decimal("-200")
        assert suggestion.suggested_item_type is PendingItemType.BANK_FEES_NOT_RECORDED

    def test_input_records_are_not_mutated(self, config, clock, make_reconciliation, make_bank, make_gl):
        rec = make_reconciliation()
        bank = make_bank("-25000")
        entry = make_gl("-25000")
        _engine(config, clock).run(rec, [bank], [entry])
        assert not bank.is_reconciled
        assert not entry.is_reconciled
        assert rec.pending_items == []


class TestPools:
    def test_out_of_scope_records_are_ignored(self, config, clock, make_reconciliation, make_bank, make_gl):
        rec = make_reconciliation()
        banks = [
            make_bank("-25000", company_id="CM-002"),
            make_bank("-25000", account_number="OTHER"),
            make_bank("-25000", day=PERIOD_END + timedelta(days=1)),
            make_bank("-25000", is_reconciled=True),
        ]
        result = _engine(config, clock).run(rec, banks, [make_gl("-25000")])

        assert result.statistics.transactions_analyzed == 0
        assert result.suggestions == []

    def test_malformed_transactions_are_skipped(self, config, clock, make_reconciliation, make_bank, make_gl):
        rec = make_reconciliation()
        undated = make_bank("-25000", day=None)
        zero = make_bank("0")
        good = make_bank("-25000")

        result = _engine(config, clock).run(rec, [undated, zero, good], [make_gl("-25000")])

        assert {s.record_id for s in result.skipped} == {undated.id, zero.id}
        assert all(s.side is RecordSide.BANK for s in result.skipped)
        assert len(result.suggestions) == 1

    def test_oversized_pool_is_truncated(self, clock, make_reconciliation, make_bank, make_gl):
        config = ReconConfig(
            matching=MatchingConfig(performance=PerformanceConfig(max_items_per_phase=2))
        )
        rec = make_reconciliation()
        oldest = make_bank("-1000", day=PERIOD_START)
        banks = [
            oldest,
            make_bank("-2000", day=PERIOD_START + timedelta(days=10)),
            make_bank("-3000", day=PERIOD_START + timedelta(days=20)),
        ]

        result = _engine(config, clock).run(rec, banks, [])

        assert result.statistics.transactions_analyzed == 2
        assert any("exceed the limit of 2" in m for m in result.messages)
        assert oldest.id not in {u.record_id for u in result.unmatched}

    def test_pending_suggestions_are_not_duplicated(self, config, clock, make_reconciliation, make_bank, make_gl):
        rec = make_reconciliation()
        bank = make_bank("-25000")
        entry = make_gl("-25000")
        existing = Suggestion(
            company_id=rec.company_id,
            reconciliation_id=rec.id,
            bank_transaction_ids=(bank.id,),
            gl_entry_ids=(entry.id,),
            confidence_score=Decimal("85"),
        )

        result = _engine(config, clock).run(rec, [bank], [entry], pending_suggestions=[existing])

        assert result.suggestions == []
        assert result.existing_suggestions == [existing]
        assert result.unmatched == []


class TestCancellationAndLeftovers:
    def test_cancelled_run_keeps_no_partial_work(self, config, clock, make_reconciliation, make_bank, make_gl):
        rec = make_reconciliation()
        token = CancellationToken()
        token.cancel()

        result = _engine(config, clock).run(
            rec, [make_bank("-25000")], [make_gl("-25000")], cancel_token=token
        )

        assert result.cancelled
        assert result.suggestions == []
        assert any("cancellation" in m for m in result.messages)
        assert result.to_run_record().cancelled

    def test_deadline_expires_token(self):
        ticks = iter([0.0, 5.0])
        token = CancellationToken(timeout_seconds=1, clock=lambda: next(ticks))
        assert token.is_cancelled()
        assert token.timed_out

    def test_unmatched_records_are_classified(self, config, clock, make_reconciliation, make_bank, make_gl):
        rec = make_reconciliation()
        fees = make_bank("-3500", description="FRAIS TENUE DE COMPTE")
        cheque = make_gl("-80000", description="Cheque 0099 fournisseur Delta")

        result = _engine(config, clock).run(rec, [fees], [cheque])

        proposed = {u.record_id: u.proposed_type for u in result.unmatched}
        assert proposed == {
            fees.id: PendingItemType.BANK_FEES_NOT_RECORDED,
            cheque.id: PendingItemType.CHEQUE_ISSUED_NOT_CASHED,
        }

    def test_run_record_counts_analyzed_records(self, config, clock, make_reconciliation, make_bank, make_gl):
        rec = make_reconciliation()
        result = _engine(config, clock).run(rec, [make_bank("-25000")], [make_gl("-25000"), make_gl("900")])

        run = result.to_run_record()
        assert run.records_analyzed == 3
        assert run.suggestions_generated == 1
        assert run.duration_seconds >= 0
