"""Tests for snapshot loading."""

from datetime import date, datetime
from decimal import Decimal
import json

import pytest

from ohada_recon.models import PendingItemType, SuggestionStatus
from ohada_recon.snapshot import header_arguments, load_snapshot
from ohada_recon.utils.exceptions import SnapshotLoadError

SNAPSHOT = """
reconciliation:
  company_id: CM-001
  bank_account_number: "10005-00001-12345678901"
  period_start: 2024-01-01
  period_end: 2024-01-31
  statement_balance: 1000000
  pending_items:
    - item_type: DEPOSIT_IN_TRANSIT
      amount: 50000
      transaction_date: 2024-01-31
bank_transactions:
  - id: BT-1
    transaction_date: 2024-01-15
    amount: "-25000"
    description: CHQ 0042
  - id: BT-2
    transaction_date: "2024-13-45"
    amount: "100"
gl_entries:
  - id: GL-1
    entry_date: 2024-01-14
    credit_amount: 25000
    reference: CHQ0042
  - id: GL-2
    entry_date: 2024-01-14
    debit_amount: 100
    credit_amount: 100
"""


class TestLoadSnapshot:
    def test_yaml_snapshot(self, tmp_path):
        path = tmp_path / "snapshot.yaml"
        path.write_text(SNAPSHOT, encoding="utf-8")

        snapshot = load_snapshot(path)

        assert snapshot.source == path
        assert "pending_items" not in snapshot.reconciliation
        assert snapshot.pending_items[0].item_type is PendingItemType.DEPOSIT_IN_TRANSIT
        assert [t.id for t in snapshot.bank_transactions] == ["BT-1"]
        txn = snapshot.bank_transactions[0]
        assert txn.company_id == "CM-001"
        assert txn.account_number == "10005-00001-12345678901"
        assert txn.amount == Decimal("-25000")
        entry = snapshot.gl_entries[0]
        assert entry.account_number == "521"
        assert entry.signed_amount == Decimal("-25000")
        assert len(snapshot.skipped) == 2
        assert snapshot.skipped[0].startswith("bank transaction #1")
        assert snapshot.skipped[1].startswith("ledger entry #1")

    def test_header_arguments(self, tmp_path):
        path = tmp_path / "snapshot.yaml"
        path.write_text(SNAPSHOT, encoding="utf-8")

        arguments = header_arguments(load_snapshot(path).reconciliation)

        assert arguments == {
            "company_id": "CM-001",
            "bank_account_number": "10005-00001-12345678901",
            "period_start": date(2024, 1, 1),
            "period_end": date(2024, 1, 31),
            "statement_balance": 1000000,
        }

    def test_header_missing_fields(self):
        with pytest.raises(SnapshotLoadError, match="statement_balance"):
            header_arguments({"company_id": "CM-001", "bank_account_number": "1",
                              "period_start": "2024-01-01", "period_end": "2024-01-31"})

    def test_json_history(self, tmp_path):
        path = tmp_path / "history.json"
        path.write_text(
            json.dumps(
                {
                    "period": {"start": "2024-02-01", "end": "2024-02-29"},
                    "suggestions": [
                        {
                            "id": "S-1",
                            "company_id": "CM-001",
                            "reconciliation_id": "REC-1",
                            "bank_transaction_ids": "BT-1; BT-2",
                            "gl_entry_ids": ["GL-1"],
                            "confidence_score": 76.5,
                            "status": "REJECTED",
                            "rejection_reason": "amount mismatch",
                            "created_at": "2024-02-03T10:00:00",
                        }
                    ],
                    "runs": [
                        {
                            "reconciliation_id": "REC-1",
                            "company_id": "CM-001",
                            "started_at": "2024-02-03T09:59:00",
                            "finished_at": "2024-02-03T09:59:04",
                            "transactions_analyzed": 40,
                            "entries_analyzed": 35,
                        }
                    ],
                }
            ),
            encoding="utf-8",
        )

        snapshot = load_snapshot(path)

        suggestion = snapshot.suggestions[0]
        assert suggestion.id == "S-1"
        assert suggestion.bank_transaction_ids == ("BT-1", "BT-2")
        assert suggestion.status is SuggestionStatus.REJECTED
        assert suggestion.created_at == datetime(2024, 2, 3, 10, 0)
        assert snapshot.runs[0].duration_seconds == 4
        assert snapshot.runs[0].records_analyzed == 75
        assert snapshot.period == {"start": "2024-02-01", "end": "2024-02-29"}

    def test_csv_tables(self, tmp_path):
        (tmp_path / "bank.csv").write_text(
            "id,transaction_date,amount,description,bank_reference\n"
            "BT-1,2024-01-15,-25000,Cheque 0042,CHQ-0042\n"
            "BT-2,2024-01-20,150000,VIR RECU CLIENT,\n",
            encoding="utf-8",
        )
        path = tmp_path / "snapshot.yaml"
        path.write_text(
            "reconciliation:\n"
            "  company_id: CM-001\n"
            "  bank_account_number: ACC-1\n"
            "bank_transactions: bank.csv\n",
            encoding="utf-8",
        )

        snapshot = load_snapshot(path)

        assert [t.amount for t in snapshot.bank_transactions] == [Decimal("-25000"), Decimal("150000")]
        assert snapshot.bank_transactions[0].normalized_reference == "CHQ0042"
        assert snapshot.bank_transactions[1].bank_reference is None
        assert all(t.account_number == "ACC-1" for t in snapshot.bank_transactions)

    @pytest.mark.parametrize(
        "content",
        [
            "reconciliation: [unclosed",
            "- a\n- list\n",
            "reconciliation: just a string\n",
            "bank_transactions: 42\n",
            "bank_transactions: missing.csv\n",
        ],
    )
    def test_invalid_snapshots(self, tmp_path, content):
        path = tmp_path / "snapshot.yaml"
        path.write_text(content, encoding="utf-8")
        with pytest.raises(SnapshotLoadError):
            load_snapshot(path)

    def test_unreadable_file(self, tmp_path):
        with pytest.raises(SnapshotLoadError):
            load_snapshot(tmp_path / "absent.yaml")
