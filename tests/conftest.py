"""Shared fixtures and builders for the reconciliation test suite."""

from datetime import date, datetime, timedelta
from decimal import Decimal
import itertools

import pytest

from ohada_recon.config import ReconConfig
from ohada_recon.ledger import PendingItemTracker, ReconciliationLedger
from ohada_recon.models import (
    BankTransaction,
    GeneralLedgerEntry,
    PendingItem,
    PendingItemType,
    Reconciliation,
    Suggestion,
)
from ohada_recon.service import ReconciliationService
from ohada_recon.store import InMemoryStore

COMPANY = "CM-001"
OTHER_COMPANY = "CM-002"
BANK_ACCOUNT = "10005-00001-12345678901"
GL_ACCOUNT = "521"
PERIOD_START = date(2024, 1, 1)
PERIOD_END = date(2024, 1, 31)
NOW = datetime(2024, 2, 1, 9, 0)


class FakeClock:
    """Deterministic clock, one second later on every call."""

    def __init__(self, start: datetime = NOW):
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(seconds=1)
        return value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return ReconConfig()


@pytest.fixture
def ledger(clock):
    return ReconciliationLedger(clock)


@pytest.fixture
def tracker(ledger):
    return PendingItemTracker(ledger)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def service(store, config, clock):
    return ReconciliationService(store=store, config=config, clock=clock)


@pytest.fixture
def make_reconciliation(ledger):
    """Build a DRAFT reconciliation with computed balances."""

    def _make(statement_balance="1000000", book_balance="950000", **kwargs) -> Reconciliation:
        defaults = {
            "company_id": COMPANY,
            "bank_account_number": BANK_ACCOUNT,
            "period_start": PERIOD_START,
            "period_end": PERIOD_END,
            "statement_balance": Decimal(statement_balance),
            "book_balance": None if book_balance is None else Decimal(book_balance),
        }
        defaults.update(kwargs)
        reconciliation = Reconciliation(**defaults)
        if reconciliation.book_balance is not None:
            ledger.recalculate(reconciliation)
        return reconciliation

    return _make


@pytest.fixture
def make_bank():
    """Build bank transactions with sequential ids (BT-001, BT-002, ...)."""
    counter = itertools.count(1)

    def _make(amount, day=PERIOD_START + timedelta(days=14), **kwargs) -> BankTransaction:
        defaults = {
            "id": f"BT-{next(counter):03d}",
            "company_id": COMPANY,
            "account_number": BANK_ACCOUNT,
            "transaction_date": day,
            "amount": Decimal(str(amount)),
        }
        defaults.update(kwargs)
        return BankTransaction(**defaults)

    return _make


@pytest.fixture
def make_gl():
    """Build ledger entries from a signed amount (+ debit, - credit)."""
    counter = itertools.count(1)

    def _make(amount, day=PERIOD_START + timedelta(days=14), **kwargs) -> GeneralLedgerEntry:
        value = Decimal(str(amount))
        defaults = {
            "id": f"GL-{next(counter):03d}",
            "company_id": COMPANY,
            "account_number": GL_ACCOUNT,
            "entry_date": day,
            "debit_amount": value if value > 0 else Decimal("0"),
            "credit_amount": -value if value < 0 else Decimal("0"),
        }
        defaults.update(kwargs)
        return GeneralLedgerEntry(**defaults)

    return _make


@pytest.fixture
def make_item():
    def _make(item_type=PendingItemType.DEPOSIT_IN_TRANSIT, amount="50000", day=PERIOD_END, **kwargs):
        return PendingItem(
            item_type=item_type, amount=Decimal(amount), transaction_date=day, **kwargs
        )

    return _make


@pytest.fixture
def make_suggestion():
    """Build historical suggestions for metrics."""
    counter = itertools.count(1)

    def _make(score="90", status=None, created_at=NOW, **kwargs) -> Suggestion:
        n = next(counter)
        defaults = {
            "company_id": COMPANY,
            "reconciliation_id": "REC-1",
            "bank_transaction_ids": (f"BT-{n:03d}",),
            "gl_entry_ids": (f"GL-{n:03d}",),
            "confidence_score": Decimal(score),
            "created_at": created_at,
        }
        defaults.update(kwargs)
        suggestion = Suggestion(**defaults)
        if status is not None:
            suggestion.status = status
        return suggestion

    return _make
