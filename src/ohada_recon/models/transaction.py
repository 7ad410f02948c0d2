"""Data models for bank transactions and general-ledger entries.

Both records are produced by external subsystems (statement import and the
general ledger) and consumed here already parsed.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional
import re
import uuid

from ..utils.exceptions import ValidationError

ZERO = Decimal("0")


def new_id() -> str:
    """Generate a new entity identifier."""
    return uuid.uuid4().hex


def to_decimal(value: Any) -> Optional[Decimal]:
    """Coerce int/str/float/Decimal input to Decimal, keeping None."""
    if value is None or isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid amount: {value!r}", invariant="amount-format") from e


def normalize_reference(reference: Optional[str]) -> Optional[str]:
    """Remove special characters and upper-case a reference for comparison."""
    if not reference:
        return None
    normalized = re.sub(r"[^a-zA-Z0-9]", "", reference).upper()
    return normalized or None


class RecordSide(Enum):
    """Which side of the reconciliation a record comes from."""

    BANK = "bank"
    LEDGER = "ledger"


@dataclass
class BankTransaction:
    """
    A line of the bank statement.

    The amount is signed from the account holder's perspective:
    positive for money in (deposits, transfers received), negative for
    money out (cheques cashed, fees, direct debits).
    """

    id: str
    company_id: str
    account_number: str
    transaction_date: Optional[date]
    amount: Optional[Decimal]
    description: str = ""
    bank_reference: Optional[str] = None
    third_party_name: Optional[str] = None
    value_date: Optional[date] = None

    # Reconciliation state
    is_reconciled: bool = False
    matched_gl_entry_ids: list[str] = field(default_factory=list)
    match_group_id: Optional[str] = None
    reconciliation_id: Optional[str] = None

    version: int = 0
    normalized_reference: Optional[str] = None

    def __post_init__(self) -> None:
        self.amount = to_decimal(self.amount)
        if self.bank_reference and not self.normalized_reference:
            self.normalized_reference = normalize_reference(self.bank_reference)

    def validate(self) -> None:
        """Raise ValidationError if the transaction cannot take part in matching."""
        if self.transaction_date is None:
            raise ValidationError(
                "Bank transaction has no date", entity_id=self.id, invariant="date-required"
            )
        if self.amount is None or self.amount == ZERO:
            raise ValidationError(
                "Bank transaction has a zero or missing amount",
                entity_id=self.id,
                invariant="non-zero-amount",
            )

    @property
    def is_credit(self) -> bool:
        """Money in."""
        return self.amount is not None and self.amount > ZERO


@dataclass
class GeneralLedgerEntry:
    """
    A posting on a bank account of the chart of accounts (OHADA class 52X).

    Exactly one of debit/credit is non-zero. A debit on a bank account is
    money in, a credit is money out, so ``signed_amount`` is directly
    comparable with ``BankTransaction.amount``.
    """

    id: str
    company_id: str
    account_number: str
    entry_date: Optional[date]
    debit_amount: Decimal = ZERO
    credit_amount: Decimal = ZERO
    description: str = ""
    reference: Optional[str] = None
    journal_code: Optional[str] = None
    third_party_name: Optional[str] = None

    # Reconciliation state
    is_reconciled: bool = False
    matched_bank_transaction_ids: list[str] = field(default_factory=list)
    match_group_id: Optional[str] = None
    reconciliation_id: Optional[str] = None

    version: int = 0
    normalized_reference: Optional[str] = None

    def __post_init__(self) -> None:
        self.debit_amount = to_decimal(self.debit_amount) or ZERO
        self.credit_amount = to_decimal(self.credit_amount) or ZERO
        if self.reference and not self.normalized_reference:
            self.normalized_reference = normalize_reference(self.reference)
        self.validate()

    def validate(self) -> None:
        """Enforce the debit XOR credit rule."""
        if self.debit_amount < ZERO or self.credit_amount < ZERO:
            raise ValidationError(
                "Ledger entry amounts must not be negative",
                entity_id=self.id,
                invariant="debit-xor-credit",
            )
        has_debit = self.debit_amount > ZERO
        has_credit = self.credit_amount > ZERO
        if has_debit == has_credit:
            raise ValidationError(
                "Ledger entry must carry either a debit or a credit amount, not both or neither",
                entity_id=self.id,
                invariant="debit-xor-credit",
            )
        if self.entry_date is None:
            raise ValidationError(
                "Ledger entry has no date", entity_id=self.id, invariant="date-required"
            )

    @property
    def signed_amount(self) -> Decimal:
        """Debit minus credit."""
        return self.debit_amount - self.credit_amount

    @property
    def is_debit(self) -> bool:
        return self.debit_amount > ZERO
