"""Reconciliation statement and pending item models (OHADA layout).

A reconciliation statement compares the bank statement balance with the book
balance of the matching 52X account. The gap is explained item by item by
pending items; each item type belongs to one adjustment class, and the class
says which balance it adjusts and in which direction.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from .transaction import ZERO, new_id, to_decimal


class BalanceSide(Enum):
    """Balance adjusted by a pending item."""

    BANK = "bank"
    BOOK = "book"
    OTHER = "other"


class AdjustmentClass(Enum):
    """Header total of a reconciliation. Values are the attribute names."""

    CHEQUES_ISSUED_NOT_CASHED = "cheques_issued_not_cashed"
    DEPOSITS_IN_TRANSIT = "deposits_in_transit"
    BANK_ERRORS = "bank_errors"
    CREDITS_NOT_RECORDED = "credits_not_recorded"
    DEBITS_NOT_RECORDED = "debits_not_recorded"
    BANK_FEES_NOT_RECORDED = "bank_fees_not_recorded"
    BOOK_ERRORS = "book_errors"

    @property
    def side(self) -> BalanceSide:
        return ADJUSTMENT_CLASS_RULES[self][0]

    @property
    def is_addition(self) -> bool:
        return ADJUSTMENT_CLASS_RULES[self][1]


# class -> (balance adjusted, added to it?)
ADJUSTMENT_CLASS_RULES: dict[AdjustmentClass, tuple[BalanceSide, bool]] = {
    AdjustmentClass.CHEQUES_ISSUED_NOT_CASHED: (BalanceSide.BANK, True),
    AdjustmentClass.DEPOSITS_IN_TRANSIT: (BalanceSide.BANK, False),
    AdjustmentClass.BANK_ERRORS: (BalanceSide.BANK, True),
    AdjustmentClass.CREDITS_NOT_RECORDED: (BalanceSide.BOOK, True),
    AdjustmentClass.DEBITS_NOT_RECORDED: (BalanceSide.BOOK, False),
    AdjustmentClass.BANK_FEES_NOT_RECORDED: (BalanceSide.BOOK, False),
    AdjustmentClass.BOOK_ERRORS: (BalanceSide.BOOK, True),
}


@dataclass(frozen=True)
class ItemTypeRule:
    """Fixed properties of a pending item type."""

    display_name: str
    adjustment_class: Optional[AdjustmentClass]

    @property
    def side(self) -> BalanceSide:
        if self.adjustment_class is None:
            return BalanceSide.OTHER
        return self.adjustment_class.side

    @property
    def is_addition(self) -> bool:
        if self.adjustment_class is None:
            return True
        return self.adjustment_class.is_addition

    @property
    def affects_bank(self) -> bool:
        return self.side is BalanceSide.BANK

    @property
    def affects_book(self) -> bool:
        return self.side is BalanceSide.BOOK


class PendingItemType(Enum):
    """Explainable causes of a difference between bank and book balances."""

    CHEQUE_ISSUED_NOT_CASHED = "cheque_issued_not_cashed"
    DEPOSIT_IN_TRANSIT = "deposit_in_transit"
    BANK_ERROR = "bank_error"
    CREDIT_NOT_RECORDED = "credit_not_recorded"
    DEBIT_NOT_RECORDED = "debit_not_recorded"
    BANK_FEES_NOT_RECORDED = "bank_fees_not_recorded"
    INTEREST_NOT_RECORDED = "interest_not_recorded"
    DIRECT_DEBIT_NOT_RECORDED = "direct_debit_not_recorded"
    BANK_CHARGES_NOT_RECORDED = "bank_charges_not_recorded"
    BOOK_ERROR = "book_error"
    UNCATEGORIZED = "uncategorized"

    @property
    def rule(self) -> ItemTypeRule:
        return PENDING_ITEM_RULES[self]

    @property
    def display_name(self) -> str:
        return self.rule.display_name

    @property
    def adjustment_class(self) -> Optional[AdjustmentClass]:
        return self.rule.adjustment_class


# Extend this table to add a new item type.
PENDING_ITEM_RULES: dict[PendingItemType, ItemTypeRule] = {
    PendingItemType.CHEQUE_ISSUED_NOT_CASHED: ItemTypeRule(
        "Chèques émis non encaissés", AdjustmentClass.CHEQUES_ISSUED_NOT_CASHED
    ),
    PendingItemType.DEPOSIT_IN_TRANSIT: ItemTypeRule(
        "Dépôts/virements en cours", AdjustmentClass.DEPOSITS_IN_TRANSIT
    ),
    PendingItemType.BANK_ERROR: ItemTypeRule("Erreur bancaire", AdjustmentClass.BANK_ERRORS),
    PendingItemType.CREDIT_NOT_RECORDED: ItemTypeRule(
        "Virements reçus non comptabilisés", AdjustmentClass.CREDITS_NOT_RECORDED
    ),
    PendingItemType.DEBIT_NOT_RECORDED: ItemTypeRule(
        "Prélèvements non comptabilisés", AdjustmentClass.DEBITS_NOT_RECORDED
    ),
    PendingItemType.BANK_FEES_NOT_RECORDED: ItemTypeRule(
        "Frais bancaires non enregistrés", AdjustmentClass.BANK_FEES_NOT_RECORDED
    ),
    PendingItemType.INTEREST_NOT_RECORDED: ItemTypeRule(
        "Intérêts non enregistrés", AdjustmentClass.CREDITS_NOT_RECORDED
    ),
    PendingItemType.DIRECT_DEBIT_NOT_RECORDED: ItemTypeRule(
        "Prélèvements automatiques non comptabilisés", AdjustmentClass.DEBITS_NOT_RECORDED
    ),
    PendingItemType.BANK_CHARGES_NOT_RECORDED: ItemTypeRule(
        "Agios non enregistrés", AdjustmentClass.BANK_FEES_NOT_RECORDED
    ),
    PendingItemType.BOOK_ERROR: ItemTypeRule("Erreur comptable", AdjustmentClass.BOOK_ERRORS),
    PendingItemType.UNCATEGORIZED: ItemTypeRule("Non catégorisé", None),
}


class ReconciliationStatus(Enum):
    """Workflow status of a reconciliation statement."""

    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    REVIEWED = "reviewed"
    APPROVED = "approved"
    REJECTED = "rejected"
    ARCHIVED = "archived"

    @property
    def is_final(self) -> bool:
        return self in (ReconciliationStatus.APPROVED, ReconciliationStatus.ARCHIVED)

    @property
    def can_edit(self) -> bool:
        return self in (ReconciliationStatus.DRAFT, ReconciliationStatus.REJECTED)


@dataclass
class TransitionRecord:
    """Audit entry for a workflow transition."""

    from_status: ReconciliationStatus
    to_status: ReconciliationStatus
    actor: str
    at: datetime
    reason: Optional[str] = None


@dataclass
class PendingItem:
    """A single explainable gap between the bank and the book balance."""

    item_type: PendingItemType
    amount: Decimal
    transaction_date: date
    id: str = field(default_factory=new_id)
    reconciliation_id: Optional[str] = None
    description: str = ""
    reference: Optional[str] = None
    third_party: Optional[str] = None

    # Source records, when the item was derived from one
    bank_transaction_id: Optional[str] = None
    gl_entry_id: Optional[str] = None

    is_resolved: bool = False
    resolved_date: Optional[date] = None
    resolution_notes: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        if isinstance(self.item_type, str):
            self.item_type = PendingItemType(self.item_type)
        self.amount = to_decimal(self.amount)

    @property
    def adjustment_class(self) -> Optional[AdjustmentClass]:
        return self.item_type.adjustment_class

    @property
    def signed_amount(self) -> Decimal:
        """Contribution to the adjusted balance of the item's side."""
        return self.amount if self.item_type.rule.is_addition else -self.amount


@dataclass
class Reconciliation:
    """
    Bank reconciliation statement for one bank account and period.

    Header totals and derived balances are maintained by
    ``PendingItemTracker`` and ``ReconciliationLedger``; they are never set
    directly by callers.
    """

    company_id: str
    bank_account_number: str
    period_start: date
    period_end: date
    statement_balance: Decimal
    book_balance: Optional[Decimal] = None
    id: str = field(default_factory=new_id)
    reconciliation_date: Optional[date] = None
    gl_account_number: str = "521"
    bank_name: Optional[str] = None
    statement_reference: Optional[str] = None
    notes: Optional[str] = None

    # Bank-side adjustments
    cheques_issued_not_cashed: Decimal = ZERO
    deposits_in_transit: Decimal = ZERO
    bank_errors: Decimal = ZERO

    # Book-side adjustments
    credits_not_recorded: Decimal = ZERO
    debits_not_recorded: Decimal = ZERO
    bank_fees_not_recorded: Decimal = ZERO
    book_errors: Decimal = ZERO

    # Derived
    adjusted_bank_balance: Decimal = ZERO
    adjusted_book_balance: Decimal = ZERO
    difference: Decimal = ZERO
    is_balanced: bool = False

    pending_items: list[PendingItem] = field(default_factory=list)

    # Workflow
    status: ReconciliationStatus = ReconciliationStatus.DRAFT
    prepared_by: Optional[str] = None
    prepared_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    history: list[TransitionRecord] = field(default_factory=list)

    version: int = 0
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        self.statement_balance = to_decimal(self.statement_balance)
        self.book_balance = to_decimal(self.book_balance)
        if self.reconciliation_date is None:
            self.reconciliation_date = self.period_end

    @property
    def key(self) -> tuple[str, str, date, date]:
        """Unique key: company, bank account and period."""
        return (self.company_id, self.bank_account_number, self.period_start, self.period_end)

    def adjustment_total(self, adjustment_class: AdjustmentClass) -> Decimal:
        return getattr(self, adjustment_class.value)

    def find_item(self, item_id: str) -> Optional[PendingItem]:
        return next((item for item in self.pending_items if item.id == item_id), None)

    def covers(self, day: Optional[date]) -> bool:
        """Whether a date falls inside the reconciliation period."""
        return day is not None and self.period_start <= day <= self.period_end
