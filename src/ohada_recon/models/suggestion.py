"""Match suggestion models."""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from ..utils.exceptions import ValidationError
from .reconciliation import PendingItemType
from .transaction import ZERO, new_id, to_decimal


class MatchType(Enum):
    """Cardinality of a match."""

    SINGLE = "single"  # 1 bank transaction <-> 1 ledger entry
    MANY_TO_ONE = "many_to_one"  # N bank transactions <-> 1 ledger entry
    ONE_TO_MANY = "one_to_many"  # 1 bank transaction <-> N ledger entries
    MANY_TO_MANY = "many_to_many"

    @classmethod
    def from_counts(cls, bank_count: int, gl_count: int) -> "MatchType":
        if bank_count < 1 or gl_count < 1:
            raise ValueError("A match needs at least one record on each side")
        if bank_count == 1 and gl_count == 1:
            return cls.SINGLE
        if bank_count == 1:
            return cls.ONE_TO_MANY
        if gl_count == 1:
            return cls.MANY_TO_ONE
        return cls.MANY_TO_MANY


class ConfidenceBand(Enum):
    """Confidence tier of a suggestion score."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _BAND_ORDER.index(self)


_BAND_ORDER = [
    ConfidenceBand.LOW,
    ConfidenceBand.FAIR,
    ConfidenceBand.GOOD,
    ConfidenceBand.EXCELLENT,
]

DEFAULT_BAND_THRESHOLDS: dict[ConfidenceBand, Decimal] = {
    ConfidenceBand.EXCELLENT: Decimal("95"),
    ConfidenceBand.GOOD: Decimal("80"),
    ConfidenceBand.FAIR: Decimal("70"),
    ConfidenceBand.LOW: Decimal("50"),
}


def band_for(
    score: Decimal, thresholds: Optional[dict[ConfidenceBand, Decimal]] = None
) -> Optional[ConfidenceBand]:
    """Return the band of a score, or None when it falls below LOW."""
    thresholds = thresholds or DEFAULT_BAND_THRESHOLDS
    for band in reversed(_BAND_ORDER):
        if score >= thresholds[band]:
            return band
    return None


def band_range(
    band: ConfidenceBand, thresholds: Optional[dict[ConfidenceBand, Decimal]] = None
) -> str:
    """Human readable score range of a band, e.g. ``80-94``."""
    thresholds = thresholds or DEFAULT_BAND_THRESHOLDS
    low = _whole(thresholds[band])
    if band is ConfidenceBand.EXCELLENT:
        return f"{low}-100"
    upper = _whole(thresholds[_BAND_ORDER[band.rank + 1]] - 1)
    return f"{low}-{upper}"


def _whole(value: Decimal) -> Decimal:
    integral = value.to_integral_value()
    return integral if integral == value else value


class SuggestionStatus(Enum):
    """Lifecycle status of a suggestion. Every move out of PENDING is final."""

    PENDING = "pending"
    APPLIED = "applied"
    REJECTED = "rejected"
    EXPIRED = "expired"


@dataclass
class Suggestion:
    """A proposed pairing of bank transactions with ledger entries."""

    company_id: str
    reconciliation_id: str
    bank_transaction_ids: tuple[str, ...]
    gl_entry_ids: tuple[str, ...]
    confidence_score: Decimal
    matching_reason: str = ""
    id: str = field(default_factory=new_id)
    confidence_band: Optional[ConfidenceBand] = None
    requires_manual_review: bool = False

    bank_total: Decimal = ZERO
    book_total: Decimal = ZERO
    suggested_item_type: Optional[PendingItemType] = None
    transaction_date: Optional[date] = None
    third_party: Optional[str] = None

    status: SuggestionStatus = SuggestionStatus.PENDING
    created_at: datetime = field(default_factory=datetime.now)
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    version: int = 0

    def __post_init__(self) -> None:
        self.bank_transaction_ids = tuple(self.bank_transaction_ids)
        self.gl_entry_ids = tuple(self.gl_entry_ids)
        if not self.bank_transaction_ids or not self.gl_entry_ids:
            raise ValidationError(
                "A suggestion references at least one bank transaction and one ledger entry",
                entity_id=self.id,
                invariant="non-empty-sides",
            )
        self.confidence_score = to_decimal(self.confidence_score)
        if not Decimal("0") <= self.confidence_score <= Decimal("100"):
            raise ValidationError(
                f"Confidence score {self.confidence_score} is outside [0, 100]",
                entity_id=self.id,
                invariant="score-range",
            )
        self.bank_total = to_decimal(self.bank_total)
        self.book_total = to_decimal(self.book_total)
        if isinstance(self.suggested_item_type, str):
            self.suggested_item_type = PendingItemType(self.suggested_item_type)
        if self.confidence_band is None:
            self.confidence_band = band_for(self.confidence_score)

    @property
    def match_type(self) -> MatchType:
        return MatchType.from_counts(len(self.bank_transaction_ids), len(self.gl_entry_ids))

    @property
    def amount_variance(self) -> Decimal:
        return self.bank_total - self.book_total

    @property
    def is_pending(self) -> bool:
        return self.status is SuggestionStatus.PENDING

    @property
    def record_ids(self) -> tuple[str, ...]:
        return self.bank_transaction_ids + self.gl_entry_ids

    def references(self, record_id: str) -> bool:
        return record_id in self.bank_transaction_ids or record_id in self.gl_entry_ids


@dataclass
class MatchRunRecord:
    """Log line of one matching run."""

    reconciliation_id: str
    company_id: str
    started_at: datetime
    finished_at: datetime
    transactions_analyzed: int = 0
    entries_analyzed: int = 0
    suggestions_generated: int = 0
    cancelled: bool = False
    id: str = field(default_factory=new_id)

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def records_analyzed(self) -> int:
        return self.transactions_analyzed + self.entries_analyzed
