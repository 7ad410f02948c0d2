"""
Matching strategies for bank reconciliation.
Each strategy proposes candidate pairings and scores them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from difflib import SequenceMatcher
from typing import Optional, Sequence
import logging
import re
import unicodedata

from ..config import MatchingConfig
from ..models.transaction import ZERO, BankTransaction, GeneralLedgerEntry

logger = logging.getLogger(__name__)

ONE = Decimal("1")
HUNDRED = Decimal("100")
SCORE_QUANTUM = Decimal("0.01")


def _dec(value: float) -> Decimal:
    return Decimal(str(value))


class AmountTolerance:
    """
    Magnitude-dependent amount tolerance.

    Large amounts get a small percentage capped at an absolute maximum;
    small amounts get a larger percentage with an absolute floor.
    """

    def __init__(self, config: MatchingConfig):
        settings = config.amount_tolerance
        self.small_percent = _dec(settings.small_amount_percent)
        self.large_percent = _dec(settings.large_amount_percent)
        self.minimum = _dec(settings.minimum_absolute)
        self.maximum = _dec(settings.maximum_absolute)
        self.large_threshold = _dec(settings.large_amount_threshold)

    def for_amount(self, amount: Decimal) -> Decimal:
        magnitude = abs(amount)
        if magnitude >= self.large_threshold:
            return min(magnitude * self.large_percent, self.maximum)
        return max(magnitude * self.small_percent, self.minimum)


class TextSimilarity:
    """Similarity of descriptions, references and third-party names."""

    def __init__(self, config: MatchingConfig):
        self.settings = config.text_similarity

    def normalize(self, text: Optional[str]) -> str:
        """Normalize text for comparison."""
        if not text:
            return ""
        if not self.settings.normalize:
            return text
        # Convert to lowercase
        value = text.lower()
        # Strip accents
        if self.settings.strip_accents:
            value = "".join(
                ch for ch in unicodedata.normalize("NFKD", value) if not unicodedata.combining(ch)
            )
        # Remove special characters
        value = re.sub(r"[^a-z0-9\s]", " ", value)
        # Normalize whitespace
        return " ".join(value.split())

    def ratio(self, left: Optional[str], right: Optional[str]) -> float:
        left_norm = self.normalize(left)
        right_norm = self.normalize(right)
        if not left_norm or not right_norm:
            return 0.0
        return SequenceMatcher(None, left_norm, right_norm).ratio()

    def score(self, bank_txn: BankTransaction, gl_entry: GeneralLedgerEntry) -> tuple[float, str]:
        """
        Return the text similarity in [0, 1] and a short explanation.

        Equal normalized references score 1. Otherwise the best ratio over
        descriptions and third-party names; ratios under the configured
        threshold count as no similarity.
        """
        if (
            bank_txn.normalized_reference
            and bank_txn.normalized_reference == gl_entry.normalized_reference
        ):
            return 1.0, f"reference {bank_txn.bank_reference} matches"

        description = self.ratio(bank_txn.description, gl_entry.description)
        third_party = self.ratio(bank_txn.third_party_name, gl_entry.third_party_name)
        best = max(description, third_party)
        if best < self.settings.threshold:
            return 0.0, "no text similarity"
        label = "description" if description >= third_party else "third party"
        return best, f"{label} similarity {best:.0%}"


@dataclass
class MatchScore:
    """Score of a candidate with the components it was built from."""

    score: Decimal
    amount_closeness: Decimal
    date_closeness: Decimal
    text_similarity: Decimal
    reasons: list[str]

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons)


@dataclass
class Candidate:
    """A scored pairing proposed by a strategy."""

    bank_transactions: tuple[BankTransaction, ...]
    gl_entries: tuple[GeneralLedgerEntry, ...]
    match_score: MatchScore

    @property
    def score(self) -> Decimal:
        return self.match_score.score

    @property
    def bank_total(self) -> Decimal:
        return sum((t.amount for t in self.bank_transactions), ZERO)

    @property
    def book_total(self) -> Decimal:
        return sum((e.signed_amount for e in self.gl_entries), ZERO)

    @property
    def record_ids(self) -> set[str]:
        return {t.id for t in self.bank_transactions} | {e.id for e in self.gl_entries}


class MatchScorer:
    """
    Weighted score in [0, 100]:

        100 * (w_amount * amount + w_date * date + w_text * text)

    where amount = 1 - |diff| / tolerance and date = 1 - days / (window + 1).
    """

    def __init__(self, config: MatchingConfig):
        self.config = config
        self.tolerance = AmountTolerance(config)
        self.text = TextSimilarity(config)
        self.w_amount = _dec(config.weights.amount)
        self.w_date = _dec(config.weights.date)
        self.w_text = _dec(config.weights.text)
        self.window = config.date_window_days

    def amount_closeness(self, target: Decimal, actual: Decimal) -> Optional[Decimal]:
        """None when the difference exceeds the tolerance of the target."""
        tolerance = self.tolerance.for_amount(target)
        diff = abs(target - actual)
        if diff > tolerance:
            return None
        if tolerance == ZERO:
            return ONE
        return ONE - diff / tolerance

    def date_closeness(self, days: int, window: Optional[int] = None) -> Optional[Decimal]:
        """None when the gap exceeds the window."""
        window = self.window if window is None else window
        if days > window:
            return None
        return ONE - Decimal(days) / Decimal(window + 1)

    def combine(
        self,
        amount: Decimal,
        date_score: Decimal,
        text: Decimal,
        reasons: list[str],
    ) -> MatchScore:
        raw = HUNDRED * (self.w_amount * amount + self.w_date * date_score + self.w_text * text)
        score = max(ZERO, min(HUNDRED, raw)).quantize(SCORE_QUANTUM, rounding=ROUND_HALF_UP)
        return MatchScore(score, amount, date_score, text, reasons)


class MatchingStrategy(ABC):
    """Abstract base class for matching strategies."""

    def __init__(self, config: MatchingConfig, scorer: Optional[MatchScorer] = None):
        self.config = config
        self.scorer = scorer or MatchScorer(config)

    @abstractmethod
    def find_matches(
        self,
        bank_txns: Sequence[BankTransaction],
        gl_entries: Sequence[GeneralLedgerEntry],
    ) -> list[Candidate]:
        """
        Propose candidates from the given pools.

        Args:
            bank_txns: Unclaimed bank transactions
            gl_entries: Unclaimed ledger entries

        Returns:
            Candidates, best first (may be empty)
        """
        pass

    @abstractmethod
    def calculate_match_score(
        self,
        bank_txns: Sequence[BankTransaction],
        gl_entries: Sequence[GeneralLedgerEntry],
    ) -> Optional[MatchScore]:
        """
        Score a pairing.

        Returns:
            MatchScore in [0, 100], or None if the records cannot match
        """
        pass


class SingleMatchStrategy(MatchingStrategy):
    """One bank transaction against one ledger entry."""

    def candidates_for(
        self, bank_txn: BankTransaction, gl_entries: Sequence[GeneralLedgerEntry]
    ) -> list[Candidate]:
        """All entries within the date window and amount tolerance, best first."""
        candidates: list[Candidate] = []
        for gl_entry in gl_entries:
            match_score = self.calculate_match_score([bank_txn], [gl_entry])
            if match_score is None:
                continue
            candidates.append(Candidate((bank_txn,), (gl_entry,), match_score))
            logger.debug(
                f"Candidate {bank_txn.id} <-> {gl_entry.id}: {match_score.score} "
                f"({match_score.reason})"
            )
        candidates.sort(key=lambda c: (-c.score, c.gl_entries[0].id))
        return candidates[: self.config.performance.max_candidates]

    def find_matches(
        self,
        bank_txns: Sequence[BankTransaction],
        gl_entries: Sequence[GeneralLedgerEntry],
    ) -> list[Candidate]:
        candidates: list[Candidate] = []
        for bank_txn in bank_txns:
            candidates.extend(self.candidates_for(bank_txn, gl_entries))
        candidates.sort(key=lambda c: -c.score)
        return candidates

    def calculate_match_score(
        self,
        bank_txns: Sequence[BankTransaction],
        gl_entries: Sequence[GeneralLedgerEntry],
    ) -> Optional[MatchScore]:
        bank_txn = bank_txns[0]
        gl_entry = gl_entries[0]

        days = abs((bank_txn.transaction_date - gl_entry.entry_date).days)
        date_score = self.scorer.date_closeness(days)
        if date_score is None:
            return None
        amount_score = self.scorer.amount_closeness(bank_txn.amount, gl_entry.signed_amount)
        if amount_score is None:
            return None

        text_value, text_reason = self.scorer.text.score(bank_txn, gl_entry)
        diff = abs(bank_txn.amount - gl_entry.signed_amount)
        reasons = [
            "exact amount" if diff == ZERO else f"amount variance {diff}",
            "same date" if days == 0 else f"{days} day(s) apart",
            text_reason,
        ]
        return self.scorer.combine(amount_score, date_score, _dec(round(text_value, 4)), reasons)
