"""
Group matching: one transaction against several entries, several transactions
against one entry, and several against several.

Subsets are searched with a greedy pass followed by a bounded subset-sum over
integer cents. The best subset has the smallest difference to the target, then
the fewest items.
"""

from abc import abstractmethod
from bisect import bisect_left, bisect_right
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional, Sequence, TypeVar
import logging

from ..models.transaction import ZERO, BankTransaction, GeneralLedgerEntry
from .strategies import Candidate, MatchingStrategy, MatchScore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


def subset_sums(
    items: Sequence[T],
    amount_of: Callable[[T], Decimal],
    max_items: int,
    max_states: int,
    limit_cents: Optional[int] = None,
    min_items: int = 1,
) -> dict[int, tuple[int, ...]]:
    """
    Reachable sums (in cents) of subsets of ``items``.

    Each sum maps to one index combination reaching it: one of at least
    ``min_items`` items when there is one, then the shortest. At most
    ``max_states`` distinct sums are kept; sums whose magnitude exceeds
    ``limit_cents`` are dropped, which is only safe when all items share a sign.
    """
    states: dict[int, tuple[int, ...]] = {0: ()}
    for index, item in enumerate(items):
        cents = to_cents(amount_of(item))
        for total, combo in list(states.items()):
            if len(combo) >= max_items:
                continue
            new_total = total + cents
            if limit_cents is not None and abs(new_total) > limit_cents:
                continue
            new_combo = combo + (index,)
            existing = states.get(new_total)
            if existing is None:
                if len(states) >= max_states:
                    continue
                states[new_total] = new_combo
            elif _preferred(new_combo, existing, min_items):
                states[new_total] = new_combo
    return states


def _preferred(candidate: tuple[int, ...], existing: tuple[int, ...], min_items: int) -> bool:
    return (len(candidate) < min_items, len(candidate)) < (len(existing) < min_items, len(existing))


def _greedy_subset(
    target: int, cents: list[int], max_items: int
) -> tuple[int, ...]:
    order = sorted(range(len(cents)), key=lambda i: -abs(cents[i]))
    chosen: list[int] = []
    total = 0
    for index in order:
        if len(chosen) >= max_items:
            break
        if abs(total + cents[index] - target) < abs(total - target):
            chosen.append(index)
            total += cents[index]
    return tuple(sorted(chosen))


def find_best_subset(
    target: Decimal,
    items: Sequence[T],
    amount_of: Callable[[T], Decimal],
    tolerance: Decimal,
    min_items: int = 2,
    max_items: int = 5,
    max_states: int = 5000,
) -> Optional[list[T]]:
    """
    Find the subset of ``items`` whose amounts sum closest to ``target``.

    Args:
        target: Amount to reach
        items: Candidates, all of the same sign as the target
        amount_of: Signed amount of an item
        tolerance: Largest acceptable difference
        min_items: Smallest subset size
        max_items: Largest subset size
        max_states: Cap on distinct partial sums explored

    Returns:
        The best subset, or None when no subset is within tolerance
    """
    if len(items) < min_items:
        return None

    target_cents = to_cents(target)
    tolerance_cents = to_cents(tolerance)
    cents = [to_cents(amount_of(item)) for item in items]

    options: list[tuple[int, int, tuple[int, ...]]] = []

    greedy = _greedy_subset(target_cents, cents, max_items)
    greedy_diff = abs(sum(cents[i] for i in greedy) - target_cents)
    if min_items <= len(greedy) <= max_items and greedy_diff <= tolerance_cents:
        options.append((greedy_diff, len(greedy), greedy))

    if not options or greedy_diff > 0:
        states = subset_sums(
            items,
            amount_of,
            max_items=max_items,
            max_states=max_states,
            limit_cents=abs(target_cents) + tolerance_cents,
            min_items=min_items,
        )
        for total, combo in states.items():
            diff = abs(total - target_cents)
            if len(combo) >= min_items and diff <= tolerance_cents:
                options.append((diff, len(combo), combo))

    if not options:
        return None
    _, _, best = min(options, key=lambda option: (option[0], option[1]))
    return [items[i] for i in best]


def _same_sign(left: Decimal, right: Decimal) -> bool:
    return (left > ZERO) == (right > ZERO)


class GroupMatchStrategy(MatchingStrategy):
    """Shared scoring of grouped matches."""

    many_to_many = False

    def calculate_match_score(
        self,
        bank_txns: Sequence[BankTransaction],
        gl_entries: Sequence[GeneralLedgerEntry],
    ) -> Optional[MatchScore]:
        """
        Single-style score on the sums using the worst date gap and the best
        text similarity, minus the group penalties and capped.
        """
        bank_total = sum((t.amount for t in bank_txns), ZERO)
        book_total = sum((e.signed_amount for e in gl_entries), ZERO)
        amount_score = self.scorer.amount_closeness(bank_total, book_total)
        if amount_score is None:
            return None

        worst_days = max(
            abs((t.transaction_date - e.entry_date).days) for t in bank_txns for e in gl_entries
        )
        date_score = self.scorer.date_closeness(worst_days)
        if date_score is None:
            return None

        best_text = 0.0
        for bank_txn in bank_txns:
            for gl_entry in gl_entries:
                best_text = max(best_text, self.scorer.text.score(bank_txn, gl_entry)[0])

        diff = abs(bank_total - book_total)
        reasons = [
            f"{len(bank_txns)} transaction(s) vs {len(gl_entries)} ledger entries",
            "sums match exactly" if diff == ZERO else f"sum variance {diff}",
            f"dates up to {worst_days} day(s) apart",
        ]
        base = self.scorer.combine(
            amount_score, date_score, Decimal(str(round(best_text, 4))), reasons
        )

        settings = self.config.multiple_matching
        extra_parts = max(0, max(len(bank_txns), len(gl_entries)) - 2)
        penalty = Decimal(str(settings.combined_penalty)) + Decimal(
            str(settings.penalty_per_extra_item)
        ) * extra_parts
        cap = Decimal(
            str(
                settings.many_to_many_confidence_cap
                if self.many_to_many
                else settings.combined_confidence_cap
            )
        )
        score = max(ZERO, min(base.score - penalty, cap))
        return MatchScore(
            score, base.amount_closeness, base.date_closeness, base.text_similarity, reasons
        )

    def _within_range(self, anchor_day, other_day) -> bool:
        return abs((anchor_day - other_day).days) <= self.config.multiple_matching.max_date_range_days

    def _candidate(
        self,
        bank_txns: Sequence[BankTransaction],
        gl_entries: Sequence[GeneralLedgerEntry],
    ) -> Optional[Candidate]:
        match_score = self.calculate_match_score(bank_txns, gl_entries)
        if match_score is None or match_score.score < Decimal(str(self.config.thresholds.low)):
            return None
        return Candidate(tuple(bank_txns), tuple(gl_entries), match_score)

    @abstractmethod
    def match_anchor(self, anchor, counterparts) -> Optional[Candidate]:
        """Best group around one anchor record, or None."""
        pass

    def anchors(self, bank_txns, gl_entries) -> list:
        return sorted(bank_txns, key=lambda t: (-abs(t.amount), t.id))

    def counterparts(self, bank_txns, gl_entries) -> list:
        return list(gl_entries)

    def find_matches(
        self,
        bank_txns: Sequence[BankTransaction],
        gl_entries: Sequence[GeneralLedgerEntry],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> list[Candidate]:
        """
        Claim groups anchor by anchor; records are never reused.

        ``should_stop`` is polled before each anchor; when it returns True the
        groups completed so far are returned.
        """
        claimed: set[str] = set()
        results: list[Candidate] = []
        remaining_bank = list(bank_txns)
        remaining_gl = list(gl_entries)
        for anchor in self.anchors(remaining_bank, remaining_gl):
            if should_stop is not None and should_stop():
                break
            if anchor.id in claimed:
                continue
            available_bank = [t for t in remaining_bank if t.id not in claimed]
            available_gl = [e for e in remaining_gl if e.id not in claimed]
            candidate = self.match_anchor(
                anchor, self.counterparts(available_bank, available_gl)
            )
            if candidate is not None:
                claimed |= candidate.record_ids
                results.append(candidate)
        return results


class OneToManyStrategy(GroupMatchStrategy):
    """One bank transaction settled by several ledger entries."""

    def match_anchor(
        self, anchor: BankTransaction, counterparts: Sequence[GeneralLedgerEntry]
    ) -> Optional[Candidate]:
        settings = self.config.multiple_matching
        tolerance = self.scorer.tolerance.for_amount(anchor.amount)
        pool = [
            e
            for e in counterparts
            if _same_sign(e.signed_amount, anchor.amount)
            and self._within_range(anchor.transaction_date, e.entry_date)
            and abs(e.signed_amount) <= abs(anchor.amount) + tolerance
        ]
        pool.sort(key=lambda e: (abs((e.entry_date - anchor.transaction_date).days), e.id))
        pool = pool[: self.config.performance.max_candidates]

        subset = find_best_subset(
            anchor.amount,
            pool,
            lambda e: e.signed_amount,
            tolerance,
            min_items=settings.min_items,
            max_items=settings.max_items,
            max_states=self.config.performance.max_subset_states,
        )
        if subset is None:
            return None
        return self._candidate([anchor], subset)


class ManyToOneStrategy(GroupMatchStrategy):
    """Several bank transactions recorded as one ledger entry."""

    def anchors(self, bank_txns, gl_entries) -> list:
        return sorted(gl_entries, key=lambda e: (-abs(e.signed_amount), e.id))

    def counterparts(self, bank_txns, gl_entries) -> list:
        return list(bank_txns)

    def match_anchor(
        self, anchor: GeneralLedgerEntry, counterparts: Sequence[BankTransaction]
    ) -> Optional[Candidate]:
        settings = self.config.multiple_matching
        target = anchor.signed_amount
        tolerance = self.scorer.tolerance.for_amount(target)
        pool = [
            t
            for t in counterparts
            if _same_sign(t.amount, target)
            and self._within_range(anchor.entry_date, t.transaction_date)
            and abs(t.amount) <= abs(target) + tolerance
        ]
        pool.sort(key=lambda t: (abs((t.transaction_date - anchor.entry_date).days), t.id))
        pool = pool[: self.config.performance.max_candidates]

        subset = find_best_subset(
            target,
            pool,
            lambda t: t.amount,
            tolerance,
            min_items=settings.min_items,
            max_items=settings.max_items,
            max_states=self.config.performance.max_subset_states,
        )
        if subset is None:
            return None
        return self._candidate(subset, [anchor])


class ManyToManyStrategy(GroupMatchStrategy):
    """
    Several bank transactions against several ledger entries.

    The anchor transaction is always part of the bank subset; both subsets
    hold at least ``min_items`` records.
    """

    many_to_many = True

    def counterparts(self, bank_txns, gl_entries) -> tuple:
        return list(bank_txns), list(gl_entries)

    def match_anchor(self, anchor: BankTransaction, counterparts) -> Optional[Candidate]:
        bank_txns, gl_entries = counterparts
        settings = self.config.multiple_matching
        max_candidates = self.config.performance.max_candidates
        max_states = self.config.performance.max_subset_states

        bank_pool = [
            t
            for t in bank_txns
            if t.id != anchor.id
            and _same_sign(t.amount, anchor.amount)
            and self._within_range(anchor.transaction_date, t.transaction_date)
        ]
        bank_pool.sort(key=lambda t: (abs((t.transaction_date - anchor.transaction_date).days), t.id))
        bank_pool = [anchor] + bank_pool[: max_candidates - 1]

        gl_pool = [
            e
            for e in gl_entries
            if _same_sign(e.signed_amount, anchor.amount)
            and self._within_range(anchor.transaction_date, e.entry_date)
        ]
        gl_pool.sort(key=lambda e: (abs((e.entry_date - anchor.transaction_date).days), e.id))
        gl_pool = gl_pool[:max_candidates]

        if len(gl_pool) < settings.min_items or len(bank_pool) < settings.min_items:
            return None

        bank_states = subset_sums(
            bank_pool, lambda t: t.amount, settings.max_items, max_states, min_items=settings.min_items
        )
        gl_states = subset_sums(
            gl_pool, lambda e: e.signed_amount, settings.max_items, max_states, min_items=settings.min_items
        )
        gl_sums = sorted(total for total, combo in gl_states.items() if len(combo) >= settings.min_items)
        if not gl_sums:
            return None

        best: Optional[tuple[int, int, tuple[int, ...], tuple[int, ...]]] = None
        for bank_sum, bank_combo in bank_states.items():
            if len(bank_combo) < settings.min_items or 0 not in bank_combo:
                continue
            tolerance = to_cents(self.scorer.tolerance.for_amount(Decimal(bank_sum) / 100))
            low = bisect_left(gl_sums, bank_sum - tolerance)
            high = bisect_right(gl_sums, bank_sum + tolerance)
            for gl_sum in gl_sums[low:high]:
                gl_combo = gl_states[gl_sum]
                option = (
                    abs(gl_sum - bank_sum),
                    len(bank_combo) + len(gl_combo),
                    bank_combo,
                    gl_combo,
                )
                if best is None or option[:2] < best[:2]:
                    best = option

        if best is None:
            return None
        _, _, bank_combo, gl_combo = best
        return self._candidate(
            [bank_pool[i] for i in bank_combo], [gl_pool[i] for i in gl_combo]
        )
