"""Tests for scoring, subset search and group strategies."""

from datetime import timedelta
from decimal import Decimal

import pytest

from ohada_recon.config import AmountToleranceConfig, MatchingConfig
from ohada_recon.matching import (
    AmountTolerance,
    ManyToManyStrategy,
    ManyToOneStrategy,
    MatchScorer,
    OneToManyStrategy,
    SingleMatchStrategy,
    TextSimilarity,
    UnmatchedClassifier,
    find_best_subset,
)
from ohada_recon.models import PendingItemType, RecordSide


@pytest.fixture
def matching(config):
    return config.matching


class TestAmountTolerance:
    @pytest.mark.parametrize(
        "amount, expected",
        [
            ("15000", "750"),
            ("5000", "500"),
            ("-5000", "500"),
            ("1000000", "10000"),
            ("2000000", "10000"),
            ("999999", "49999.95"),
        ],
    )
    def test_magnitude_dependent(self, matching, amount, expected):
        assert AmountTolerance(matching).for_amount(Decimal(amount)) == Decimal(expected)


class TestTextSimilarity:
    def test_normalize_strips_accents_and_punctuation(self, matching):
        text = TextSimilarity(matching)
        assert text.normalize("  Règlement  Société-Générale! ") == "reglement societe generale"

    def test_reference_match_scores_one(self, matching, make_bank, make_gl):
        bank = make_bank("1000", bank_reference="CHQ-0042")
        gl = make_gl("1000", reference="chq 0042")
        value, reason = TextSimilarity(matching).score(bank, gl)
        assert value == 1.0
        assert "reference" in reason

    def test_below_threshold_counts_as_nothing(self, matching, make_bank, make_gl):
        bank = make_bank("1000", description="AAAA")
        gl = make_gl("1000", description="ZZZZ")
        value, _ = TextSimilarity(matching).score(bank, gl)
        assert value == 0.0

    def test_third_party_similarity(self, matching, make_bank, make_gl):
        bank = make_bank("1000", third_party_name="ALPHA SARL")
        gl = make_gl("1000", third_party_name="Alpha Sarl")
        value, reason = TextSimilarity(matching).score(bank, gl)
        assert value == 1.0
        assert "third party" in reason


class TestSingleMatch:
    def test_exact_match_same_day_same_reference(self, matching, make_bank, make_gl):
        bank = make_bank("-25000", bank_reference="VIR123")
        gl = make_gl("-25000", reference="VIR123")
        score = SingleMatchStrategy(matching).calculate_match_score([bank], [gl])
        assert score.score == Decimal("100.00")

    def test_date_gap_lowers_score(self, matching, make_bank, make_gl):
        bank = make_bank("-25000")
        gl = make_gl("-25000", day=bank.transaction_date + timedelta(days=2))
        score = SingleMatchStrategy(matching).calculate_match_score([bank], [gl])
        # 100 * (0.5 * 1 + 0.35 * (1 - 2/8) + 0.15 * 0)
        assert score.score == Decimal("76.25")
        assert "2 day(s) apart" in score.reason

    def test_outside_window_or_tolerance_is_no_match(self, matching, make_bank, make_gl):
        strategy = SingleMatchStrategy(matching)
        bank = make_bank("-25000")
        far = make_gl("-25000", day=bank.transaction_date + timedelta(days=8))
        off = make_gl("-30000")
        opposite = make_gl("25000")
        assert strategy.calculate_match_score([bank], [far]) is None
        assert strategy.calculate_match_score([bank], [off]) is None
        assert strategy.calculate_match_score([bank], [opposite]) is None

    def test_candidates_best_first(self, matching, make_bank, make_gl):
        bank = make_bank("-25000")
        near = make_gl("-25000")
        later = make_gl("-25000", day=bank.transaction_date + timedelta(days=3))
        candidates = SingleMatchStrategy(matching).candidates_for(bank, [later, near])
        assert [c.gl_entries[0].id for c in candidates] == [near.id, later.id]

    def test_tightening_tolerance_never_increases_score(self, make_bank, make_gl):
        bank = make_bank("100000")
        gl = make_gl("99000")
        scores = []
        for percent in (0.05, 0.02, 0.011):
            settings = MatchingConfig(
                amount_tolerance=AmountToleranceConfig(small_amount_percent=percent, minimum_absolute=100)
            )
            scores.append(SingleMatchStrategy(settings).calculate_match_score([bank], [gl]).score)
        assert scores == sorted(scores, reverse=True)
        assert scores[0] > scores[-1]

    def test_tightening_window_never_increases_score(self, make_bank, make_gl):
        bank = make_bank("100000")
        gl = make_gl("100000", day=bank.transaction_date + timedelta(days=1))
        wide = MatchScorer(MatchingConfig(date_window_days=7)).date_closeness(1)
        narrow = MatchScorer(MatchingConfig(date_window_days=2)).date_closeness(1)
        assert narrow <= wide


class TestSubsetSearch:
    def test_exact_pair(self):
        items = [Decimal("10000"), Decimal("7000"), Decimal("5000")]
        best = find_best_subset(Decimal("15000"), items, lambda x: x, Decimal("0"))
        assert sorted(best) == [Decimal("5000"), Decimal("10000")]

    def test_fewest_items_wins_on_equal_difference(self):
        items = [Decimal(v) for v in ("5000", "4000", "3000", "3000", "3000")]
        best = find_best_subset(Decimal("9000"), items, lambda x: x, Decimal("0"))
        assert sorted(best) == [Decimal("4000"), Decimal("5000")]

    def test_min_items_excludes_singletons(self):
        items = [Decimal("10000"), Decimal("6000"), Decimal("4000")]
        best = find_best_subset(Decimal("10000"), items, lambda x: x, Decimal("0"), min_items=2)
        assert sorted(best) == [Decimal("4000"), Decimal("6000")]

    def test_none_within_tolerance(self):
        items = [Decimal("3000"), Decimal("3000")]
        assert find_best_subset(Decimal("10000"), items, lambda x: x, Decimal("500")) is None

    def test_negative_amounts(self):
        items = [Decimal("-10000"), Decimal("-5000"), Decimal("-2500")]
        best = find_best_subset(Decimal("-15000"), items, lambda x: x, Decimal("750"))
        assert sorted(best) == [Decimal("-10000"), Decimal("-5000")]


class TestGroupStrategies:
    def test_one_bank_line_against_two_entries(self, matching, make_bank, make_gl):
        """A -15 000 payment booked as -10 000 and -5 000 the next day."""
        bank = make_bank("-15000")
        first = make_gl("-10000", day=bank.transaction_date)
        second = make_gl("-5000", day=bank.transaction_date + timedelta(days=1))

        candidates = OneToManyStrategy(matching).find_matches([bank], [first, second])

        assert len(candidates) == 1
        candidate = candidates[0]
        assert {e.id for e in candidate.gl_entries} == {first.id, second.id}
        # 100 * (0.5 + 0.35 * 7/8) - 5
        assert candidate.score == Decimal("75.63")

    def test_extra_items_are_penalised(self, matching, make_bank, make_gl):
        bank = make_bank("-20000")
        entries = [make_gl("-5000") for _ in range(4)]
        candidates = OneToManyStrategy(matching).find_matches([bank], entries)
        assert len(candidates) == 1
        # 85 - 5 - 2.5 * 2
        assert candidates[0].score == Decimal("75.00")

    def test_combined_cap(self, matching, make_bank, make_gl):
        label = {"description": "Reglement fournisseur Beta"}
        bank = make_bank("-15000", **label)
        entries = [make_gl("-10000", **label), make_gl("-5000", **label)]
        candidate = OneToManyStrategy(matching).find_matches([bank], entries)[0]
        assert candidate.score == Decimal("90")

    def test_many_bank_lines_against_one_entry(self, matching, make_bank, make_gl):
        deposits = [make_bank("40000"), make_bank("60000")]
        entry = make_gl("100000")
        candidates = ManyToOneStrategy(matching).find_matches(deposits, [entry])
        assert len(candidates) == 1
        assert {t.id for t in candidates[0].bank_transactions} == {d.id for d in deposits}
        assert [e.id for e in candidates[0].gl_entries] == [entry.id]

    def test_many_to_many_capped_lower(self, matching, make_bank, make_gl):
        label = {"description": "Reglement fournisseur Beta"}
        bank = [make_bank("-6000", **label), make_bank("-4000", **label)]
        entries = [make_gl("-7000", **label), make_gl("-3000", **label)]
        candidates = ManyToManyStrategy(matching).find_matches(bank, entries)
        assert len(candidates) == 1
        assert len(candidates[0].bank_transactions) == 2
        assert len(candidates[0].gl_entries) == 2
        assert candidates[0].score == Decimal("79")

    def test_records_are_never_reused(self, matching, make_bank, make_gl):
        banks = [make_bank("-15000"), make_bank("-15000")]
        entries = [make_gl("-10000"), make_gl("-5000")]
        candidates = OneToManyStrategy(matching).find_matches(banks, entries)
        assert len(candidates) == 1

    def test_should_stop_halts_before_next_anchor(self, matching, make_bank, make_gl):
        bank = make_bank("-15000")
        entries = [make_gl("-10000"), make_gl("-5000")]
        assert OneToManyStrategy(matching).find_matches([bank], entries, should_stop=lambda: True) == []


class TestUnmatchedClassifier:
    @pytest.mark.parametrize(
        "amount, description, expected, confidence",
        [
            ("150000", "VIR RECU CLIENT GAMMA", PendingItemType.CREDIT_NOT_RECORDED, 85),
            ("1200", "INTERETS CREDITEURS T4", PendingItemType.INTEREST_NOT_RECORDED, 90),
            ("5000", "REMISE", PendingItemType.CREDIT_NOT_RECORDED, 70),
            ("-3500", "FRAIS TENUE DE COMPTE", PendingItemType.BANK_FEES_NOT_RECORDED, 90),
            ("-8000", "AGIOS TRIMESTRE", PendingItemType.BANK_CHARGES_NOT_RECORDED, 90),
            ("-45000", "PRÉLÈVEMENT CNPS", PendingItemType.DIRECT_DEBIT_NOT_RECORDED, 85),
            ("-1000", "OPERATION DIVERSE", PendingItemType.DEBIT_NOT_RECORDED, 70),
        ],
    )
    def test_bank_lines(self, matching, make_bank, amount, description, expected, confidence):
        record = UnmatchedClassifier(matching).classify_bank_transaction(
            make_bank(amount, description=description)
        )
        assert record.side is RecordSide.BANK
        assert record.proposed_type is expected
        assert record.confidence == Decimal(confidence)
        assert record.amount == abs(Decimal(amount))

    def test_vir_abbreviation_must_be_a_word(self, matching, make_bank):
        record = UnmatchedClassifier(matching).classify_bank_transaction(
            make_bank("5000", description="ENVIRONNEMENT")
        )
        assert record.confidence == Decimal(70)

    @pytest.mark.parametrize(
        "amount, description, expected, confidence",
        [
            ("-25000", "Chèque n° 1234 fournisseur", PendingItemType.CHEQUE_ISSUED_NOT_CASHED, 90),
            ("-25000", "Virement fournisseur", PendingItemType.DEPOSIT_IN_TRANSIT, 80),
            ("-25000", "Paiement", PendingItemType.CHEQUE_ISSUED_NOT_CASHED, 65),
            ("25000", "Remise espèces", PendingItemType.DEPOSIT_IN_TRANSIT, 70),
        ],
    )
    def test_ledger_entries(self, matching, make_gl, amount, description, expected, confidence):
        record = UnmatchedClassifier(matching).classify_ledger_entry(
            make_gl(amount, description=description)
        )
        assert record.side is RecordSide.LEDGER
        assert record.proposed_type is expected
        assert record.confidence == Decimal(confidence)
