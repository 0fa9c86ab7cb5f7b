"""Tests for candidate search, ranking and the auto-match decision."""

import random
from datetime import date
from decimal import Decimal
from uuid import uuid4

from kita_fees.models import FeeExpectation, MatchState, ReasonCode
from kita_fees.services.matcher import (
    AutoMatched,
    Candidate,
    Suggested,
    Unmatchable,
    decide,
    find_candidates,
    match_transaction,
    ranking_key,
)
from kita_fees.services.scoring import DEFAULT_CONFIG, ChildProfile, ScoringContext
from tests.factories import (
    BankTransactionFactory,
    ChildFactory,
    FeeExpectationFactory,
    KnownIBANFactory,
)


def _klein() -> ChildProfile:
    return ChildProfile(id=uuid4(), first_name="Mia", last_name="Klein", member_number="10001")


def _context(*children: ChildProfile) -> ScoringContext:
    return ScoringContext(children={child.id: child for child in children})


def _fee(child: ChildProfile, amount: str, due: date = date(2024, 5, 1)) -> FeeExpectation:
    return FeeExpectationFactory.build(child_id=child.id, amount=Decimal(amount), due_date=due)


def _candidate(confidence: float, fee: FeeExpectation) -> Candidate:
    return Candidate(fees=(fee,), confidence=confidence, reason=ReasonCode.NAME)


class TestFindCandidates:
    def test_collective_payment_ranks_first(self):
        child = _klein()
        childcare = _fee(child, "120.00")
        food = _fee(child, "45.00")
        tx = BankTransactionFactory.build(amount=Decimal("165.00"), payer_name="Klein")

        candidates = find_candidates(tx, [childcare, food], _context(child), DEFAULT_CONFIG)

        top = candidates[0]
        assert top.reason == ReasonCode.COMBINED
        assert top.is_combined
        assert set(top.fee_ids) == {childcare.id, food.id}
        assert len(candidates) == 3

    def test_subset_tolerance_boundary(self):
        child = _klein()
        fees = [_fee(child, "120.00"), _fee(child, "45.00")]

        near = BankTransactionFactory.build(amount=Decimal("165.01"), payer_name="Klein")
        far = BankTransactionFactory.build(amount=Decimal("165.02"), payer_name="Klein")

        assert any(c.is_combined for c in find_candidates(near, fees, _context(child), DEFAULT_CONFIG))
        assert not any(c.is_combined for c in find_candidates(far, fees, _context(child), DEFAULT_CONFIG))

    def test_three_fee_subsets_but_never_four(self):
        child = _klein()
        fees = [_fee(child, "40.00", date(2024, month, 1)) for month in range(1, 5)]

        three = BankTransactionFactory.build(amount=Decimal("120.00"), payer_name="Klein")
        four = BankTransactionFactory.build(amount=Decimal("160.00"), payer_name="Klein")

        combined = [c for c in find_candidates(three, fees, _context(child), DEFAULT_CONFIG) if c.is_combined]
        assert len(combined) == 4
        assert all(len(c.fees) == 3 for c in combined)

        assert not any(c.is_combined for c in find_candidates(four, fees, _context(child), DEFAULT_CONFIG))

    def test_fees_of_different_payers_are_not_combined(self):
        klein = _klein()
        other = ChildProfile(id=uuid4(), first_name="Mia", last_name="Klein", member_number="10002")
        fees = [_fee(klein, "120.00"), _fee(other, "45.00")]
        tx = BankTransactionFactory.build(amount=Decimal("165.00"), payer_name="Klein")

        candidates = find_candidates(tx, fees, _context(klein, other), DEFAULT_CONFIG)

        assert candidates
        assert not any(c.is_combined for c in candidates)

    def test_siblings_in_one_household_are_combined(self):
        household_id = uuid4()
        mia = ChildProfile(id=uuid4(), first_name="Mia", last_name="Klein", household_id=household_id)
        ben = ChildProfile(id=uuid4(), first_name="Ben", last_name="Klein", household_id=household_id)
        fees = [_fee(mia, "120.00"), _fee(ben, "120.00")]
        tx = BankTransactionFactory.build(amount=Decimal("240.00"), payer_name="Klein")

        candidates = find_candidates(tx, fees, _context(mia, ben), DEFAULT_CONFIG)

        assert candidates[0].is_combined

    def test_paid_fees_are_skipped(self):
        child = _klein()
        paid = _fee(child, "45.00")
        paid.matched_amount = Decimal("45.00")
        paid.is_paid = True
        tx = BankTransactionFactory.build(amount=Decimal("45.00"), payer_name="Mia Klein")

        assert find_candidates(tx, [paid], _context(child), DEFAULT_CONFIG) == []


class TestRanking:
    def test_order_is_deterministic(self):
        berg = ChildProfile(id=uuid4(), first_name="Ida", last_name="berg")
        adler = ChildProfile(id=uuid4(), first_name="Ida", last_name="Adler")
        context = _context(berg, adler)
        early = _candidate(0.7, _fee(berg, "10.00", date(2024, 4, 1)))
        adler_may = _candidate(0.7, _fee(adler, "10.00"))
        berg_may = _candidate(0.7, _fee(berg, "10.00"))
        strongest = _candidate(0.9, _fee(berg, "10.00", date(2024, 12, 1)))
        expected = [strongest, early, adler_may, berg_may]

        shuffled = expected[:]
        for seed in range(5):
            random.Random(seed).shuffle(shuffled)
            assert sorted(shuffled, key=lambda c: ranking_key(c, context)) == expected


class TestDecide:
    def test_empty_is_unmatchable(self):
        assert isinstance(decide([], DEFAULT_CONFIG), Unmatchable)

    def test_clear_winner_is_auto_matched(self):
        child = _klein()
        top = _candidate(0.85, _fee(child, "10.00"))
        runner_up = _candidate(0.80, _fee(child, "20.00"))

        outcome = decide([top, runner_up], DEFAULT_CONFIG)

        assert isinstance(outcome, AutoMatched)
        assert outcome.candidate is top

    def test_close_runner_up_blocks_auto_match(self):
        child = _klein()
        top = _candidate(0.85, _fee(child, "10.00"))
        runner_up = _candidate(0.81, _fee(child, "20.00"))

        outcome = decide([top, runner_up], DEFAULT_CONFIG)

        assert isinstance(outcome, Suggested)
        assert outcome.candidates == (top, runner_up)

    def test_below_threshold_is_suggested(self):
        child = _klein()
        outcome = decide([_candidate(0.79, _fee(child, "10.00"))], DEFAULT_CONFIG)

        assert isinstance(outcome, Suggested)


class TestMatchTransaction:
    async def test_trusted_payer_is_auto_matched(self, db):
        child = await ChildFactory.create_async(db, first_name="Mia", last_name="Klein")
        fee = await FeeExpectationFactory.create_async(db, child_id=child.id, amount=Decimal("120.00"))
        tx = await BankTransactionFactory.create_async(db, amount=Decimal("120.00"), payer_name="X")
        await KnownIBANFactory.create_async(db, iban=tx.payer_iban, child_id=child.id)

        outcome = await match_transaction(db, tx)

        assert isinstance(outcome, AutoMatched)
        assert outcome.allocation is not None
        assert outcome.candidate.reason == ReasonCode.TRUSTED_IBAN
        assert tx.match_state == MatchState.MATCHED
        assert fee.is_paid

    async def test_dry_run_writes_nothing(self, db):
        child = await ChildFactory.create_async(db, first_name="Mia", last_name="Klein")
        fee = await FeeExpectationFactory.create_async(db, child_id=child.id, amount=Decimal("120.00"))
        tx = await BankTransactionFactory.create_async(db, amount=Decimal("120.00"), payer_name="X")
        await KnownIBANFactory.create_async(db, iban=tx.payer_iban, child_id=child.id)

        outcome = await match_transaction(db, tx, apply=False)

        assert isinstance(outcome, AutoMatched)
        assert outcome.allocation is None
        assert tx.match_state == MatchState.UNMATCHED
        assert not fee.is_paid

    async def test_stranger_is_unmatchable(self, db):
        child = await ChildFactory.create_async(db, first_name="Mia", last_name="Klein")
        await FeeExpectationFactory.create_async(db, child_id=child.id)
        tx = await BankTransactionFactory.create_async(db, payer_name="Someone Else")

        assert isinstance(await match_transaction(db, tx), Unmatchable)
