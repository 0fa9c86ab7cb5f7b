"""Tests for statement import, rescans and suggestion lookups."""

from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import update

from kita_fees.models import (
    BankTransaction,
    FeeType,
    ImportBatch,
    KnownIBANStatus,
    MatchState,
    ReasonCode,
    WarningType,
)
from kita_fees.services import importer
from kita_fees.services.allocation import MatchRequest, confirm_matches
from kita_fees.services.anomaly import list_warnings
from kita_fees.services.errors import NotFoundError, ValidationError
from kita_fees.services.importer import (
    child_suggestions,
    import_statement,
    list_import_batches,
    partition_by_payer,
    rescan,
    suggestions_for_transaction,
)
from kita_fees.services.ledger import list_allocations, list_transactions
from tests.factories import BankTransactionFactory, ChildFactory, FeeExpectationFactory, KnownIBANFactory

KLEIN_IBAN = "DE44500105175407324931"
SPAM_IBAN = "DE75512108001245126199"


def _row(**overrides) -> dict:
    row = {
        "booking_date": "2024-05-02",
        "amount": "120.00",
        "payer_name": "Unbekannt",
        "payer_iban": "DE11 5204 0021 0000 0000 01",
        "description": "Spende",
    }
    row.update(overrides)
    return row


class TestPartitionByPayer:
    def test_groups_by_iban_in_first_appearance_order(self):
        a_late = BankTransactionFactory.build(payer_iban="A", booking_date=date(2024, 5, 3))
        b = BankTransactionFactory.build(payer_iban="B", booking_date=date(2024, 5, 1))
        a_early = BankTransactionFactory.build(payer_iban="A", booking_date=date(2024, 5, 2))
        cash_1 = BankTransactionFactory.build(payer_iban=None, booking_date=date(2024, 5, 5))
        cash_2 = BankTransactionFactory.build(payer_iban=None, booking_date=date(2024, 5, 4))

        ordered = partition_by_payer([a_late, b, a_early, cash_1, cash_2])

        assert ordered == [a_early, a_late, b, cash_1, cash_2]


class TestImportStatement:
    async def test_collective_payment_is_suggested_then_confirmed(self, db):
        child = await ChildFactory.create_async(db, first_name="Mia", last_name="Klein")
        childcare = await FeeExpectationFactory.create_async(db, child_id=child.id, amount=Decimal("120.00"))
        food = await FeeExpectationFactory.create_async(
            db, child_id=child.id, fee_type=FeeType.FOOD, amount=Decimal("45.40")
        )

        result = await import_statement(
            db,
            "mai.csv",
            [_row(amount="165.40", payer_name="Klein", payer_iban=KLEIN_IBAN, description="Kita Mai")],
        )

        assert result.imported == 1
        assert result.auto_matched == 0
        assert len(result.suggestions) == 1
        suggestion = result.suggestions[0]
        top = suggestion.candidates[0]
        assert top.reason == ReasonCode.COMBINED
        assert set(top.fee_ids) == {childcare.id, food.id}
        assert suggestion.transaction.match_state == MatchState.UNMATCHED
        _, unknown = await list_warnings(db, warning_type=WarningType.UNKNOWN_IBAN)
        assert unknown == 1

        tx_id = suggestion.transaction.id
        confirmed = await confirm_matches(
            db, [MatchRequest(transaction_id=tx_id, expectation_id=fee_id) for fee_id in top.fee_ids]
        )

        assert confirmed.confirmed == 2
        assert childcare.is_paid and food.is_paid
        assert suggestion.transaction.match_state == MatchState.MATCHED

    async def test_trusted_overpayment_is_auto_matched_with_warning(self, db):
        child = await ChildFactory.create_async(db, first_name="Mia", last_name="Klein")
        food = await FeeExpectationFactory.create_async(
            db, child_id=child.id, fee_type=FeeType.FOOD, amount=Decimal("45.40"), due_date=date(2024, 5, 1)
        )
        await KnownIBANFactory.create_async(db, iban=KLEIN_IBAN, child_id=child.id)

        result = await import_statement(
            db,
            "mai.csv",
            [
                _row(
                    booking_date="2024-05-01",
                    amount="50.00",
                    payer_name="Anna Klein",
                    payer_iban="DE44 5001 0517 5407 3249 31",
                    description="Essensgeld Mai",
                )
            ],
        )

        assert result.auto_matched == 1
        assert result.suggestions == []
        assert food.is_paid
        assert food.matched_amount == Decimal("50.00")
        items, total = await list_warnings(db, warning_type=WarningType.AMOUNT_MISMATCH)
        assert total == 1
        assert "4.60" in items[0].message
        assert items[0].expectation_id == food.id

        matched, _ = await list_transactions(db, states=[MatchState.MATCHED])
        assert [tx.payer_iban for tx in matched] == [KLEIN_IBAN]

        batch = await db.get(ImportBatch, result.batch_id)
        assert batch.matched_count == 1

    async def test_invalid_duplicate_and_blacklisted_rows(self, db):
        await BankTransactionFactory.create_async(
            db, booking_date=date(2024, 4, 28), amount=Decimal("120.00"), payer_iban="DE89370400440532999999"
        )
        await KnownIBANFactory.create_async(db, iban=SPAM_IBAN, status=KnownIBANStatus.BLACKLISTED)
        rows = [
            {"booking_date": "2024-05-02", "payer_name": "No Amount"},
            _row(amount="-20.00"),
            _row(amount="0"),
            _row(amount="10.001"),
            _row(),
            _row(),
            _row(booking_date="2024-04-28", payer_iban="DE89370400440532999999", description=""),
            _row(payer_iban="de75 5121 0800 1245 1261 99"),
        ]

        result = await import_statement(db, "april.csv", rows, actor="kassenwart")

        assert result.total_rows == 8
        assert result.imported == 1
        assert result.skipped == 6
        assert result.blacklisted == 1

        batch = await db.get(ImportBatch, result.batch_id)
        assert batch.transaction_count == 1
        assert batch.date_from == date(2024, 5, 2)
        assert batch.date_to == date(2024, 5, 2)
        assert batch.imported_by == "kassenwart"

    async def test_reimport_skips_every_row(self, db):
        rows = [_row(), _row(amount="45.40", description="Essen")]

        first = await import_statement(db, "mai.csv", rows)
        second = await import_statement(db, "mai.csv", rows)

        assert first.imported == 2
        assert second.imported == 0
        assert second.skipped == 2
        batches = await list_import_batches(db)
        assert len(batches) == 2


class TestRescan:
    async def test_new_trust_lets_rescan_auto_match(self, db):
        child = await ChildFactory.create_async(db, first_name="Mia", last_name="Klein")
        fee = await FeeExpectationFactory.create_async(db, child_id=child.id)
        tx = await BankTransactionFactory.create_async(db, payer_name="Nobody", payer_iban=KLEIN_IBAN)
        await KnownIBANFactory.create_async(db, iban=SPAM_IBAN, status=KnownIBANStatus.BLACKLISTED)
        await BankTransactionFactory.create_async(db, payer_name="Mia Klein", payer_iban=SPAM_IBAN)
        await BankTransactionFactory.create_async(db, payer_name="Mia Klein", hidden_at=datetime.now(UTC))

        before = await rescan(db)
        assert before.scanned == 1
        assert before.auto_matched == 0

        await KnownIBANFactory.create_async(db, iban=KLEIN_IBAN, child_id=child.id)
        after = await rescan(db)

        assert after.scanned == 1
        assert after.auto_matched == 1
        assert after.new_matches == 1
        assert after.conflicts == 0
        assert tx.match_state == MatchState.MATCHED
        assert fee.is_paid

        assert (await rescan(db)).scanned == 0

    async def test_payment_matched_elsewhere_mid_rescan_is_a_conflict(self, db, monkeypatch):
        child = await ChildFactory.create_async(db, first_name="Mia", last_name="Klein")
        fee = await FeeExpectationFactory.create_async(db, child_id=child.id)
        tx = await BankTransactionFactory.create_async(db, payer_name="Nobody", payer_iban=KLEIN_IBAN)
        await KnownIBANFactory.create_async(db, iban=KLEIN_IBAN, child_id=child.id)
        match_one = importer._match_one
        transactions = BankTransaction.__table__

        async def staff_confirms_first(session, transaction, **kwargs):
            # another worker allocates the payment after the rescan listed it
            await session.execute(
                update(transactions)
                .where(transactions.c.id == transaction.id)
                .values(allocated_amount=transaction.amount, version=transactions.c.version + 1)
            )
            return await match_one(session, transaction, **kwargs)

        monkeypatch.setattr(importer, "_match_one", staff_confirms_first)
        result = await rescan(db)

        assert result.scanned == 1
        assert result.conflicts == 1
        assert result.auto_matched == 0
        assert result.new_matches == 0
        await db.refresh(fee)
        await db.refresh(tx)
        assert fee.matched_amount == Decimal("0.00")
        assert not fee.is_paid
        assert tx.allocated_amount == Decimal("120.00")
        assert await list_allocations(db, tx.id) == []


class TestSuggestions:
    async def test_ranked_candidates_for_one_transaction(self, db):
        child = await ChildFactory.create_async(db, first_name="Mia", last_name="Klein")
        fee = await FeeExpectationFactory.create_async(db, child_id=child.id)
        tx = await BankTransactionFactory.create_async(db, payer_name="Mia Klein")

        candidates = await suggestions_for_transaction(db, tx.id)

        assert candidates[0].fee_ids == (fee.id,)
        assert candidates[0].reason == ReasonCode.NAME
        assert candidates[0].confidence == pytest.approx(0.71)

    async def test_matched_transaction_has_none(self, db):
        tx = await BankTransactionFactory.create_async(db, allocated_amount=Decimal("120.00"))

        assert await suggestions_for_transaction(db, tx.id) == []

    async def test_hidden_transaction_is_rejected(self, db):
        tx = await BankTransactionFactory.create_async(db, hidden_at=datetime.now(UTC))

        with pytest.raises(ValidationError):
            await suggestions_for_transaction(db, tx.id)

    async def test_child_view_keeps_confident_payments(self, db):
        child = await ChildFactory.create_async(db, first_name="Mia", last_name="Klein")
        await FeeExpectationFactory.create_async(db, child_id=child.id)
        likely = await BankTransactionFactory.create_async(db, payer_name="Mia Klein")
        await BankTransactionFactory.create_async(db, payer_name="Klein", amount=Decimal("77.00"))
        await BankTransactionFactory.create_async(db, payer_name="Someone Else")

        found = await child_suggestions(db, child.id)

        assert [suggestion.transaction.id for suggestion in found] == [likely.id]
        assert len(await child_suggestions(db, child.id, min_confidence=0.3)) == 2

    async def test_child_view_unknown_child(self, db):
        with pytest.raises(NotFoundError):
            await child_suggestions(db, uuid4())
