"""Tests for warnings raised around allocations and their resolution."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from kita_fees.models import FeeType, ReasonCode, WarningStatus, WarningType
from kita_fees.services.allocation import AllocationSplit, allocate
from kita_fees.services.anomaly import (
    check_duplicate_window,
    detect_unmatched_anomalies,
    dismiss_warning,
    list_warnings,
    raise_warning,
    resolve_warning,
)
from kita_fees.services.errors import ConflictError, NotFoundError, ValidationError
from tests.factories import BankTransactionFactory, ChildFactory, FeeExpectationFactory, KnownIBANFactory


async def _late_payment(db, fee_type: FeeType = FeeType.CHILDCARE, amount: str = "120.00"):
    child = await ChildFactory.create_async(db, first_name="Mia", last_name="Klein")
    fee = await FeeExpectationFactory.create_async(
        db, child_id=child.id, fee_type=fee_type, amount=Decimal(amount), due_date=date(2024, 5, 1)
    )
    tx = await BankTransactionFactory.create_async(db, amount=Decimal(amount), booking_date=date(2024, 5, 10))
    result = await allocate(
        db, tx.id, [AllocationSplit(expectation_id=fee.id, amount=Decimal(amount))], matched_by=ReasonCode.MANUAL
    )
    late = [w for w in result.warnings if w.warning_type == WarningType.LATE_PAYMENT]
    assert len(late) == 1
    return fee, late[0]


class TestDetection:
    async def test_on_time_payment_with_trusted_iban_is_clean(self, db):
        child = await ChildFactory.create_async(db)
        fee = await FeeExpectationFactory.create_async(db, child_id=child.id)
        tx = await BankTransactionFactory.create_async(db, booking_date=date(2024, 5, 1))
        await KnownIBANFactory.create_async(db, iban=tx.payer_iban, child_id=child.id)

        result = await allocate(
            db, tx.id, [AllocationSplit(expectation_id=fee.id, amount=Decimal("120.00"))], matched_by=ReasonCode.MANUAL
        )

        assert result.warnings == []

    async def test_late_payment_references_the_fee(self, db):
        fee, warning = await _late_payment(db)

        assert warning.expectation_id == fee.id
        assert warning.child_id == fee.child_id
        assert warning.status == WarningStatus.OPEN

    async def test_reminder_fees_are_never_late(self, db):
        child = await ChildFactory.create_async(db)
        reminder = await FeeExpectationFactory.create_async(
            db, child_id=child.id, fee_type=FeeType.REMINDER, amount=Decimal("10.00"), due_date=date(2024, 5, 1)
        )
        tx = await BankTransactionFactory.create_async(db, amount=Decimal("10.00"), booking_date=date(2024, 7, 1))

        result = await allocate(
            db, tx.id, [AllocationSplit(expectation_id=reminder.id, amount=Decimal("10.00"))], matched_by=ReasonCode.MANUAL
        )

        assert WarningType.LATE_PAYMENT not in {w.warning_type for w in result.warnings}

    async def test_duplicate_within_window(self, db):
        first = await BankTransactionFactory.create_async(
            db, payer_iban="DE44500105175407324931", booking_date=date(2024, 5, 1)
        )
        second = await BankTransactionFactory.create_async(
            db, payer_iban="DE44500105175407324931", booking_date=date(2024, 5, 4)
        )
        far = await BankTransactionFactory.create_async(
            db, payer_iban="DE44500105175407324931", booking_date=date(2024, 6, 20)
        )

        warning = await check_duplicate_window(db, second)

        assert warning is not None
        assert warning.warning_type == WarningType.DUPLICATE_PAYMENT
        assert warning.transaction_id == second.id
        assert first.booking_date.isoformat() in warning.message
        assert await check_duplicate_window(db, far) is None

    async def test_same_cause_is_raised_once(self, db):
        tx = await BankTransactionFactory.create_async(db)

        first = await raise_warning(db, WarningType.UNKNOWN_IBAN, "first", transaction_id=tx.id)
        second = await raise_warning(db, WarningType.UNKNOWN_IBAN, "again", transaction_id=tx.id)

        assert first is not None
        assert second is None
        items, total = await list_warnings(db, transaction_id=tx.id)
        assert total == 1
        assert items[0].message == "first"

    async def test_later_payment_closes_the_underpaid_warning(self, db):
        child = await ChildFactory.create_async(db)
        fee = await FeeExpectationFactory.create_async(db, child_id=child.id, amount=Decimal("120.00"))
        first = await BankTransactionFactory.create_async(db, amount=Decimal("100.00"), booking_date=date(2024, 4, 20))
        second = await BankTransactionFactory.create_async(db, amount=Decimal("20.00"), booking_date=date(2024, 4, 25))

        partial = await allocate(
            db, first.id, [AllocationSplit(expectation_id=fee.id, amount=Decimal("100.00"))], matched_by=ReasonCode.MANUAL
        )
        underpaid = [w for w in partial.warnings if w.warning_type == WarningType.AMOUNT_MISMATCH]
        assert len(underpaid) == 1
        assert underpaid[0].expectation_id == fee.id

        await allocate(
            db, second.id, [AllocationSplit(expectation_id=fee.id, amount=Decimal("20.00"))], matched_by=ReasonCode.MANUAL
        )

        assert fee.is_paid
        assert underpaid[0].status == WarningStatus.RESOLVED
        assert underpaid[0].resolved_at is not None
        open_mismatches, total = await list_warnings(db, warning_type=WarningType.AMOUNT_MISMATCH)
        assert total == 0
        assert open_mismatches == []

    async def test_unmatched_payment_from_unknown_iban(self, db):
        tx = await BankTransactionFactory.create_async(db)

        attempted = await detect_unmatched_anomalies(db, tx, attempted=True)
        untried = await detect_unmatched_anomalies(db, tx, attempted=False)

        assert [w.warning_type for w in attempted] == [WarningType.UNKNOWN_IBAN]
        assert untried == []


class TestResolve:
    async def test_late_payment_charges_a_reminder_fee(self, db):
        fee, warning = await _late_payment(db)

        resolved, reminder = await resolve_warning(db, warning.id, actor="kassenwart", today=date(2024, 6, 1))

        assert resolved.status == WarningStatus.RESOLVED
        assert resolved.resolved_by == "kassenwart"
        assert resolved.resolution_fee_id == reminder.id
        assert reminder.fee_type == FeeType.REMINDER
        assert reminder.amount == Decimal("10.00")
        assert reminder.reminder_for_id == fee.id
        assert reminder.child_id == fee.child_id
        assert reminder.due_date == date(2024, 6, 15)
        assert not reminder.is_paid

    async def test_membership_reminder_is_cheaper(self, db):
        _, warning = await _late_payment(db, fee_type=FeeType.MEMBERSHIP, amount="30.00")

        _, reminder = await resolve_warning(db, warning.id)

        assert reminder.amount == Decimal("5.00")

    async def test_resolving_twice_returns_the_same_reminder(self, db):
        _, warning = await _late_payment(db)

        _, first = await resolve_warning(db, warning.id)
        _, second = await resolve_warning(db, warning.id)

        assert first.id == second.id
        items, total = await list_warnings(db, status=WarningStatus.RESOLVED, warning_type=WarningType.LATE_PAYMENT)
        assert total == 1

    async def test_other_types_have_no_resolve_action(self, db):
        tx = await BankTransactionFactory.create_async(db)
        warning = await raise_warning(db, WarningType.UNKNOWN_IBAN, "unknown", transaction_id=tx.id)

        with pytest.raises(ValidationError):
            await resolve_warning(db, warning.id)

    async def test_unknown_warning(self, db):
        with pytest.raises(NotFoundError):
            await resolve_warning(db, uuid4())


class TestDismiss:
    async def test_dismiss_is_idempotent(self, db):
        tx = await BankTransactionFactory.create_async(db)
        warning = await raise_warning(db, WarningType.UNKNOWN_IBAN, "unknown", transaction_id=tx.id)

        first = await dismiss_warning(db, warning.id, note="Oma zahlt", actor="kassenwart")
        second = await dismiss_warning(db, warning.id, note="ignored")

        assert first.status == WarningStatus.DISMISSED
        assert second.resolution_note == "Oma zahlt"
        assert second.resolved_by == "kassenwart"

    async def test_resolved_warning_cannot_be_dismissed(self, db):
        _, warning = await _late_payment(db)
        await resolve_warning(db, warning.id)

        with pytest.raises(ConflictError):
            await dismiss_warning(db, warning.id)

    async def test_dismissed_late_payment_cannot_be_resolved(self, db):
        _, warning = await _late_payment(db)
        await dismiss_warning(db, warning.id)

        with pytest.raises(ConflictError):
            await resolve_warning(db, warning.id)

    async def test_dismissed_warnings_leave_the_open_list(self, db):
        tx = await BankTransactionFactory.create_async(db)
        warning = await raise_warning(db, WarningType.UNKNOWN_IBAN, "unknown", transaction_id=tx.id)
        await dismiss_warning(db, warning.id)

        _, open_total = await list_warnings(db)
        _, dismissed_total = await list_warnings(db, status=WarningStatus.DISMISSED)

        assert open_total == 0
        assert dismissed_total == 1
