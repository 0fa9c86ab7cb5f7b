"""Anomaly detection and warning resolution for reconciliation."""

from collections.abc import Iterable, Sequence
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from kita_fees.logger import get_logger
from kita_fees.models import (
    BankTransaction,
    FeeExpectation,
    FeeType,
    TransactionWarning,
    WarningStatus,
    WarningType,
)
from kita_fees.services.errors import ConflictError, NotFoundError, ValidationError
from kita_fees.services.ledger import get_fee, has_trust_history
from kita_fees.services.scoring import ReconciliationConfig, load_reconciliation_config

logger = get_logger(__name__)


async def _open_warning_exists(
    db: AsyncSession,
    *,
    transaction_id: UUID | None,
    expectation_id: UUID | None,
    warning_type: WarningType,
) -> bool:
    query = (
        select(func.count(TransactionWarning.id))
        .where(TransactionWarning.warning_type == warning_type)
        .where(TransactionWarning.status == WarningStatus.OPEN)
    )
    if transaction_id is None:
        query = query.where(TransactionWarning.transaction_id.is_(None))
    else:
        query = query.where(TransactionWarning.transaction_id == transaction_id)
    if expectation_id is None:
        query = query.where(TransactionWarning.expectation_id.is_(None))
    else:
        query = query.where(TransactionWarning.expectation_id == expectation_id)
    return (await db.execute(query)).scalar_one() > 0


async def raise_warning(
    db: AsyncSession,
    warning_type: WarningType,
    message: str,
    *,
    transaction_id: UUID | None = None,
    expectation_id: UUID | None = None,
    child_id: UUID | None = None,
    expected_amount: Decimal | None = None,
    actual_amount: Decimal | None = None,
) -> TransactionWarning | None:
    """Record a warning unless the same cause is already open.

    Returns the new warning, or None when an open one already exists.
    """
    if await _open_warning_exists(
        db,
        transaction_id=transaction_id,
        expectation_id=expectation_id,
        warning_type=warning_type,
    ):
        return None

    warning = TransactionWarning(
        transaction_id=transaction_id,
        expectation_id=expectation_id,
        child_id=child_id,
        warning_type=warning_type,
        message=message,
        expected_amount=expected_amount,
        actual_amount=actual_amount,
        status=WarningStatus.OPEN,
    )
    db.add(warning)
    await db.flush()
    logger.info(
        "Warning raised",
        warning_type=warning_type.value,
        transaction_id=str(transaction_id) if transaction_id else None,
        expectation_id=str(expectation_id) if expectation_id else None,
    )
    return warning


async def check_duplicate_window(
    db: AsyncSession,
    transaction: BankTransaction,
    config: ReconciliationConfig | None = None,
) -> TransactionWarning | None:
    """Flag another payment of the same amount from the same IBAN booked nearby."""
    if not transaction.payer_iban:
        return None
    config = config or load_reconciliation_config()
    window = timedelta(days=config.duplicate_window_days)
    result = await db.execute(
        select(BankTransaction)
        .where(BankTransaction.id != transaction.id)
        .where(BankTransaction.payer_iban == transaction.payer_iban)
        .where(BankTransaction.amount == transaction.amount)
        .where(BankTransaction.booking_date >= transaction.booking_date - window)
        .where(BankTransaction.booking_date <= transaction.booking_date + window)
        .where(BankTransaction.dismissed_at.is_(None))
        .order_by(BankTransaction.booking_date, BankTransaction.id)
        .limit(1)
    )
    other = result.scalar_one_or_none()
    if other is None:
        return None
    return await raise_warning(
        db,
        WarningType.DUPLICATE_PAYMENT,
        f"Another payment of {transaction.amount} from the same IBAN was booked on {other.booking_date.isoformat()}",
        transaction_id=transaction.id,
        actual_amount=transaction.amount,
    )


async def close_amount_warnings(db: AsyncSession, *criteria, note: str) -> int:
    """Resolve open amount mismatches that a later allocation has settled."""
    result = await db.execute(
        select(TransactionWarning)
        .where(TransactionWarning.warning_type == WarningType.AMOUNT_MISMATCH)
        .where(TransactionWarning.status == WarningStatus.OPEN)
        .where(*criteria)
    )
    now = datetime.now(UTC)
    count = 0
    for warning in result.scalars():
        warning.status = WarningStatus.RESOLVED
        warning.resolution_note = note
        warning.resolved_at = now
        count += 1
    if count:
        logger.info("Amount warnings closed", resolved=count, note=note)
    return count


async def detect_after_allocation(
    db: AsyncSession,
    transaction: BankTransaction,
    fees: Sequence[FeeExpectation],
    *,
    previously_paid: set[UUID],
    had_trust: bool,
    config: ReconciliationConfig | None = None,
) -> list[TransactionWarning]:
    """Inspect an allocation that was just written and raise warnings."""
    config = config or load_reconciliation_config()
    raised: list[TransactionWarning | None] = []

    for fee in fees:
        difference = fee.matched_amount - fee.amount
        if abs(difference) > config.amount_tolerance:
            direction = "overpaid" if difference > 0 else "underpaid"
            raised.append(
                await raise_warning(
                    db,
                    WarningType.AMOUNT_MISMATCH,
                    f"Fee {fee.period_label} {fee.fee_type.value} {direction} by {abs(difference)}",
                    transaction_id=transaction.id,
                    expectation_id=fee.id,
                    child_id=fee.child_id,
                    expected_amount=fee.amount,
                    actual_amount=fee.matched_amount,
                )
            )
        else:
            await close_amount_warnings(
                db,
                TransactionWarning.expectation_id == fee.id,
                note=f"Fee covered: {fee.matched_amount} of {fee.amount}",
            )

        if fee.id in previously_paid:
            raised.append(
                await raise_warning(
                    db,
                    WarningType.DUPLICATE_PAYMENT,
                    f"Fee {fee.period_label} {fee.fee_type.value} was already paid before this payment",
                    transaction_id=transaction.id,
                    expectation_id=fee.id,
                    child_id=fee.child_id,
                    expected_amount=fee.amount,
                    actual_amount=fee.matched_amount,
                )
            )

        if fee.fee_type != FeeType.REMINDER and _is_late(transaction.booking_date, fee.due_date, config):
            raised.append(
                await raise_warning(
                    db,
                    WarningType.LATE_PAYMENT,
                    f"Paid on {transaction.booking_date.isoformat()}, due {fee.due_date.isoformat()}",
                    transaction_id=transaction.id,
                    expectation_id=fee.id,
                    child_id=fee.child_id,
                    expected_amount=fee.amount,
                )
            )

    unallocated = transaction.remaining_amount
    if unallocated > config.amount_tolerance:
        raised.append(
            await raise_warning(
                db,
                WarningType.AMOUNT_MISMATCH,
                f"{unallocated} of the payment is not allocated to any fee",
                transaction_id=transaction.id,
                child_id=fees[0].child_id if fees else None,
                expected_amount=transaction.allocated_amount,
                actual_amount=transaction.amount,
            )
        )
    else:
        await close_amount_warnings(
            db,
            TransactionWarning.transaction_id == transaction.id,
            TransactionWarning.expectation_id.is_(None),
            note="Payment fully allocated",
        )

    if transaction.payer_iban and not had_trust:
        raised.append(
            await raise_warning(
                db,
                WarningType.UNKNOWN_IBAN,
                f"Matched a payment from {transaction.payer_iban}, which has no trust history",
                transaction_id=transaction.id,
                child_id=fees[0].child_id if fees else None,
            )
        )

    raised.append(await check_duplicate_window(db, transaction, config))
    return [warning for warning in raised if warning is not None]


async def detect_unmatched_anomalies(
    db: AsyncSession,
    transaction: BankTransaction,
    *,
    attempted: bool,
    config: ReconciliationConfig | None = None,
) -> list[TransactionWarning]:
    """Checks for a transaction the matcher could not auto-apply."""
    raised: list[TransactionWarning | None] = [await check_duplicate_window(db, transaction, config)]
    if attempted and transaction.payer_iban and not await has_trust_history(db, transaction.payer_iban):
        raised.append(
            await raise_warning(
                db,
                WarningType.UNKNOWN_IBAN,
                f"Suggested matches for {transaction.payer_iban}, which has no trust history",
                transaction_id=transaction.id,
            )
        )
    return [warning for warning in raised if warning is not None]


def _is_late(booking_date: date, due_date: date, config: ReconciliationConfig) -> bool:
    return booking_date > due_date + timedelta(days=config.late_grace_days)


async def resolve_allocation_warnings(
    db: AsyncSession,
    transaction_id: UUID,
    expectation_ids: Iterable[UUID],
    *,
    actor: str | None = None,
) -> int:
    """Close open warnings that described allocations which were just reversed."""
    fee_ids = list(expectation_ids)
    conditions = [
        (TransactionWarning.expectation_id.is_(None))
        & (TransactionWarning.warning_type == WarningType.AMOUNT_MISMATCH)
    ]
    if fee_ids:
        conditions.append(TransactionWarning.expectation_id.in_(fee_ids))
    result = await db.execute(
        select(TransactionWarning)
        .where(TransactionWarning.transaction_id == transaction_id)
        .where(TransactionWarning.status == WarningStatus.OPEN)
        .where(or_(*conditions))
    )
    now = datetime.now(UTC)
    count = 0
    for warning in result.scalars():
        warning.status = WarningStatus.RESOLVED
        warning.resolution_note = "Allocation reversed"
        warning.resolved_at = now
        warning.resolved_by = actor
        count += 1
    return count


async def get_warning(db: AsyncSession, warning_id: UUID) -> TransactionWarning:
    warning = await db.get(TransactionWarning, warning_id)
    if warning is None:
        raise NotFoundError("Warning", warning_id)
    return warning


async def list_warnings(
    db: AsyncSession,
    *,
    status: WarningStatus | None = WarningStatus.OPEN,
    warning_type: WarningType | None = None,
    transaction_id: UUID | None = None,
    child_id: UUID | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[TransactionWarning], int]:
    query = select(TransactionWarning)
    if status is not None:
        query = query.where(TransactionWarning.status == status)
    if warning_type is not None:
        query = query.where(TransactionWarning.warning_type == warning_type)
    if transaction_id is not None:
        query = query.where(TransactionWarning.transaction_id == transaction_id)
    if child_id is not None:
        query = query.where(TransactionWarning.child_id == child_id)

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()
    result = await db.execute(
        query.order_by(TransactionWarning.created_at.desc(), TransactionWarning.id).limit(limit).offset(offset)
    )
    return list(result.scalars()), total


async def dismiss_warning(
    db: AsyncSession,
    warning_id: UUID,
    *,
    note: str | None = None,
    actor: str | None = None,
) -> TransactionWarning:
    """Close a warning without action. Dismissing twice is a no-op."""
    warning = await get_warning(db, warning_id)
    if warning.status == WarningStatus.DISMISSED:
        return warning
    if warning.status == WarningStatus.RESOLVED:
        raise ConflictError("Warning is already resolved")

    warning.status = WarningStatus.DISMISSED
    warning.resolution_note = note
    warning.resolved_at = datetime.now(UTC)
    warning.resolved_by = actor
    await db.flush()
    logger.info("Warning dismissed", warning_id=str(warning.id), warning_type=warning.warning_type.value)
    return warning


async def resolve_warning(
    db: AsyncSession,
    warning_id: UUID,
    *,
    note: str | None = None,
    actor: str | None = None,
    today: date | None = None,
) -> tuple[TransactionWarning, FeeExpectation | None]:
    """Run the type-specific resolve action.

    LATE_PAYMENT charges a reminder fee chained to the late fee and marks the
    warning resolved. Resolving it again returns the same reminder.
    """
    warning = await get_warning(db, warning_id)
    if warning.status == WarningStatus.RESOLVED and warning.resolution_fee_id is not None:
        return warning, await get_fee(db, warning.resolution_fee_id)
    if warning.status != WarningStatus.OPEN:
        raise ConflictError(f"Warning is already {warning.status.value}")
    if warning.warning_type != WarningType.LATE_PAYMENT:
        raise ValidationError(f"{warning.warning_type.value} warnings have no resolve action; dismiss them instead")
    if warning.expectation_id is None:
        raise ValidationError("Warning does not reference a fee expectation")

    config = load_reconciliation_config()
    original = await get_fee(db, warning.expectation_id)
    amount = config.membership_late_fee_amount if original.fee_type == FeeType.MEMBERSHIP else config.late_fee_amount
    issued_on = today or datetime.now(UTC).date()

    reminder = FeeExpectation(
        child_id=original.child_id,
        fee_type=FeeType.REMINDER,
        year=original.year,
        month=original.month,
        amount=amount,
        due_date=issued_on + timedelta(days=config.late_fee_due_days),
        matched_amount=Decimal("0.00"),
        is_paid=False,
        reminder_for_id=original.id,
    )
    db.add(reminder)
    await db.flush()

    warning.status = WarningStatus.RESOLVED
    warning.resolution_note = note or f"Reminder fee of {amount} charged"
    warning.resolved_at = datetime.now(UTC)
    warning.resolved_by = actor
    warning.resolution_fee_id = reminder.id
    await db.flush()

    logger.info(
        "Late payment resolved with reminder fee",
        warning_id=str(warning.id),
        reminder_fee_id=str(reminder.id),
        amount=str(amount),
    )
    return warning, reminder
