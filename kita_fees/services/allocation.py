"""Allocation of bank transactions to fee expectations."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from kita_fees.logger import get_logger, log_exception
from kita_fees.models import (
    FeeExpectation,
    MatchState,
    PaymentMatch,
    ReasonCode,
    TransactionWarning,
)
from kita_fees.services.anomaly import detect_after_allocation, resolve_allocation_warnings
from kita_fees.services.errors import (
    ConflictError,
    PartialBatchFailure,
    ReconciliationError,
    ValidationError,
)
from kita_fees.services.known_iban import upsert_trust
from kita_fees.services.ledger import (
    delete_transaction_row,
    get_fees,
    get_transaction,
    has_trust_history,
    list_allocations,
    load_scoring_context,
    refresh_batch_counts,
)
from kita_fees.services.scoring import load_reconciliation_config, score, score_combination

logger = get_logger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class AllocationSplit:
    """Part of a transaction assigned to one fee expectation."""

    expectation_id: UUID
    amount: Decimal


@dataclass
class AllocationResult:
    transaction_id: UUID
    allocations: list[PaymentMatch]
    total_allocated: Decimal
    overpayment: Decimal
    unallocated: Decimal
    match_state: MatchState
    warnings: list[TransactionWarning] = field(default_factory=list)

    @property
    def allocations_created(self) -> int:
        return len(self.allocations)


@dataclass
class UnmatchResult:
    transaction_id: UUID
    matches_removed: int
    transaction_deleted: bool
    warnings_resolved: int


@dataclass(frozen=True)
class MatchRequest:
    transaction_id: UUID
    expectation_id: UUID


@dataclass
class ConfirmOutcome:
    transaction_id: UUID
    expectation_id: UUID
    ok: bool
    already_matched: bool = False
    error: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "transaction_id": str(self.transaction_id),
            "expectation_id": str(self.expectation_id),
            "status": "confirmed" if self.ok else "failed",
            "already_matched": self.already_matched,
            "error": self.error,
        }


@dataclass
class ConfirmResult:
    outcomes: list[ConfirmOutcome]

    @property
    def confirmed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.ok)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.ok)


def plan_split(amount: Decimal, fees: Sequence[FeeExpectation]) -> list[AllocationSplit]:
    """Spread an amount over fees in due-date order.

    Every fee but the last receives what it still needs (as far as the amount
    goes); the last fee receives the rest, which may exceed what it needs.
    """
    ordered = sorted(fees, key=lambda fee: (fee.due_date, str(fee.id)))
    left = amount
    splits: list[AllocationSplit] = []
    for index, fee in enumerate(ordered):
        share = left if index == len(ordered) - 1 else min(fee.remaining_amount, left)
        splits.append(AllocationSplit(expectation_id=fee.id, amount=share))
        left -= share
    return splits


def single_fee_split(remaining: Decimal, fee: FeeExpectation) -> tuple[AllocationSplit, bool]:
    """Share of a transaction remainder for one staff-chosen fee.

    Returns the split and whether it records an overpayment. An open fee gets
    what it still needs, capped by the remainder; a paid fee gets the remainder.
    """
    if fee.remaining_amount > 0:
        return AllocationSplit(expectation_id=fee.id, amount=min(remaining, fee.remaining_amount)), False
    return AllocationSplit(expectation_id=fee.id, amount=remaining), True


def _validate_splits(splits: Sequence[AllocationSplit]) -> None:
    if not splits:
        raise ValidationError("At least one allocation is required")
    fee_ids = [split.expectation_id for split in splits]
    if len(set(fee_ids)) != len(fee_ids):
        raise ValidationError("Each fee expectation may appear only once per allocation")
    for split in splits:
        if split.amount is None or split.amount <= 0:
            raise ValidationError(f"Allocation amount for {split.expectation_id} must be positive")
        if split.amount != split.amount.quantize(CENT):
            raise ValidationError("Allocation amounts must not have more than two decimal places")


async def allocate(
    db: AsyncSession,
    transaction_id: UUID,
    splits: Sequence[AllocationSplit],
    *,
    matched_by: ReasonCode,
    confidence: float | None = None,
    allow_overpayment: bool = False,
    actor: str | None = None,
) -> AllocationResult:
    """Allocate parts of a transaction to fee expectations.

    All checks run before anything is written. Concurrent writers are detected
    through the row version of the transaction and of every fee.

    Raises:
        ValidationError: malformed request or a fee that cannot take the amount
        NotFoundError: unknown transaction or fee id
        ConflictError: the unallocated remainder shrank or a row changed concurrently
    """
    _validate_splits(splits)

    transaction = await get_transaction(db, transaction_id, for_update=True)
    if not transaction.is_active:
        raise ValidationError("Transaction has been dismissed or hidden")

    fees = await get_fees(db, [split.expectation_id for split in splits], for_update=True)
    existing = {allocation.expectation_id for allocation in await list_allocations(db, transaction.id)}
    already = [split.expectation_id for split in splits if split.expectation_id in existing]
    if already:
        raise ConflictError(f"Transaction is already allocated to fee expectation {already[0]}")

    total = sum((split.amount for split in splits), Decimal("0"))
    if total > transaction.amount:
        raise ValidationError(f"Allocations total {total} exceeds transaction amount {transaction.amount}")
    if total > transaction.remaining_amount:
        raise ConflictError(
            f"Allocations total {total} exceeds the unallocated {transaction.remaining_amount} of the transaction"
        )

    for split in splits:
        fee = fees[split.expectation_id]
        if fee.is_paid and not allow_overpayment:
            raise ValidationError(f"Fee expectation {fee.id} is already paid")
        if split.amount > fee.remaining_amount and not allow_overpayment:
            raise ValidationError(
                f"Allocation {split.amount} exceeds the remaining {fee.remaining_amount} of fee expectation {fee.id}"
            )

    previously_paid = {fee.id for fee in fees.values() if fee.is_paid}
    had_trust = await has_trust_history(db, transaction.payer_iban)

    now = datetime.now(UTC)
    created: list[PaymentMatch] = []
    for split in splits:
        fee = fees[split.expectation_id]
        allocation = PaymentMatch(
            transaction_id=transaction.id,
            expectation_id=fee.id,
            amount=split.amount,
            matched_by=matched_by,
            confidence=confidence,
            matched_at=now,
            matched_by_user=actor,
        )
        db.add(allocation)
        created.append(allocation)
        fee.matched_amount = (fee.matched_amount or Decimal("0")) + split.amount
        fee.is_paid = fee.matched_amount >= fee.amount
    transaction.allocated_amount = (transaction.allocated_amount or Decimal("0")) + total

    try:
        await db.flush()
    except (StaleDataError, IntegrityError) as exc:
        raise ConflictError("Transaction or fee changed concurrently; reload and retry") from exc

    touched = [fees[split.expectation_id] for split in splits]
    if transaction.payer_iban:
        for child_id in dict.fromkeys(fee.child_id for fee in touched):
            await upsert_trust(
                db,
                transaction.payer_iban,
                child_id,
                payer_name=transaction.payer_name,
                reason=f"matched:{matched_by.value}",
            )

    await refresh_batch_counts(db, transaction.import_batch_id)

    warnings = await detect_after_allocation(
        db,
        transaction,
        touched,
        previously_paid=previously_paid,
        had_trust=had_trust,
    )

    overpayment = sum(
        (max(fee.matched_amount - fee.amount, Decimal("0")) for fee in touched),
        Decimal("0"),
    )

    logger.info(
        "Payment allocated",
        transaction_id=str(transaction.id),
        fees=[str(fee.id) for fee in touched],
        total=str(total),
        matched_by=matched_by.value,
        confidence=confidence,
        match_state=transaction.match_state.value,
        warnings=len(warnings),
    )

    return AllocationResult(
        transaction_id=transaction.id,
        allocations=created,
        total_allocated=total,
        overpayment=overpayment,
        unallocated=transaction.remaining_amount,
        match_state=transaction.match_state,
        warnings=warnings,
    )


async def unmatch(
    db: AsyncSession,
    transaction_id: UUID,
    *,
    delete_transaction: bool = False,
    actor: str | None = None,
) -> UnmatchResult:
    """Reverse every allocation of a transaction, optionally deleting it.

    Raises:
        ConflictError: nothing to reverse (and no delete requested), or a row changed concurrently
    """
    transaction = await get_transaction(db, transaction_id, for_update=True)
    allocations = await list_allocations(db, transaction.id)
    if not allocations and not delete_transaction:
        raise ConflictError("Transaction has no allocations to undo")

    fees = await get_fees(db, [allocation.expectation_id for allocation in allocations], for_update=True)
    batch_id = transaction.import_batch_id
    resolved = 0
    try:
        for allocation in allocations:
            fee = fees[allocation.expectation_id]
            fee.matched_amount = fee.matched_amount - allocation.amount
            fee.is_paid = fee.matched_amount >= fee.amount
            await db.delete(allocation)

        if delete_transaction:
            await delete_transaction_row(db, transaction)
        else:
            transaction.allocated_amount = Decimal("0.00")
            resolved = await resolve_allocation_warnings(db, transaction.id, fees.keys(), actor=actor)
        await db.flush()
    except (StaleDataError, IntegrityError) as exc:
        raise ConflictError("Transaction or fee changed concurrently; reload and retry") from exc

    await refresh_batch_counts(db, batch_id)

    logger.info(
        "Transaction unmatched",
        transaction_id=str(transaction_id),
        matches_removed=len(allocations),
        transaction_deleted=delete_transaction,
        actor=actor,
    )
    return UnmatchResult(
        transaction_id=transaction_id,
        matches_removed=len(allocations),
        transaction_deleted=delete_transaction,
        warnings_resolved=resolved,
    )


async def _confirm_group(
    db: AsyncSession,
    transaction_id: UUID,
    expectation_ids: list[UUID],
    actor: str | None,
) -> set[UUID]:
    """Allocate one transaction to the fees a reviewer confirmed.

    Returns the fee ids that were already allocated (no-ops).
    """
    transaction = await get_transaction(db, transaction_id)
    existing = {allocation.expectation_id for allocation in await list_allocations(db, transaction.id)}
    new_ids = [fee_id for fee_id in expectation_ids if fee_id not in existing]
    if not new_ids:
        return set(expectation_ids)

    remaining = transaction.remaining_amount
    if remaining <= 0:
        raise ConflictError("Transaction is already fully allocated")

    fees = await get_fees(db, new_ids)
    ordered = [fees[fee_id] for fee_id in new_ids]
    context = await load_scoring_context(db, {fee.child_id for fee in ordered}, [transaction.payer_iban])
    config = load_reconciliation_config()

    if len(ordered) > 1:
        result = score_combination(transaction, ordered, context, config)
        matched_by = ReasonCode.COMBINED
        splits = plan_split(remaining, ordered)
        overpaying = True
    else:
        result = score(transaction, ordered[0], context, config)
        matched_by = result.reason or ReasonCode.MANUAL
        split, overpaying = single_fee_split(remaining, ordered[0])
        splits = [split]

    await allocate(
        db,
        transaction.id,
        splits,
        matched_by=matched_by,
        confidence=result.confidence or None,
        allow_overpayment=overpaying,
        actor=actor,
    )
    return set(expectation_ids) & existing


async def confirm_matches(
    db: AsyncSession,
    items: Iterable[MatchRequest],
    *,
    atomic: bool = False,
    actor: str | None = None,
) -> ConfirmResult:
    """Confirm suggested matches.

    Items are grouped per transaction and each group runs in its own savepoint,
    so one failing transaction does not undo the others. Confirming a pair that
    is already allocated is a no-op.

    Raises:
        PartialBatchFailure: ``atomic`` was requested and at least one item failed
    """
    groups: dict[UUID, list[UUID]] = {}
    requested: list[MatchRequest] = []
    for item in items:
        requested.append(item)
        fee_ids = groups.setdefault(item.transaction_id, [])
        if item.expectation_id not in fee_ids:
            fee_ids.append(item.expectation_id)

    group_errors: dict[UUID, str] = {}
    group_noops: dict[UUID, set[UUID]] = {}
    for transaction_id, fee_ids in groups.items():
        try:
            async with db.begin_nested():
                group_noops[transaction_id] = await _confirm_group(db, transaction_id, fee_ids, actor)
        except ReconciliationError as exc:
            log_exception(
                logger,
                exc,
                "Match confirmation failed",
                level="warning",
                include_traceback=False,
                transaction_id=str(transaction_id),
            )
            group_errors[transaction_id] = str(exc)

    outcomes = [
        ConfirmOutcome(
            transaction_id=item.transaction_id,
            expectation_id=item.expectation_id,
            ok=item.transaction_id not in group_errors,
            already_matched=item.expectation_id in group_noops.get(item.transaction_id, set()),
            error=group_errors.get(item.transaction_id),
        )
        for item in requested
    ]
    result = ConfirmResult(outcomes=outcomes)
    logger.info("Matches confirmed", confirmed=result.confirmed, failed=result.failed, atomic=atomic)

    if atomic and result.failed:
        raise PartialBatchFailure(outcomes)
    return result


async def create_manual_match(
    db: AsyncSession,
    transaction_id: UUID,
    expectation_id: UUID,
    *,
    actor: str | None = None,
) -> AllocationResult:
    """Bind a transaction to one fee chosen by staff.

    The fee receives what it still needs, capped by the unallocated part of the
    transaction. A fee that is already paid receives the whole remainder, which
    is recorded as an overpayment. Repeating the call is a no-op.
    """
    transaction = await get_transaction(db, transaction_id)
    for allocation in await list_allocations(db, transaction.id):
        if allocation.expectation_id == expectation_id:
            return AllocationResult(
                transaction_id=transaction.id,
                allocations=[],
                total_allocated=Decimal("0.00"),
                overpayment=Decimal("0.00"),
                unallocated=transaction.remaining_amount,
                match_state=transaction.match_state,
            )

    fees = await get_fees(db, [expectation_id])
    fee = fees[expectation_id]
    remaining = transaction.remaining_amount
    if remaining <= 0:
        raise ConflictError("Transaction is already fully allocated")

    split, overpaying = single_fee_split(remaining, fee)
    return await allocate(
        db,
        transaction.id,
        [split],
        matched_by=ReasonCode.MANUAL,
        allow_overpayment=overpaying,
        actor=actor,
    )
