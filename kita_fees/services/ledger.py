"""Ledger store queries shared by the reconciliation services."""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Select, and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from kita_fees.models import (
    BankTransaction,
    Child,
    FeeExpectation,
    ImportBatch,
    KnownIBAN,
    KnownIBANStatus,
    MatchState,
    Parent,
    PaymentMatch,
    TransactionWarning,
)
from kita_fees.services.errors import ConflictError, NotFoundError
from kita_fees.services.scoring import ChildProfile, PersonName, ScoringContext, normalize_iban


class TransactionSortField(str, Enum):
    BOOKING_DATE = "booking_date"
    AMOUNT = "amount"
    PAYER_NAME = "payer_name"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


_SORT_COLUMNS = {
    TransactionSortField.BOOKING_DATE: BankTransaction.booking_date,
    TransactionSortField.AMOUNT: BankTransaction.amount,
    TransactionSortField.PAYER_NAME: BankTransaction.payer_name,
}


async def get_transaction(db: AsyncSession, transaction_id: UUID, *, for_update: bool = False) -> BankTransaction:
    query = select(BankTransaction).where(BankTransaction.id == transaction_id)
    if for_update:
        query = query.with_for_update()
    try:
        result = await db.execute(query)
    except StaleDataError as exc:
        raise ConflictError("Transaction changed concurrently; reload and retry") from exc
    transaction = result.scalar_one_or_none()
    if transaction is None:
        raise NotFoundError("Transaction", transaction_id)
    return transaction


async def get_fees(
    db: AsyncSession,
    fee_ids: Iterable[UUID],
    *,
    for_update: bool = False,
) -> dict[UUID, FeeExpectation]:
    """Load fee expectations by id; every id must exist."""
    wanted = list(dict.fromkeys(fee_ids))
    if not wanted:
        return {}
    query = select(FeeExpectation).where(FeeExpectation.id.in_(wanted)).order_by(FeeExpectation.id)
    if for_update:
        query = query.with_for_update()
    try:
        result = await db.execute(query)
    except StaleDataError as exc:
        raise ConflictError("Fee expectation changed concurrently; reload and retry") from exc
    fees = {fee.id: fee for fee in result.scalars()}
    for fee_id in wanted:
        if fee_id not in fees:
            raise NotFoundError("Fee expectation", fee_id)
    return fees


async def get_fee(db: AsyncSession, fee_id: UUID) -> FeeExpectation:
    fees = await get_fees(db, [fee_id])
    return fees[fee_id]


async def list_open_fees(db: AsyncSession, *, child_id: UUID | None = None) -> list[FeeExpectation]:
    """Fee expectations that are not fully paid, oldest due date first."""
    query = select(FeeExpectation).where(FeeExpectation.is_paid.is_(False))
    if child_id is not None:
        query = query.where(FeeExpectation.child_id == child_id)
    result = await db.execute(query.order_by(FeeExpectation.due_date, FeeExpectation.id))
    return list(result.scalars())


async def delete_fee_expectation(db: AsyncSession, fee_id: UUID) -> None:
    """Delete a fee expectation that no payment has touched yet."""
    fee = await get_fee(db, fee_id)
    if fee.matched_amount and fee.matched_amount > 0:
        raise ConflictError("Fee expectation has allocated payments; unmatch them first")
    await db.delete(fee)
    await db.flush()


async def list_allocations(db: AsyncSession, transaction_id: UUID) -> list[PaymentMatch]:
    result = await db.execute(
        select(PaymentMatch)
        .where(PaymentMatch.transaction_id == transaction_id)
        .order_by(PaymentMatch.matched_at, PaymentMatch.id)
    )
    return list(result.scalars())


async def load_scoring_context(
    db: AsyncSession,
    child_ids: Iterable[UUID],
    ibans: Iterable[str | None] = (),
) -> ScoringContext:
    """Read roster profiles and trust entries needed to score a transaction."""
    wanted_children = set(child_ids)
    children: dict[UUID, ChildProfile] = {}
    if wanted_children:
        child_rows = (await db.execute(select(Child).where(Child.id.in_(wanted_children)))).scalars().all()
        household_ids = {child.household_id for child in child_rows if child.household_id is not None}
        parents_by_household: dict[UUID, list[PersonName]] = {}
        if household_ids:
            parent_rows = await db.execute(
                select(Parent).where(Parent.household_id.in_(household_ids)).order_by(Parent.last_name, Parent.id)
            )
            for parent in parent_rows.scalars():
                parents_by_household.setdefault(parent.household_id, []).append(
                    PersonName(first_name=parent.first_name, last_name=parent.last_name)
                )
        for child in child_rows:
            children[child.id] = ChildProfile(
                id=child.id,
                first_name=child.first_name,
                last_name=child.last_name,
                member_number=child.member_number,
                household_id=child.household_id,
                parents=tuple(parents_by_household.get(child.household_id, ())),
            )

    keys = {key for key in (normalize_iban(iban) for iban in ibans) if key}
    trusted_children: dict[str, set[UUID]] = {}
    trusted_households: dict[str, set[UUID]] = {}
    if keys:
        trust_rows = await db.execute(
            select(KnownIBAN)
            .where(KnownIBAN.iban.in_(keys))
            .where(KnownIBAN.status == KnownIBANStatus.TRUSTED)
        )
        for entry in trust_rows.scalars():
            if entry.child_id is not None:
                trusted_children.setdefault(entry.iban, set()).add(entry.child_id)
            if entry.household_id is not None:
                trusted_households.setdefault(entry.iban, set()).add(entry.household_id)

    return ScoringContext(
        children=children,
        trusted_children={iban: frozenset(ids) for iban, ids in trusted_children.items()},
        trusted_households={iban: frozenset(ids) for iban, ids in trusted_households.items()},
    )


async def get_blacklist_entry(db: AsyncSession, iban: str | None) -> KnownIBAN | None:
    key = normalize_iban(iban)
    if key is None:
        return None
    result = await db.execute(
        select(KnownIBAN)
        .where(KnownIBAN.iban == key)
        .where(KnownIBAN.status == KnownIBANStatus.BLACKLISTED)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_blacklisted_ibans(db: AsyncSession) -> set[str]:
    result = await db.execute(select(KnownIBAN.iban).where(KnownIBAN.status == KnownIBANStatus.BLACKLISTED))
    return set(result.scalars())


async def has_trust_history(db: AsyncSession, iban: str | None, *, child_id: UUID | None = None) -> bool:
    key = normalize_iban(iban)
    if key is None:
        return False
    query = (
        select(func.count(KnownIBAN.id))
        .where(KnownIBAN.iban == key)
        .where(KnownIBAN.status == KnownIBANStatus.TRUSTED)
    )
    if child_id is not None:
        query = query.where(KnownIBAN.child_id == child_id)
    return (await db.execute(query)).scalar_one() > 0


async def transaction_exists(
    db: AsyncSession,
    *,
    booking_date: date,
    payer_iban: str | None,
    amount: Decimal,
    description: str | None,
) -> bool:
    """Duplicate check used by import (dismissed rows count too)."""
    query = (
        select(func.count(BankTransaction.id))
        .where(BankTransaction.booking_date == booking_date)
        .where(BankTransaction.amount == amount)
    )
    if payer_iban is None:
        query = query.where(BankTransaction.payer_iban.is_(None))
    else:
        query = query.where(BankTransaction.payer_iban == payer_iban)
    if description is None:
        query = query.where(BankTransaction.description.is_(None))
    else:
        query = query.where(BankTransaction.description == description)
    return (await db.execute(query)).scalar_one() > 0


def _state_condition(state: MatchState):
    if state is MatchState.UNMATCHED:
        return BankTransaction.allocated_amount <= 0
    if state is MatchState.PARTIALLY_MATCHED:
        return and_(BankTransaction.allocated_amount > 0, BankTransaction.allocated_amount < BankTransaction.amount)
    return BankTransaction.allocated_amount >= BankTransaction.amount


def active_transactions(*states: MatchState) -> Select:
    """Transactions not dismissed or hidden, optionally restricted to match states."""
    query = (
        select(BankTransaction)
        .where(BankTransaction.dismissed_at.is_(None))
        .where(BankTransaction.hidden_at.is_(None))
    )
    if states:
        query = query.where(or_(*(_state_condition(state) for state in states)))
    return query


def _search_condition(search: str):
    safe = search.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    pattern = f"%{safe}%"
    return or_(
        BankTransaction.payer_name.ilike(pattern, escape="\\"),
        BankTransaction.payer_iban.ilike(pattern.replace(" ", ""), escape="\\"),
        BankTransaction.description.ilike(pattern, escape="\\"),
    )


async def list_transactions(
    db: AsyncSession,
    *,
    states: Iterable[MatchState],
    search: str | None = None,
    sort_by: TransactionSortField = TransactionSortField.BOOKING_DATE,
    sort_dir: SortDirection = SortDirection.DESC,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[BankTransaction], int]:
    """Page through active transactions; returns (items, total)."""
    query = active_transactions(*states)
    if search and search.strip():
        query = query.where(_search_condition(search))

    total_result = await db.execute(select(func.count()).select_from(query.subquery()))
    total = total_result.scalar_one()

    column = _SORT_COLUMNS[sort_by]
    ordering = column.asc() if sort_dir is SortDirection.ASC else column.desc()
    result = await db.execute(query.order_by(ordering, BankTransaction.id).limit(limit).offset(offset))
    return list(result.scalars()), total


async def refresh_batch_counts(db: AsyncSession, batch_id: UUID | None) -> None:
    """Recount fully matched transactions of an import batch."""
    if batch_id is None:
        return
    batch = await db.get(ImportBatch, batch_id)
    if batch is None:
        return
    matched = await db.execute(
        select(func.count(BankTransaction.id))
        .where(BankTransaction.import_batch_id == batch_id)
        .where(_state_condition(MatchState.MATCHED))
    )
    batch.matched_count = matched.scalar_one()


async def delete_transaction_row(db: AsyncSession, transaction: BankTransaction) -> None:
    """Hard-delete a transaction together with its allocations and warnings."""
    await db.execute(delete(PaymentMatch).where(PaymentMatch.transaction_id == transaction.id))
    await db.execute(delete(TransactionWarning).where(TransactionWarning.transaction_id == transaction.id))
    await db.delete(transaction)


@dataclass
class TransactionStats:
    unmatched: int
    partially_matched: int
    matched: int
    dismissed: int
    hidden: int
    unallocated_amount: Decimal

    @property
    def total_active(self) -> int:
        return self.unmatched + self.partially_matched + self.matched


async def transaction_stats(db: AsyncSession) -> TransactionStats:
    """Counts per match state for the review dashboard."""
    counts: dict[MatchState, int] = {}
    for state in MatchState:
        query = select(func.count()).select_from(active_transactions(state).subquery())
        counts[state] = (await db.execute(query)).scalar_one()

    dismissed = await db.execute(
        select(func.count(BankTransaction.id)).where(BankTransaction.dismissed_at.is_not(None))
    )
    hidden = await db.execute(
        select(func.count(BankTransaction.id))
        .where(BankTransaction.hidden_at.is_not(None))
        .where(BankTransaction.dismissed_at.is_(None))
    )
    open_amount = await db.execute(
        select(func.coalesce(func.sum(BankTransaction.amount - BankTransaction.allocated_amount), 0))
        .where(BankTransaction.dismissed_at.is_(None))
        .where(BankTransaction.hidden_at.is_(None))
    )
    return TransactionStats(
        unmatched=counts[MatchState.UNMATCHED],
        partially_matched=counts[MatchState.PARTIALLY_MATCHED],
        matched=counts[MatchState.MATCHED],
        dismissed=dismissed.scalar_one(),
        hidden=hidden.scalar_one(),
        unallocated_amount=Decimal(str(open_amount.scalar_one())).quantize(Decimal("0.01")),
    )
