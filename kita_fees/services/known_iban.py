"""IBAN trust list and blacklist management."""

from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from kita_fees.logger import get_logger
from kita_fees.models import (
    BankTransaction,
    Child,
    FeeExpectation,
    KnownIBAN,
    KnownIBANStatus,
    MatchState,
    PaymentMatch,
)
from kita_fees.services.errors import ConflictError, NotFoundError, ValidationError
from kita_fees.services.ledger import active_transactions, get_blacklist_entry, get_transaction
from kita_fees.services.scoring import normalize_iban

logger = get_logger(__name__)


@dataclass
class DismissResult:
    iban: str
    transactions_removed: int
    blacklist_entry_id: UUID


@dataclass
class TrustedIBANSummary:
    iban: str
    payer_name: str | None
    reason: str | None
    created_at: datetime
    transaction_count: int


def _require_iban(iban: str | None) -> str:
    key = normalize_iban(iban)
    if key is None:
        raise ValidationError("IBAN must not be empty")
    return key


async def upsert_trust(
    db: AsyncSession,
    iban: str,
    child_id: UUID,
    *,
    payer_name: str | None = None,
    reason: str | None = None,
) -> KnownIBAN | None:
    """Trust an IBAN for a child. Blacklisted IBANs are never trusted.

    Returns the trust entry, or None when the IBAN is blacklisted.
    """
    key = _require_iban(iban)
    if await get_blacklist_entry(db, key) is not None:
        return None

    result = await db.execute(
        select(KnownIBAN)
        .where(KnownIBAN.iban == key)
        .where(KnownIBAN.status == KnownIBANStatus.TRUSTED)
        .where(KnownIBAN.child_id == child_id)
    )
    entry = result.scalar_one_or_none()
    if entry is not None:
        if payer_name:
            entry.payer_name = payer_name
        entry.updated_at = datetime.now(UTC)
        await db.flush()
        return entry

    child = await db.get(Child, child_id)
    if child is None:
        raise NotFoundError("Child", child_id)

    entry = KnownIBAN(
        iban=key,
        status=KnownIBANStatus.TRUSTED,
        child_id=child.id,
        household_id=child.household_id,
        payer_name=payer_name,
        reason=reason,
    )
    db.add(entry)
    await db.flush()
    logger.info("IBAN trusted", iban=key, child_id=str(child_id), reason=reason)
    return entry


async def link_iban_to_child(
    db: AsyncSession,
    iban: str,
    child_id: UUID,
    *,
    payer_name: str | None = None,
) -> KnownIBAN:
    """Trust an IBAN for a child by hand."""
    entry = await upsert_trust(db, iban, child_id, payer_name=payer_name, reason="linked manually")
    if entry is None:
        raise ConflictError("IBAN is blacklisted; remove it from the blacklist first")
    return entry


async def remove_trust(db: AsyncSession, iban: str, *, child_id: UUID | None = None) -> int:
    """Drop trust entries for an IBAN (for one child, or all of them)."""
    key = _require_iban(iban)
    query = delete(KnownIBAN).where(KnownIBAN.iban == key).where(KnownIBAN.status == KnownIBANStatus.TRUSTED)
    if child_id is not None:
        query = query.where(KnownIBAN.child_id == child_id)
    result = await db.execute(query)
    if result.rowcount == 0:
        raise NotFoundError("Trusted IBAN", key)
    logger.info("IBAN trust removed", iban=key, child_id=str(child_id) if child_id else None, removed=result.rowcount)
    return result.rowcount


async def list_known_ibans(
    db: AsyncSession,
    status: KnownIBANStatus,
    *,
    iban: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[KnownIBAN], int]:
    query = select(KnownIBAN).where(KnownIBAN.status == status)
    key = normalize_iban(iban)
    if key:
        query = query.where(KnownIBAN.iban == key)
    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()
    result = await db.execute(
        query.order_by(KnownIBAN.updated_at.desc(), KnownIBAN.id).limit(limit).offset(offset)
    )
    return list(result.scalars()), total


async def trusted_ibans_for_child(db: AsyncSession, child_id: UUID) -> list[TrustedIBANSummary]:
    """Trusted IBANs of a child with the number of payments each made for it."""
    if await db.get(Child, child_id) is None:
        raise NotFoundError("Child", child_id)

    entries = await db.execute(
        select(KnownIBAN)
        .where(KnownIBAN.child_id == child_id)
        .where(KnownIBAN.status == KnownIBANStatus.TRUSTED)
        .order_by(KnownIBAN.created_at, KnownIBAN.id)
    )
    counts_result = await db.execute(
        select(BankTransaction.payer_iban, func.count(func.distinct(BankTransaction.id)))
        .join(PaymentMatch, PaymentMatch.transaction_id == BankTransaction.id)
        .join(FeeExpectation, FeeExpectation.id == PaymentMatch.expectation_id)
        .where(FeeExpectation.child_id == child_id)
        .group_by(BankTransaction.payer_iban)
    )
    counts = {iban: count for iban, count in counts_result.all()}
    return [
        TrustedIBANSummary(
            iban=entry.iban,
            payer_name=entry.payer_name,
            reason=entry.reason,
            created_at=entry.created_at,
            transaction_count=counts.get(entry.iban, 0),
        )
        for entry in entries.scalars()
    ]


async def dismiss_transaction(
    db: AsyncSession,
    transaction_id: UUID,
    *,
    actor: str | None = None,
) -> DismissResult:
    """Blacklist a transaction's IBAN and drop its unmatched payments from review.

    Every unmatched, still active transaction from the same IBAN is dismissed in
    the same call (the given one included). Trust entries for the IBAN go away.
    """
    transaction = await get_transaction(db, transaction_id, for_update=True)
    if not transaction.payer_iban:
        raise ValidationError("Transaction has no IBAN to blacklist")
    if transaction.match_state != MatchState.UNMATCHED:
        raise ConflictError("Transaction has allocations; unmatch it before dismissing")
    key = _require_iban(transaction.payer_iban)

    entry = await get_blacklist_entry(db, key)
    if entry is None:
        entry = KnownIBAN(iban=key, status=KnownIBANStatus.BLACKLISTED)
        db.add(entry)
    entry.payer_name = transaction.payer_name
    entry.reason = f"dismissed by {actor}" if actor else "dismissed"
    entry.original_transaction_id = transaction.id
    entry.original_description = transaction.description
    entry.original_amount = transaction.amount

    now = datetime.now(UTC)
    removed = 0
    try:
        # Flushed first: a racing dismiss of the same IBAN trips the unique index
        await db.flush()
        await db.execute(
            delete(KnownIBAN).where(KnownIBAN.iban == key).where(KnownIBAN.status == KnownIBANStatus.TRUSTED)
        )

        result = await db.execute(
            active_transactions(MatchState.UNMATCHED).where(BankTransaction.payer_iban == key).with_for_update()
        )
        for candidate in result.scalars():
            candidate.dismissed_at = now
            removed += 1
        await db.flush()
    except (StaleDataError, IntegrityError) as exc:
        raise ConflictError("Transactions changed while dismissing; reload and retry") from exc

    logger.info("IBAN blacklisted", iban=key, transactions_removed=removed, actor=actor)
    return DismissResult(iban=key, transactions_removed=removed, blacklist_entry_id=entry.id)


async def remove_from_blacklist(db: AsyncSession, iban: str) -> int:
    """Delete the blacklist entry of an IBAN. Dismissed transactions stay dismissed."""
    key = _require_iban(iban)
    result = await db.execute(
        delete(KnownIBAN).where(KnownIBAN.iban == key).where(KnownIBAN.status == KnownIBANStatus.BLACKLISTED)
    )
    if result.rowcount == 0:
        raise NotFoundError("Blacklisted IBAN", iban)
    logger.info("IBAN removed from blacklist", iban=key, removed=result.rowcount)
    return result.rowcount


async def hide_transaction(db: AsyncSession, transaction_id: UUID, *, actor: str | None = None) -> BankTransaction:
    """Take one unmatched transaction out of review without blacklisting its IBAN."""
    transaction = await get_transaction(db, transaction_id, for_update=True)
    if transaction.hidden_at is not None:
        return transaction
    if transaction.match_state != MatchState.UNMATCHED:
        raise ConflictError("Transaction has allocations; unmatch it before hiding")
    transaction.hidden_at = datetime.now(UTC)
    try:
        await db.flush()
    except StaleDataError as exc:
        raise ConflictError("Transaction changed concurrently; reload and retry") from exc
    logger.info("Transaction hidden", transaction_id=str(transaction.id), actor=actor)
    return transaction
