"""Statement import and rescan orchestration."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

from kita_fees.logger import async_log_timing, get_logger, log_exception
from kita_fees.models import BankTransaction, Child, ImportBatch, MatchState
from kita_fees.schemas.reconciliation import StatementRow
from kita_fees.services.anomaly import detect_unmatched_anomalies
from kita_fees.services.errors import ConflictError, NotFoundError, ReconciliationError, ValidationError
from kita_fees.services.ledger import (
    active_transactions,
    get_blacklisted_ibans,
    get_transaction,
    list_open_fees,
    load_scoring_context,
    refresh_batch_counts,
    transaction_exists,
)
from kita_fees.services.matcher import (
    AutoMatched,
    Candidate,
    Suggested,
    find_candidates,
    match_transaction,
    rank_for_transaction,
)
from kita_fees.services.scoring import ReconciliationConfig, load_reconciliation_config, normalize_iban

logger = get_logger(__name__)

CHILD_SUGGESTION_SCAN_LIMIT = 500


@dataclass
class TransactionSuggestion:
    transaction: BankTransaction
    candidates: list[Candidate]


@dataclass
class ImportResult:
    batch_id: UUID
    file_name: str
    total_rows: int
    imported: int = 0
    auto_matched: int = 0
    skipped: int = 0
    blacklisted: int = 0
    warnings: int = 0
    suggestions: list[TransactionSuggestion] = field(default_factory=list)


@dataclass
class RescanResult:
    scanned: int = 0
    auto_matched: int = 0
    new_matches: int = 0
    conflicts: int = 0
    failed: int = 0
    warnings: int = 0
    suggestions: list[TransactionSuggestion] = field(default_factory=list)


def partition_by_payer(transactions: Iterable[BankTransaction]) -> list[BankTransaction]:
    """Order transactions so each payer's are processed together.

    Payers keep the order of their first appearance; within a payer, booking
    date order. Transactions without IBAN each form their own group.
    """
    groups: dict[object, list[BankTransaction]] = {}
    for index, transaction in enumerate(transactions):
        key: object = transaction.payer_iban or ("no-iban", index)
        groups.setdefault(key, []).append(transaction)
    ordered: list[BankTransaction] = []
    for group in groups.values():
        ordered.extend(sorted(group, key=lambda transaction: transaction.booking_date))
    return ordered


async def _reload_expired(db: AsyncSession, suggestions: Sequence[TransactionSuggestion]) -> None:
    """Reload rows a rolled-back savepoint expired, so results can be rendered after the run."""
    seen: set[int] = set()
    for suggestion in suggestions:
        for row in (suggestion.transaction, *(fee for candidate in suggestion.candidates for fee in candidate.fees)):
            if id(row) in seen:
                continue
            seen.add(id(row))
            if inspect(row).expired_attributes:
                await db.refresh(row)


async def _match_one(
    db: AsyncSession,
    transaction: BankTransaction,
    *,
    actor: str | None,
    config: ReconciliationConfig,
) -> tuple[AutoMatched | Suggested | None, int]:
    """Match inside a savepoint; returns the outcome and the number of warnings raised."""
    async with db.begin_nested():
        outcome = await match_transaction(db, transaction, actor=actor, config=config)
        if isinstance(outcome, AutoMatched):
            warnings = len(outcome.allocation.warnings) if outcome.allocation else 0
            return outcome, warnings
        raised = await detect_unmatched_anomalies(
            db, transaction, attempted=isinstance(outcome, Suggested), config=config
        )
        return (outcome if isinstance(outcome, Suggested) else None), len(raised)


async def import_statement(
    db: AsyncSession,
    file_name: str,
    rows: Sequence[Mapping[str, Any]],
    *,
    actor: str | None = None,
) -> ImportResult:
    """Store new statement rows and match each of them.

    Malformed rows, non-positive amounts and rows already in the ledger count as
    skipped; rows from blacklisted IBANs are counted separately and never stored.
    """
    config = load_reconciliation_config()
    async with async_log_timing("Statement import", logger=logger, file_name=file_name) as timing:
        batch = ImportBatch(file_name=file_name, imported_by=actor)
        db.add(batch)
        await db.flush()

        result = ImportResult(batch_id=batch.id, file_name=file_name, total_rows=len(rows))
        blacklisted_ibans = await get_blacklisted_ibans(db)
        seen: set[tuple[date, str | None, Decimal, str | None]] = set()
        created: list[BankTransaction] = []

        for index, raw in enumerate(rows):
            try:
                row = StatementRow.model_validate(raw)
            except PydanticValidationError as exc:
                result.skipped += 1
                logger.warning("Skipping malformed statement row", row=index, errors=exc.error_count())
                continue

            if row.amount <= 0:
                result.skipped += 1
                continue

            iban = normalize_iban(row.payer_iban)
            if iban and iban in blacklisted_ibans:
                result.blacklisted += 1
                continue

            key = (row.booking_date, iban, row.amount, row.description)
            if key in seen or await transaction_exists(
                db,
                booking_date=row.booking_date,
                payer_iban=iban,
                amount=row.amount,
                description=row.description,
            ):
                result.skipped += 1
                continue
            seen.add(key)

            transaction = BankTransaction(
                import_batch_id=batch.id,
                booking_date=row.booking_date,
                amount=row.amount,
                currency=row.currency,
                payer_name=row.payer_name,
                payer_iban=iban,
                description=row.description,
                allocated_amount=Decimal("0.00"),
            )
            db.add(transaction)
            created.append(transaction)

        result.imported = len(created)
        batch.transaction_count = len(created)
        if created:
            batch.date_from = min(transaction.booking_date for transaction in created)
            batch.date_to = max(transaction.booking_date for transaction in created)
        await db.flush()

        for transaction in partition_by_payer(created):
            transaction_id = transaction.id
            try:
                outcome, warnings = await _match_one(db, transaction, actor=actor, config=config)
            except ReconciliationError as exc:
                log_exception(
                    logger,
                    exc,
                    "Matching failed during import; transaction left unmatched",
                    level="warning",
                    include_traceback=False,
                    transaction_id=str(transaction_id),
                )
                continue
            result.warnings += warnings
            if isinstance(outcome, AutoMatched):
                result.auto_matched += 1
            elif isinstance(outcome, Suggested):
                result.suggestions.append(
                    TransactionSuggestion(transaction=transaction, candidates=list(outcome.candidates))
                )

        await refresh_batch_counts(db, batch.id)
        await db.flush()
        await _reload_expired(db, result.suggestions)

        timing.update(
            total_rows=result.total_rows,
            imported=result.imported,
            auto_matched=result.auto_matched,
            skipped=result.skipped,
            blacklisted=result.blacklisted,
        )
    return result


async def rescan(db: AsyncSession, *, actor: str | None = None) -> RescanResult:
    """Re-run matching for every unmatched, active, non-blacklisted transaction.

    Auto-matches are applied at once. A transaction that loses a race against a
    concurrent manual match is counted as a conflict and skipped.
    """
    config = load_reconciliation_config()
    result = RescanResult()
    async with async_log_timing("Rescan", logger=logger) as timing:
        blacklisted_ibans = await get_blacklisted_ibans(db)
        rows = await db.execute(
            active_transactions(MatchState.UNMATCHED).order_by(BankTransaction.booking_date, BankTransaction.id)
        )
        pending = [
            transaction
            for transaction in rows.scalars()
            if not (transaction.payer_iban and transaction.payer_iban in blacklisted_ibans)
        ]

        for transaction in partition_by_payer(pending):
            result.scanned += 1
            transaction_id = transaction.id
            try:
                outcome, warnings = await _match_one(db, transaction, actor=actor, config=config)
            except ConflictError as exc:
                result.conflicts += 1
                log_exception(
                    logger,
                    exc,
                    "Rescan lost a race; transaction skipped",
                    level="warning",
                    include_traceback=False,
                    transaction_id=str(transaction_id),
                )
                continue
            except ReconciliationError as exc:
                result.failed += 1
                log_exception(
                    logger,
                    exc,
                    "Rescan could not match transaction",
                    level="warning",
                    include_traceback=False,
                    transaction_id=str(transaction_id),
                )
                continue

            result.warnings += warnings
            if isinstance(outcome, AutoMatched):
                result.auto_matched += 1
                if outcome.allocation is not None:
                    result.new_matches += outcome.allocation.allocations_created
            elif isinstance(outcome, Suggested):
                result.suggestions.append(
                    TransactionSuggestion(transaction=transaction, candidates=list(outcome.candidates))
                )

        await _reload_expired(db, result.suggestions)
        timing.update(
            scanned=result.scanned,
            auto_matched=result.auto_matched,
            new_matches=result.new_matches,
            conflicts=result.conflicts,
        )
    return result


async def suggestions_for_transaction(db: AsyncSession, transaction_id: UUID) -> list[Candidate]:
    """Ranked candidates for one transaction; nothing is written."""
    transaction = await get_transaction(db, transaction_id)
    if not transaction.is_active:
        raise ValidationError("Transaction has been dismissed or hidden")
    if transaction.match_state == MatchState.MATCHED:
        return []
    config = load_reconciliation_config()
    candidates = await rank_for_transaction(db, transaction, config=config)
    return candidates[: config.max_suggestions]


async def child_suggestions(
    db: AsyncSession,
    child_id: UUID,
    *,
    min_confidence: float = 0.5,
    limit: int = 10,
) -> list[TransactionSuggestion]:
    """Unmatched transactions that most likely pay one of the child's open fees."""
    if await db.get(Child, child_id) is None:
        raise NotFoundError("Child", child_id)

    open_fees = await list_open_fees(db, child_id=child_id)
    if not open_fees:
        return []

    config = load_reconciliation_config()
    rows = await db.execute(
        active_transactions(MatchState.UNMATCHED)
        .order_by(BankTransaction.booking_date.desc(), BankTransaction.id)
        .limit(CHILD_SUGGESTION_SCAN_LIMIT)
    )
    transactions = list(rows.scalars())
    context = await load_scoring_context(db, [child_id], [transaction.payer_iban for transaction in transactions])

    found: list[TransactionSuggestion] = []
    for transaction in transactions:
        candidates = [
            candidate
            for candidate in find_candidates(transaction, open_fees, context, config)
            if candidate.confidence >= min_confidence
        ]
        if candidates:
            found.append(TransactionSuggestion(transaction=transaction, candidates=candidates[: config.max_suggestions]))

    found.sort(
        key=lambda suggestion: (
            -suggestion.candidates[0].confidence,
            -suggestion.transaction.booking_date.toordinal(),
            str(suggestion.transaction.id),
        )
    )
    return found[:limit]


async def list_import_batches(db: AsyncSession, *, limit: int = 20, offset: int = 0) -> list[ImportBatch]:
    result = await db.execute(
        select(ImportBatch).order_by(ImportBatch.imported_at.desc(), ImportBatch.id).limit(limit).offset(offset)
    )
    return list(result.scalars())
