"""Reconciliation API router."""

from collections.abc import Sequence
from uuid import UUID

from fastapi import APIRouter, Query, Response, status
from sqlalchemy import func, select

from kita_fees.deps import CurrentActor, DbSession
from kita_fees.logger import get_logger
from kita_fees.models import KnownIBANStatus, MatchState, ReasonCode, TransactionWarning, WarningStatus
from kita_fees.schemas.reconciliation import (
    AllocateRequest,
    AllocationResponse,
    AllocationResultResponse,
    CandidateResponse,
    ConfirmOutcomeResponse,
    ConfirmRequest,
    ConfirmResponse,
    DismissResponse,
    FeeExpectationSummary,
    ImportBatchResponse,
    ImportRequest,
    ImportResponse,
    KnownIBANListResponse,
    KnownIBANResponse,
    ManualMatchRequest,
    ReconciliationStatsResponse,
    RemovedResponse,
    RescanResponse,
    SuggestionListResponse,
    TransactionListResponse,
    TransactionResponse,
    TransactionSuggestionResponse,
    UnmatchRequest,
    UnmatchResponse,
)
from kita_fees.services.allocation import (
    AllocationResult,
    AllocationSplit,
    MatchRequest,
    allocate,
    confirm_matches,
    create_manual_match,
    unmatch,
)
from kita_fees.services.errors import ReconciliationError
from kita_fees.services.importer import (
    TransactionSuggestion,
    import_statement,
    list_import_batches,
    rescan,
    suggestions_for_transaction,
)
from kita_fees.services.known_iban import (
    dismiss_transaction,
    hide_transaction,
    list_known_ibans,
    remove_from_blacklist,
    remove_trust,
)
from kita_fees.services.ledger import (
    SortDirection,
    TransactionSortField,
    delete_fee_expectation,
    get_transaction,
    list_allocations,
    list_transactions,
    transaction_stats,
)
from kita_fees.services.matcher import Candidate
from kita_fees.utils.exceptions import raise_bad_request, raise_for_domain_error

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])
logger = get_logger(__name__)


def build_candidate_response(candidate: Candidate) -> CandidateResponse:
    return CandidateResponse(
        fee_ids=list(candidate.fee_ids),
        fees=[FeeExpectationSummary.model_validate(fee) for fee in candidate.fees],
        confidence=candidate.confidence,
        reason=candidate.reason,
        is_combined=candidate.is_combined,
        breakdown=candidate.breakdown,
    )


def build_suggestion_responses(
    suggestions: Sequence[TransactionSuggestion],
) -> list[TransactionSuggestionResponse]:
    return [
        TransactionSuggestionResponse(
            transaction=TransactionResponse.model_validate(suggestion.transaction),
            candidates=[build_candidate_response(candidate) for candidate in suggestion.candidates],
        )
        for suggestion in suggestions
    ]


def _build_allocation_result(result: AllocationResult) -> AllocationResultResponse:
    return AllocationResultResponse(
        transaction_id=result.transaction_id,
        allocations=[AllocationResponse.model_validate(allocation) for allocation in result.allocations],
        total_allocated=result.total_allocated,
        overpayment=result.overpayment,
        unallocated=result.unallocated,
        match_state=result.match_state,
        warnings_raised=len(result.warnings),
    )


# --- Import & rescan ---


@router.post("/import", response_model=ImportResponse, status_code=status.HTTP_201_CREATED)
async def import_statement_rows(
    payload: ImportRequest,
    db: DbSession,
    actor: CurrentActor,
) -> ImportResponse:
    """Import already-parsed statement rows and match them."""
    try:
        result = await import_statement(db, payload.file_name, payload.rows, actor=actor)
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_for_domain_error(exc)

    return ImportResponse(
        batch_id=result.batch_id,
        file_name=result.file_name,
        total_rows=result.total_rows,
        imported=result.imported,
        auto_matched=result.auto_matched,
        skipped=result.skipped,
        blacklisted=result.blacklisted,
        warnings=result.warnings,
        suggestions=build_suggestion_responses(result.suggestions),
    )


@router.get("/import/history", response_model=list[ImportBatchResponse])
async def import_history(
    db: DbSession,
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[ImportBatchResponse]:
    batches = await list_import_batches(db, limit=limit, offset=offset)
    return [ImportBatchResponse.model_validate(batch) for batch in batches]


@router.post("/rescan", response_model=RescanResponse)
async def rescan_unmatched(db: DbSession, actor: CurrentActor) -> RescanResponse:
    """Re-run matching over every open transaction."""
    try:
        result = await rescan(db, actor=actor)
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_for_domain_error(exc)

    return RescanResponse(
        scanned=result.scanned,
        auto_matched=result.auto_matched,
        new_matches=result.new_matches,
        conflicts=result.conflicts,
        failed=result.failed,
        warnings=result.warnings,
        suggestions=build_suggestion_responses(result.suggestions),
    )


# --- Matching ---


@router.post("/confirm", response_model=ConfirmResponse)
async def confirm(payload: ConfirmRequest, db: DbSession, actor: CurrentActor) -> ConfirmResponse:
    """Confirm suggested matches; already allocated pairs are reported, not repeated."""
    items = [MatchRequest(transaction_id=item.transaction_id, expectation_id=item.expectation_id) for item in payload.items]
    try:
        result = await confirm_matches(db, items, atomic=payload.atomic, actor=actor)
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_for_domain_error(exc)

    return ConfirmResponse(
        confirmed=result.confirmed,
        failed=result.failed,
        results=[ConfirmOutcomeResponse.model_validate(outcome.as_dict()) for outcome in result.outcomes],
    )


@router.post("/matches", response_model=AllocationResultResponse)
async def manual_match(
    payload: ManualMatchRequest,
    db: DbSession,
    actor: CurrentActor,
) -> AllocationResultResponse:
    try:
        result = await create_manual_match(db, payload.transaction_id, payload.expectation_id, actor=actor)
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_for_domain_error(exc)
    return _build_allocation_result(result)


# --- Transactions ---


@router.get("/transactions/unmatched", response_model=TransactionListResponse)
async def list_unmatched(
    db: DbSession,
    state: MatchState | None = Query(default=None),
    search: str | None = Query(default=None, max_length=200),
    sort_by: TransactionSortField = Query(default=TransactionSortField.BOOKING_DATE),
    sort_dir: SortDirection = Query(default=SortDirection.DESC),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> TransactionListResponse:
    """Open transactions, partially matched ones included unless a state is given."""
    if state is MatchState.MATCHED:
        raise_bad_request("Use /reconciliation/transactions/matched for matched transactions")
    states = [state] if state else [MatchState.UNMATCHED, MatchState.PARTIALLY_MATCHED]
    items, total = await list_transactions(
        db, states=states, search=search, sort_by=sort_by, sort_dir=sort_dir, limit=limit, offset=offset
    )
    return TransactionListResponse(items=[TransactionResponse.model_validate(item) for item in items], total=total)


@router.get("/transactions/matched", response_model=TransactionListResponse)
async def list_matched(
    db: DbSession,
    search: str | None = Query(default=None, max_length=200),
    sort_by: TransactionSortField = Query(default=TransactionSortField.BOOKING_DATE),
    sort_dir: SortDirection = Query(default=SortDirection.DESC),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> TransactionListResponse:
    items, total = await list_transactions(
        db,
        states=[MatchState.MATCHED],
        search=search,
        sort_by=sort_by,
        sort_dir=sort_dir,
        limit=limit,
        offset=offset,
    )
    return TransactionListResponse(items=[TransactionResponse.model_validate(item) for item in items], total=total)


@router.get("/transactions/{transaction_id}/allocations", response_model=list[AllocationResponse])
async def transaction_allocations(transaction_id: UUID, db: DbSession) -> list[AllocationResponse]:
    try:
        transaction = await get_transaction(db, transaction_id)
    except ReconciliationError as exc:
        raise_for_domain_error(exc)
    allocations = await list_allocations(db, transaction.id)
    return [AllocationResponse.model_validate(allocation) for allocation in allocations]


@router.get("/transactions/{transaction_id}/suggestions", response_model=SuggestionListResponse)
async def transaction_suggestions(transaction_id: UUID, db: DbSession) -> SuggestionListResponse:
    try:
        candidates = await suggestions_for_transaction(db, transaction_id)
    except ReconciliationError as exc:
        raise_for_domain_error(exc)
    return SuggestionListResponse(
        transaction_id=transaction_id,
        candidates=[build_candidate_response(candidate) for candidate in candidates],
    )


@router.post("/transactions/{transaction_id}/allocate", response_model=AllocationResultResponse)
async def allocate_transaction(
    transaction_id: UUID,
    payload: AllocateRequest,
    db: DbSession,
    actor: CurrentActor,
) -> AllocationResultResponse:
    """Split a transaction across fee expectations by hand."""
    splits = [AllocationSplit(expectation_id=item.expectation_id, amount=item.amount) for item in payload.allocations]
    try:
        result = await allocate(
            db,
            transaction_id,
            splits,
            matched_by=ReasonCode.MANUAL,
            allow_overpayment=payload.allow_overpayment,
            actor=actor,
        )
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_for_domain_error(exc)
    return _build_allocation_result(result)


@router.post("/transactions/{transaction_id}/unmatch", response_model=UnmatchResponse)
async def unmatch_transaction(
    transaction_id: UUID,
    db: DbSession,
    actor: CurrentActor,
    payload: UnmatchRequest | None = None,
) -> UnmatchResponse:
    delete = payload.delete_transaction if payload else False
    try:
        result = await unmatch(db, transaction_id, delete_transaction=delete, actor=actor)
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_for_domain_error(exc)
    return UnmatchResponse(
        transaction_id=result.transaction_id,
        matches_removed=result.matches_removed,
        transaction_deleted=result.transaction_deleted,
        warnings_resolved=result.warnings_resolved,
    )


@router.post("/transactions/{transaction_id}/dismiss", response_model=DismissResponse)
async def dismiss(transaction_id: UUID, db: DbSession, actor: CurrentActor) -> DismissResponse:
    """Blacklist the payer IBAN and drop its unmatched transactions from review."""
    try:
        result = await dismiss_transaction(db, transaction_id, actor=actor)
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_for_domain_error(exc)
    return DismissResponse(
        iban=result.iban,
        transactions_removed=result.transactions_removed,
        blacklist_entry_id=result.blacklist_entry_id,
    )


@router.post("/transactions/{transaction_id}/hide", response_model=TransactionResponse)
async def hide(transaction_id: UUID, db: DbSession, actor: CurrentActor) -> TransactionResponse:
    try:
        transaction = await hide_transaction(db, transaction_id, actor=actor)
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_for_domain_error(exc)
    return TransactionResponse.model_validate(transaction)


@router.delete("/fees/{fee_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_fee(fee_id: UUID, db: DbSession) -> Response:
    """Delete a fee expectation no payment was allocated to."""
    try:
        await delete_fee_expectation(db, fee_id)
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_for_domain_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Known IBANs ---


@router.get("/blacklist", response_model=KnownIBANListResponse)
async def list_blacklist(
    db: DbSession,
    iban: str | None = Query(default=None, max_length=42),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> KnownIBANListResponse:
    items, total = await list_known_ibans(db, KnownIBANStatus.BLACKLISTED, iban=iban, limit=limit, offset=offset)
    return KnownIBANListResponse(items=[KnownIBANResponse.model_validate(item) for item in items], total=total)


@router.delete("/blacklist/{iban}", status_code=status.HTTP_204_NO_CONTENT)
async def unblacklist(iban: str, db: DbSession, actor: CurrentActor) -> Response:
    """Remove an IBAN from the blacklist; dismissed transactions stay dismissed."""
    try:
        await remove_from_blacklist(db, iban)
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_for_domain_error(exc)
    logger.info("Blacklist entry removed via API", iban=iban, actor=actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/trusted", response_model=KnownIBANListResponse)
async def list_trusted(
    db: DbSession,
    iban: str | None = Query(default=None, max_length=42),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> KnownIBANListResponse:
    items, total = await list_known_ibans(db, KnownIBANStatus.TRUSTED, iban=iban, limit=limit, offset=offset)
    return KnownIBANListResponse(items=[KnownIBANResponse.model_validate(item) for item in items], total=total)


@router.delete("/trusted/{iban}", response_model=RemovedResponse)
async def untrust(
    iban: str,
    db: DbSession,
    child_id: UUID | None = Query(default=None),
) -> RemovedResponse:
    try:
        removed = await remove_trust(db, iban, child_id=child_id)
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_for_domain_error(exc)
    return RemovedResponse(removed=removed)


# --- Statistics ---


@router.get("/stats", response_model=ReconciliationStatsResponse)
async def reconciliation_stats(db: DbSession) -> ReconciliationStatsResponse:
    stats = await transaction_stats(db)
    open_warnings = await db.execute(
        select(func.count(TransactionWarning.id)).where(TransactionWarning.status == WarningStatus.OPEN)
    )
    total = stats.total_active
    match_rate = float(round((stats.matched / total) * 100, 2)) if total else 0.0
    return ReconciliationStatsResponse(
        total_transactions=total,
        unmatched_transactions=stats.unmatched,
        partially_matched_transactions=stats.partially_matched,
        matched_transactions=stats.matched,
        dismissed_transactions=stats.dismissed,
        hidden_transactions=stats.hidden,
        unallocated_amount=stats.unallocated_amount,
        open_warnings=open_warnings.scalar_one(),
        match_rate=match_rate,
    )
