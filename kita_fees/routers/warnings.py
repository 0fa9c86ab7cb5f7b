"""Reconciliation warnings API router."""

from uuid import UUID

from fastapi import APIRouter, Query

from kita_fees.deps import CurrentActor, DbSession
from kita_fees.models import WarningStatus, WarningType
from kita_fees.schemas.reconciliation import FeeExpectationSummary
from kita_fees.schemas.warning import (
    WarningListResponse,
    WarningResolveRequest,
    WarningResolveResponse,
    WarningResponse,
)
from kita_fees.services.anomaly import dismiss_warning, list_warnings, resolve_warning
from kita_fees.services.errors import ReconciliationError
from kita_fees.utils.exceptions import raise_for_domain_error

router = APIRouter(prefix="/warnings", tags=["warnings"])


@router.get("", response_model=WarningListResponse)
async def list_all(
    db: DbSession,
    status: WarningStatus | None = Query(default=WarningStatus.OPEN),
    warning_type: WarningType | None = Query(default=None),
    transaction_id: UUID | None = Query(default=None),
    child_id: UUID | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> WarningListResponse:
    """Open warnings by default; pass another status to see closed ones."""
    items, total = await list_warnings(
        db,
        status=status,
        warning_type=warning_type,
        transaction_id=transaction_id,
        child_id=child_id,
        limit=limit,
        offset=offset,
    )
    return WarningListResponse(items=[WarningResponse.model_validate(item) for item in items], total=total)


@router.post("/{warning_id}/dismiss", response_model=WarningResponse)
async def dismiss(
    warning_id: UUID,
    db: DbSession,
    actor: CurrentActor,
    payload: WarningResolveRequest | None = None,
) -> WarningResponse:
    try:
        warning = await dismiss_warning(db, warning_id, note=payload.note if payload else None, actor=actor)
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_for_domain_error(exc)
    return WarningResponse.model_validate(warning)


@router.post("/{warning_id}/resolve", response_model=WarningResolveResponse)
async def resolve(
    warning_id: UUID,
    db: DbSession,
    actor: CurrentActor,
    payload: WarningResolveRequest | None = None,
) -> WarningResolveResponse:
    """Run the resolve action of a warning (late payments charge a reminder fee)."""
    try:
        warning, reminder = await resolve_warning(db, warning_id, note=payload.note if payload else None, actor=actor)
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_for_domain_error(exc)
    return WarningResolveResponse(
        warning=WarningResponse.model_validate(warning),
        reminder_fee=FeeExpectationSummary.model_validate(reminder) if reminder else None,
    )
