"""Child-scoped reconciliation API router."""

from uuid import UUID

from fastapi import APIRouter, Query, status

from kita_fees.deps import DbSession
from kita_fees.routers.reconciliation import build_suggestion_responses
from kita_fees.schemas.reconciliation import (
    ChildSuggestionListResponse,
    KnownIBANResponse,
    LinkIBANRequest,
    TrustedIBANResponse,
)
from kita_fees.services.errors import ReconciliationError
from kita_fees.services.importer import child_suggestions
from kita_fees.services.known_iban import link_iban_to_child, trusted_ibans_for_child
from kita_fees.utils.exceptions import raise_for_domain_error

router = APIRouter(prefix="/children/{child_id}", tags=["children"])


@router.get("/trusted-ibans", response_model=list[TrustedIBANResponse])
async def list_trusted_ibans(child_id: UUID, db: DbSession) -> list[TrustedIBANResponse]:
    try:
        summaries = await trusted_ibans_for_child(db, child_id)
    except ReconciliationError as exc:
        raise_for_domain_error(exc)
    return [TrustedIBANResponse.model_validate(summary) for summary in summaries]


@router.post("/trusted-ibans", response_model=KnownIBANResponse, status_code=status.HTTP_201_CREATED)
async def link_iban(child_id: UUID, payload: LinkIBANRequest, db: DbSession) -> KnownIBANResponse:
    """Trust an IBAN for this child so future payments match automatically."""
    try:
        entry = await link_iban_to_child(db, payload.iban, child_id, payer_name=payload.payer_name)
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_for_domain_error(exc)
    return KnownIBANResponse.model_validate(entry)


@router.get("/suggestions", response_model=ChildSuggestionListResponse)
async def suggestions(
    child_id: UUID,
    db: DbSession,
    min_confidence: float = Query(default=0.5, ge=0.0, le=1.0),
    limit: int = Query(default=10, ge=1, le=100),
) -> ChildSuggestionListResponse:
    """Unmatched transactions that probably pay one of the child's open fees."""
    try:
        found = await child_suggestions(db, child_id, min_confidence=min_confidence, limit=limit)
    except ReconciliationError as exc:
        raise_for_domain_error(exc)
    return ChildSuggestionListResponse(child_id=child_id, items=build_suggestion_responses(found))
