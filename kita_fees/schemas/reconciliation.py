"""Pydantic schemas for reconciliation API."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from kita_fees.models import FeeType, KnownIBANStatus, MatchState, ReasonCode
from kita_fees.schemas.base import BaseResponse, ListResponse

# --- Request Schemas ---


class StatementRow(BaseModel):
    """One already-parsed bank statement line."""

    booking_date: date
    amount: Decimal = Field(..., max_digits=12, decimal_places=2)
    payer_name: str | None = Field(None, max_length=255)
    payer_iban: str | None = Field(None, max_length=42)
    description: str | None = None
    currency: str = Field("EUR", min_length=3, max_length=3)

    @field_validator("payer_name", "payer_iban", "description", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ImportRequest(BaseModel):
    """Statement rows are validated one by one; malformed rows are counted, not rejected."""

    file_name: str = Field(..., min_length=1, max_length=255)
    rows: list[dict[str, Any]] = Field(default_factory=list)


class MatchItem(BaseModel):
    transaction_id: UUID
    expectation_id: UUID


class ConfirmRequest(BaseModel):
    """Suggested matches a reviewer accepted."""

    items: list[MatchItem] = Field(..., min_length=1)
    atomic: bool = Field(False, description="Roll back every item when one fails")


class ManualMatchRequest(MatchItem):
    pass


class AllocationSplitRequest(BaseModel):
    expectation_id: UUID
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)


class AllocateRequest(BaseModel):
    """Explicit split of one transaction across fee expectations."""

    allocations: list[AllocationSplitRequest] = Field(..., min_length=1)
    allow_overpayment: bool = False


class UnmatchRequest(BaseModel):
    delete_transaction: bool = False


# --- Response Schemas ---


class FeeExpectationSummary(BaseResponse):
    id: UUID
    child_id: UUID
    fee_type: FeeType
    year: int
    month: int | None
    period_label: str
    amount: Decimal
    due_date: date
    matched_amount: Decimal
    remaining_amount: Decimal
    is_paid: bool


class TransactionResponse(BaseResponse):
    """Bank transaction with its derived match state."""

    id: UUID
    import_batch_id: UUID | None
    booking_date: date
    amount: Decimal
    currency: str
    payer_name: str | None
    payer_iban: str | None
    description: str | None
    allocated_amount: Decimal
    remaining_amount: Decimal
    match_state: MatchState
    dismissed_at: datetime | None
    hidden_at: datetime | None
    version: int
    created_at: datetime


TransactionListResponse = ListResponse[TransactionResponse]


class AllocationResponse(BaseResponse):
    id: UUID
    transaction_id: UUID
    expectation_id: UUID
    amount: Decimal
    matched_by: ReasonCode
    confidence: float | None
    matched_at: datetime
    matched_by_user: str | None


class CandidateResponse(BaseModel):
    """A fee, or a combination of one payer's fees, the transaction may pay."""

    fee_ids: list[UUID]
    fees: list[FeeExpectationSummary]
    confidence: float
    reason: ReasonCode
    is_combined: bool
    breakdown: dict[str, float] = Field(default_factory=dict)


class TransactionSuggestionResponse(BaseModel):
    transaction: TransactionResponse
    candidates: list[CandidateResponse]


class SuggestionListResponse(BaseModel):
    transaction_id: UUID
    candidates: list[CandidateResponse]


class ImportResponse(BaseModel):
    batch_id: UUID
    file_name: str
    total_rows: int
    imported: int
    auto_matched: int
    skipped: int
    blacklisted: int
    warnings: int
    suggestions: list[TransactionSuggestionResponse] = Field(default_factory=list)


class ImportBatchResponse(BaseResponse):
    id: UUID
    file_name: str
    date_from: date | None
    date_to: date | None
    transaction_count: int
    matched_count: int
    imported_by: str | None
    imported_at: datetime


class ConfirmOutcomeResponse(BaseModel):
    transaction_id: UUID
    expectation_id: UUID
    status: str
    already_matched: bool
    error: str | None = None


class ConfirmResponse(BaseModel):
    confirmed: int
    failed: int
    results: list[ConfirmOutcomeResponse]


class AllocationResultResponse(BaseModel):
    transaction_id: UUID
    allocations: list[AllocationResponse]
    total_allocated: Decimal
    overpayment: Decimal
    unallocated: Decimal
    match_state: MatchState
    warnings_raised: int


class UnmatchResponse(BaseModel):
    transaction_id: UUID
    matches_removed: int
    transaction_deleted: bool
    warnings_resolved: int


class DismissResponse(BaseModel):
    iban: str
    transactions_removed: int
    blacklist_entry_id: UUID


class RescanResponse(BaseModel):
    scanned: int
    auto_matched: int
    new_matches: int
    conflicts: int
    failed: int
    warnings: int
    suggestions: list[TransactionSuggestionResponse] = Field(default_factory=list)


class KnownIBANResponse(BaseResponse):
    id: UUID
    iban: str
    status: KnownIBANStatus
    payer_name: str | None
    child_id: UUID | None
    household_id: UUID | None
    reason: str | None
    original_transaction_id: UUID | None
    original_description: str | None
    original_amount: Decimal | None
    created_at: datetime
    updated_at: datetime


KnownIBANListResponse = ListResponse[KnownIBANResponse]


class RemovedResponse(BaseModel):
    removed: int


class ReconciliationStatsResponse(BaseModel):
    """Reconciliation statistics."""

    total_transactions: int
    unmatched_transactions: int
    partially_matched_transactions: int
    matched_transactions: int
    dismissed_transactions: int
    hidden_transactions: int
    unallocated_amount: Decimal
    open_warnings: int
    match_rate: float


# --- Child-scoped Schemas ---


class TrustedIBANResponse(BaseResponse):
    iban: str
    payer_name: str | None
    reason: str | None
    created_at: datetime
    transaction_count: int


class LinkIBANRequest(BaseModel):
    iban: str = Field(..., min_length=1, max_length=42)
    payer_name: str | None = Field(None, max_length=255)


class ChildSuggestionListResponse(BaseModel):
    child_id: UUID
    items: list[TransactionSuggestionResponse]


__all__ = [
    "AllocateRequest",
    "AllocationResponse",
    "AllocationResultResponse",
    "AllocationSplitRequest",
    "CandidateResponse",
    "ChildSuggestionListResponse",
    "ConfirmOutcomeResponse",
    "ConfirmRequest",
    "ConfirmResponse",
    "DismissResponse",
    "FeeExpectationSummary",
    "ImportBatchResponse",
    "ImportRequest",
    "ImportResponse",
    "KnownIBANListResponse",
    "KnownIBANResponse",
    "LinkIBANRequest",
    "ManualMatchRequest",
    "MatchItem",
    "ReconciliationStatsResponse",
    "RemovedResponse",
    "RescanResponse",
    "StatementRow",
    "SuggestionListResponse",
    "TransactionListResponse",
    "TransactionResponse",
    "TransactionSuggestionResponse",
    "TrustedIBANResponse",
    "UnmatchRequest",
]
