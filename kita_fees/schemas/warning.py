"""Pydantic schemas for reconciliation warnings."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from kita_fees.models import WarningStatus, WarningType
from kita_fees.schemas.base import BaseResponse, ListResponse
from kita_fees.schemas.reconciliation import FeeExpectationSummary


class WarningResponse(BaseResponse):
    """Anomaly raised for a transaction or fee expectation."""

    id: UUID
    transaction_id: UUID | None
    expectation_id: UUID | None
    child_id: UUID | None
    warning_type: WarningType
    message: str
    expected_amount: Decimal | None
    actual_amount: Decimal | None
    status: WarningStatus
    resolution_note: str | None
    resolved_at: datetime | None
    resolved_by: str | None
    resolution_fee_id: UUID | None
    created_at: datetime


WarningListResponse = ListResponse[WarningResponse]


class WarningResolveRequest(BaseModel):
    note: str | None = Field(None, max_length=2000)


class WarningResolveResponse(BaseModel):
    warning: WarningResponse
    reminder_fee: FeeExpectationSummary | None = None
