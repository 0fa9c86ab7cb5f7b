"""Pydantic schemas for the HTTP API."""

from kita_fees.schemas.base import BaseResponse, ListResponse
from kita_fees.schemas.reconciliation import (
    AllocateRequest,
    CandidateResponse,
    ConfirmRequest,
    ImportRequest,
    ImportResponse,
    StatementRow,
    TransactionResponse,
)
from kita_fees.schemas.warning import WarningListResponse, WarningResponse

__all__ = [
    "AllocateRequest",
    "BaseResponse",
    "CandidateResponse",
    "ConfirmRequest",
    "ImportRequest",
    "ImportResponse",
    "ListResponse",
    "StatementRow",
    "TransactionResponse",
    "WarningListResponse",
    "WarningResponse",
]
