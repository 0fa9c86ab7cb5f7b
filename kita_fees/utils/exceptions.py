"""Common exception utilities for FastAPI routers."""

from typing import Any, NoReturn

from fastapi import HTTPException, status

from kita_fees.services.errors import (
    ConflictError,
    NotFoundError,
    PartialBatchFailure,
    ReconciliationError,
    ValidationError,
)


def raise_not_found(resource_name: str, *, cause: Exception | None = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"{resource_name} not found",
    ) from cause


def raise_bad_request(detail: str, *, cause: Exception | None = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=detail,
    ) from cause


def raise_conflict(detail: Any, *, cause: Exception | None = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=detail,
    ) from cause


def raise_for_domain_error(exc: ReconciliationError) -> NoReturn:
    """Translate a reconciliation service error into the matching HTTP error."""
    if isinstance(exc, NotFoundError):
        raise_not_found(exc.resource, cause=exc)
    if isinstance(exc, PartialBatchFailure):
        raise_conflict(
            {"message": str(exc), "results": [outcome.as_dict() for outcome in exc.outcomes]},
            cause=exc,
        )
    if isinstance(exc, ConflictError):
        raise_conflict(str(exc), cause=exc)
    if isinstance(exc, ValidationError):
        raise_bad_request(str(exc), cause=exc)
    raise_bad_request(str(exc), cause=exc)
