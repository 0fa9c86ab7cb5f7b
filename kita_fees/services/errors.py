"""Domain errors raised by the reconciliation services."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING
from uuid import UUID

if TYPE_CHECKING:
    from kita_fees.services.allocation import ConfirmOutcome


class ReconciliationError(Exception):
    """Base class for reconciliation errors."""

    pass


class ValidationError(ReconciliationError):
    """Malformed request. Nothing was written."""

    pass


class ConflictError(ReconciliationError):
    """The ledger changed underneath the caller. Retry against fresh state."""

    pass


class NotFoundError(ReconciliationError):
    """A referenced record does not exist (stale id from a client)."""

    def __init__(self, resource: str, resource_id: UUID | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        message = f"{resource} not found" if resource_id is None else f"{resource} {resource_id} not found"
        super().__init__(message)


class PartialBatchFailure(ReconciliationError):
    """An atomic batch had failing items; every item was rolled back."""

    def __init__(self, outcomes: Sequence[ConfirmOutcome]) -> None:
        self.outcomes = list(outcomes)
        failed = sum(1 for outcome in self.outcomes if not outcome.ok)
        super().__init__(f"{failed} of {len(self.outcomes)} items failed; batch rolled back")
