"""Services package."""

from kita_fees.services.allocation import (
    AllocationResult,
    AllocationSplit,
    MatchRequest,
    allocate,
    confirm_matches,
    create_manual_match,
    plan_split,
    unmatch,
)
from kita_fees.services.anomaly import dismiss_warning, list_warnings, resolve_warning
from kita_fees.services.errors import (
    ConflictError,
    NotFoundError,
    PartialBatchFailure,
    ReconciliationError,
    ValidationError,
)
from kita_fees.services.importer import import_statement, rescan
from kita_fees.services.known_iban import dismiss_transaction, remove_from_blacklist, upsert_trust
from kita_fees.services.matcher import match_transaction
from kita_fees.services.scoring import ReconciliationConfig, load_reconciliation_config, score

__all__ = [
    "AllocationResult",
    "AllocationSplit",
    "ConflictError",
    "MatchRequest",
    "NotFoundError",
    "PartialBatchFailure",
    "ReconciliationConfig",
    "ReconciliationError",
    "ValidationError",
    "allocate",
    "confirm_matches",
    "create_manual_match",
    "dismiss_transaction",
    "dismiss_warning",
    "import_statement",
    "list_warnings",
    "load_reconciliation_config",
    "match_transaction",
    "plan_split",
    "remove_from_blacklist",
    "rescan",
    "resolve_warning",
    "score",
    "unmatch",
    "upsert_trust",
]
