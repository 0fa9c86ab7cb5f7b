"""SQLAlchemy models."""

from kita_fees.models.allocation import PaymentMatch, ReasonCode
from kita_fees.models.fee import FeeExpectation, FeeType
from kita_fees.models.known_iban import KnownIBAN, KnownIBANStatus
from kita_fees.models.roster import Child, Household, Parent
from kita_fees.models.transaction import BankTransaction, ImportBatch, MatchState
from kita_fees.models.warning import TransactionWarning, WarningStatus, WarningType

__all__ = [
    "BankTransaction",
    "Child",
    "FeeExpectation",
    "FeeType",
    "Household",
    "ImportBatch",
    "KnownIBAN",
    "KnownIBANStatus",
    "MatchState",
    "Parent",
    "PaymentMatch",
    "ReasonCode",
    "TransactionWarning",
    "WarningStatus",
    "WarningType",
]
