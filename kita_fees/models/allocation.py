"""Payment match (allocation) model."""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, Float, ForeignKey, Numeric, String, UniqueConstraint, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kita_fees.database import Base
from kita_fees.models.fee import FeeExpectation
from kita_fees.models.transaction import BankTransaction


class ReasonCode(str, Enum):
    """Why a transaction was bound to a fee."""

    TRUSTED_IBAN = "trusted_iban"
    MEMBER_NUMBER = "member_number"
    NAME = "name"
    PARENT_NAME = "parent_name"
    COMBINED = "combined"
    MANUAL = "manual"


class PaymentMatch(Base):
    """Binds (part of) a bank transaction to one fee expectation."""

    __tablename__ = "payment_matches"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_matches_amount_positive"),
        UniqueConstraint("transaction_id", "expectation_id", name="uq_payment_matches_transaction_expectation"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    transaction_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("bank_transactions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    expectation_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("fee_expectations.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    matched_by: Mapped[ReasonCode] = mapped_column(SQLEnum(ReasonCode, name="match_reason_enum"), nullable=False)
    # Heuristic score, not money.
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    matched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    matched_by_user: Mapped[str | None] = mapped_column(String(100), nullable=True)

    transaction: Mapped[BankTransaction] = relationship(back_populates="allocations")
    expectation: Mapped[FeeExpectation] = relationship()
