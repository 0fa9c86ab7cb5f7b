"""Transaction warning model."""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import DateTime, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from kita_fees.database import Base


class WarningType(str, Enum):
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    DUPLICATE_PAYMENT = "DUPLICATE_PAYMENT"
    UNKNOWN_IBAN = "UNKNOWN_IBAN"
    LATE_PAYMENT = "LATE_PAYMENT"


class WarningStatus(str, Enum):
    OPEN = "open"
    DISMISSED = "dismissed"
    RESOLVED = "resolved"


class TransactionWarning(Base):
    """Anomaly raised against a transaction and/or a fee expectation."""

    __tablename__ = "transaction_warnings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    transaction_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("bank_transactions.id", ondelete="CASCADE"), nullable=True, index=True
    )
    expectation_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("fee_expectations.id", ondelete="CASCADE"), nullable=True, index=True
    )
    child_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("children.id", ondelete="SET NULL"), nullable=True, index=True
    )
    warning_type: Mapped[WarningType] = mapped_column(SQLEnum(WarningType, name="warning_type_enum"), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    expected_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    actual_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    status: Mapped[WarningStatus] = mapped_column(
        SQLEnum(WarningStatus, name="warning_status_enum"),
        nullable=False,
        default=WarningStatus.OPEN,
        index=True,
    )
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolution_fee_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("fee_expectations.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
