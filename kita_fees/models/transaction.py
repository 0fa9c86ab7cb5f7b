"""Bank transaction and import batch models."""

from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kita_fees.database import Base

if TYPE_CHECKING:
    from kita_fees.models.allocation import PaymentMatch


class MatchState(str, Enum):
    """Derived allocation state of a bank transaction."""

    UNMATCHED = "unmatched"
    PARTIALLY_MATCHED = "partially_matched"
    MATCHED = "matched"


class ImportBatch(Base):
    """One statement ingestion run."""

    __tablename__ = "import_batches"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    date_from: Mapped[date | None] = mapped_column(Date, nullable=True)
    date_to: Mapped[date | None] = mapped_column(Date, nullable=True)
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    matched_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    imported_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    imported_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )


class BankTransaction(Base):
    """An incoming payment line from a bank statement.

    ``allocated_amount`` mirrors the sum of the transaction's allocations and is
    written together with them; ``version`` turns every update into a
    check-and-set so two allocators cannot both consume the same remainder.
    """

    __tablename__ = "bank_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_bank_transactions_amount_positive"),
        CheckConstraint(
            "allocated_amount >= 0 AND allocated_amount <= amount",
            name="ck_bank_transactions_allocated_within_amount",
        ),
        Index("ix_bank_transactions_dedup", "booking_date", "payer_iban", "amount"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    import_batch_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("import_batches.id", ondelete="SET NULL"), nullable=True, index=True
    )
    booking_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    payer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payer_iban: Mapped[str | None] = mapped_column(String(34), nullable=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    allocated_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    dismissed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    hidden_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    import_batch: Mapped[ImportBatch | None] = relationship()
    allocations: Mapped[list["PaymentMatch"]] = relationship(
        back_populates="transaction",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def remaining_amount(self) -> Decimal:
        return self.amount - (self.allocated_amount or Decimal("0"))

    @property
    def match_state(self) -> MatchState:
        allocated = self.allocated_amount or Decimal("0")
        if allocated <= 0:
            return MatchState.UNMATCHED
        if allocated < self.amount:
            return MatchState.PARTIALLY_MATCHED
        return MatchState.MATCHED

    @property
    def is_active(self) -> bool:
        """False once dismissed to the blacklist or hidden by staff."""
        return self.dismissed_at is None and self.hidden_at is None
