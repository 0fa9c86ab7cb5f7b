"""Fee expectation model."""

from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Integer, Numeric, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kita_fees.database import Base
from kita_fees.models.roster import Child


class FeeType(str, Enum):
    """Kinds of fees charged by the association."""

    MEMBERSHIP = "MEMBERSHIP"
    FOOD = "FOOD"
    CHILDCARE = "CHILDCARE"
    REMINDER = "REMINDER"


class FeeExpectation(Base):
    """A due obligation for a child.

    Created by fee generation; reconciliation only moves ``matched_amount`` and
    ``is_paid``. ``version`` guards concurrent allocations.
    """

    __tablename__ = "fee_expectations"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_fee_expectations_amount_positive"),
        CheckConstraint("matched_amount >= 0", name="ck_fee_expectations_matched_non_negative"),
        CheckConstraint("month IS NULL OR (month BETWEEN 1 AND 12)", name="ck_fee_expectations_month"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    child_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("children.id", ondelete="CASCADE"), nullable=False, index=True
    )
    fee_type: Mapped[FeeType] = mapped_column(SQLEnum(FeeType, name="fee_type_enum"), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    matched_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    is_paid: Mapped[bool] = mapped_column(default=False, nullable=False, index=True)
    reminder_for_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("fee_expectations.id", ondelete="SET NULL"), nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    child: Mapped[Child] = relationship()

    __mapper_args__ = {"version_id_col": version}

    @property
    def remaining_amount(self) -> Decimal:
        """Amount still owed; zero once covered (never negative)."""
        remaining = self.amount - (self.matched_amount or Decimal("0"))
        return remaining if remaining > 0 else Decimal("0.00")

    @property
    def period_label(self) -> str:
        if self.month:
            return f"{self.year}-{self.month:02d}"
        return str(self.year)
