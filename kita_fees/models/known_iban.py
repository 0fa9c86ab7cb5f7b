"""Known IBAN model (trust list and blacklist)."""

from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Numeric, String, Text, UniqueConstraint, Uuid, text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from kita_fees.database import Base
from kita_fees.models.base import TimestampMixin, UUIDMixin


class KnownIBANStatus(str, Enum):
    TRUSTED = "trusted"
    BLACKLISTED = "blacklisted"


class KnownIBAN(Base, UUIDMixin, TimestampMixin):
    """Durable per-IBAN record.

    Trust rows are scoped to one child (and its household). A blacklist row is
    global: ``child_id`` is NULL and there is at most one per IBAN.
    """

    __tablename__ = "known_ibans"
    __table_args__ = (
        UniqueConstraint("iban", "status", "child_id", name="uq_known_ibans_iban_status_child"),
        # NULL child ids never collide in the constraint above
        Index(
            "uq_known_ibans_blacklisted_iban",
            "iban",
            unique=True,
            postgresql_where=text(f"status = '{KnownIBANStatus.BLACKLISTED.name}'"),
            sqlite_where=text(f"status = '{KnownIBANStatus.BLACKLISTED.name}'"),
        ),
    )

    iban: Mapped[str] = mapped_column(String(34), nullable=False, index=True)
    status: Mapped[KnownIBANStatus] = mapped_column(
        SQLEnum(KnownIBANStatus, name="known_iban_status_enum"), nullable=False
    )
    payer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    child_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("children.id", ondelete="CASCADE"), nullable=True, index=True
    )
    household_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("households.id", ondelete="SET NULL"), nullable=True
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Audit context captured when a transaction is dismissed
    original_transaction_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    original_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
