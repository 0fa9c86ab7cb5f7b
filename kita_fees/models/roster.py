"""Roster records (households, children, parents).

Owned by the member administration service; reconciliation only reads them to
recognise payers.
"""

from uuid import UUID

from sqlalchemy import ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kita_fees.database import Base
from kita_fees.models.base import TimestampMixin, UUIDMixin


class Household(Base, UUIDMixin, TimestampMixin):
    """A family unit that pays fees for one or more children."""

    __tablename__ = "households"

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    children: Mapped[list["Child"]] = relationship(back_populates="household")
    parents: Mapped[list["Parent"]] = relationship(back_populates="household")


class Child(Base, UUIDMixin, TimestampMixin):
    """A child enrolled with the association."""

    __tablename__ = "children"

    member_number: Mapped[str] = mapped_column(String(20), nullable=False, unique=True, index=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    household_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("households.id", ondelete="SET NULL"), nullable=True, index=True
    )

    household: Mapped[Household | None] = relationship(back_populates="children")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Parent(Base, UUIDMixin, TimestampMixin):
    """A guardian linked to a household."""

    __tablename__ = "parents"

    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    household_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("households.id", ondelete="SET NULL"), nullable=True, index=True
    )

    household: Mapped[Household | None] = relationship(back_populates="parents")
