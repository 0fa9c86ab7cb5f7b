"""Test data factories using factory_boy pattern.

Usage:
    # Simple creation
    fee = FeeExpectationFactory.build(child_id=child.id)

    # Create and flush to DB (transaction not committed)
    child = await ChildFactory.create_async(db, last_name="Klein")
"""

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TypeVar
from uuid import uuid4

import factory
from sqlalchemy.ext.asyncio import AsyncSession

from kita_fees.models import (
    BankTransaction,
    Child,
    FeeExpectation,
    FeeType,
    Household,
    ImportBatch,
    KnownIBAN,
    KnownIBANStatus,
    Parent,
)

T = TypeVar("T")


class AsyncFactoryMixin:
    """Mixin providing async database persistence for factories."""

    @classmethod
    async def create_async(cls, db: AsyncSession, **kwargs) -> T:
        """Create and flush to database (transaction not committed)."""
        instance = cls.build(**kwargs)
        db.add(instance)
        await db.flush()
        await db.refresh(instance)
        return instance


class HouseholdFactory(factory.Factory, AsyncFactoryMixin):
    class Meta:
        model = Household

    id = factory.LazyFunction(uuid4)
    name = factory.Sequence(lambda n: f"Household {n}")


class ChildFactory(factory.Factory, AsyncFactoryMixin):
    class Meta:
        model = Child

    id = factory.LazyFunction(uuid4)
    member_number = factory.Sequence(lambda n: f"{10000 + n:05d}")
    first_name = "Mia"
    last_name = factory.Sequence(lambda n: f"Family{n}")
    household_id = None


class ParentFactory(factory.Factory, AsyncFactoryMixin):
    class Meta:
        model = Parent

    id = factory.LazyFunction(uuid4)
    first_name = "Anna"
    last_name = factory.Sequence(lambda n: f"Guardian{n}")
    household_id = None


class FeeExpectationFactory(factory.Factory, AsyncFactoryMixin):
    class Meta:
        model = FeeExpectation

    id = factory.LazyFunction(uuid4)
    fee_type = FeeType.CHILDCARE
    year = 2024
    month = 5
    amount = Decimal("120.00")
    due_date = date(2024, 5, 1)
    matched_amount = Decimal("0.00")
    is_paid = False
    reminder_for_id = None


class ImportBatchFactory(factory.Factory, AsyncFactoryMixin):
    class Meta:
        model = ImportBatch

    id = factory.LazyFunction(uuid4)
    file_name = factory.Sequence(lambda n: f"statement_{n}.csv")
    transaction_count = 0
    matched_count = 0
    imported_at = factory.LazyFunction(lambda: datetime.now(UTC))


class BankTransactionFactory(factory.Factory, AsyncFactoryMixin):
    """IBANs are stored normalized (upper case, no spaces)."""

    class Meta:
        model = BankTransaction

    id = factory.LazyFunction(uuid4)
    import_batch_id = None
    booking_date = date(2024, 4, 28)
    amount = Decimal("120.00")
    currency = "EUR"
    payer_name = "Unknown Payer"
    payer_iban = factory.Sequence(lambda n: f"DE89370400440532{n:06d}")
    description = None
    allocated_amount = Decimal("0.00")


class KnownIBANFactory(factory.Factory, AsyncFactoryMixin):
    class Meta:
        model = KnownIBAN

    id = factory.LazyFunction(uuid4)
    iban = factory.Sequence(lambda n: f"DE02120300000000{n:06d}")
    status = KnownIBANStatus.TRUSTED
    payer_name = None
    child_id = None
    household_id = None
    reason = "test"
