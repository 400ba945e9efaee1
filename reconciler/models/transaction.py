"""Bank transaction model."""

from datetime import date
from decimal import Decimal

from sqlalchemy import JSON, Date, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.database import Base
from reconciler.models.base import TeamOwnedMixin, TimestampMixin, UUIDMixin


class Transaction(Base, UUIDMixin, TeamOwnedMixin, TimestampMixin):
    """A posted bank-account movement delivered by the banking sync.

    Fundamentals (dates, amount, sign) never change after creation; the
    matching engine only links documents to it.
    """

    __tablename__ = "transactions"

    booking_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    value_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    # Signed: negative = money out (DBIT), positive = money in (CRDT)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    # Amount converted to the team's base currency, when the bank provides it
    base_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    base_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    dedup_key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    embedding: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)

    @property
    def txn_date(self) -> date | None:
        """Booking date when known, value date otherwise."""
        return self.booking_date or self.value_date

    @property
    def text(self) -> str:
        """Descriptive text used for semantic comparison."""
        return " ".join(part for part in (self.name, self.description) if part)
