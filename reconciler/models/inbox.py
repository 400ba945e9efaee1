"""Inbox item (receipt / invoice document) model."""

from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, Date, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.database import Base
from reconciler.models.base import TeamOwnedMixin, TimestampMixin, UUIDMixin


class InboxStatus(str, Enum):
    """Reconciliation state of a document."""

    PENDING = "pending"
    DONE = "done"


class InboxItem(Base, UUIDMixin, TeamOwnedMixin, TimestampMixin):
    """A document awaiting reconciliation against a bank transaction."""

    __tablename__ = "inbox_items"

    display_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    # Document total converted to the team's base currency, when known
    base_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    base_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    document_date: Mapped[date | None] = mapped_column("date", Date, nullable=True)
    status: Mapped[InboxStatus] = mapped_column(
        SQLEnum(InboxStatus),
        nullable=False,
        default=InboxStatus.PENDING,
        index=True,
    )
    # UNIQUE: a transaction is linked to at most one document.
    transaction_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("transactions.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    embedding: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)

    @property
    def text(self) -> str:
        """Descriptive text used for semantic comparison."""
        return " ".join(part for part in (self.display_name, self.description) if part)
