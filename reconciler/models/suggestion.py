"""Match suggestion models."""

from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Float, ForeignKey, UniqueConstraint, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.database import Base
from reconciler.models.base import TeamOwnedMixin, TimestampMixin, UUIDMixin


class MatchType(str, Enum):
    """Classification a suggestion was created with."""

    AUTO_MATCHED = "auto_matched"
    SUGGESTED = "suggested"


class MatchDirection(str, Enum):
    """Pass that produced the pairing."""

    FORWARD = "forward"
    REVERSE = "reverse"


class SuggestionStatus(str, Enum):
    """Review state of a suggestion."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    EXPIRED = "expired"


class MatchSuggestion(Base, UUIDMixin, TeamOwnedMixin, TimestampMixin):
    """Scored association between one transaction and one document.

    Auto-matches are recorded as confirmed suggestions so the sub-scores
    used for the decision stay auditable.
    """

    __tablename__ = "transaction_match_suggestions"
    __table_args__ = (UniqueConstraint("inbox_item_id", "transaction_id", name="uq_suggestion_pair"),)

    inbox_item_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("inbox_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    transaction_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Scores are non-monetary 0-1 values; floats are fine here.
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    amount_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    currency_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    date_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    embedding_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    match_type: Mapped[MatchType] = mapped_column(SQLEnum(MatchType), nullable=False)
    direction: Mapped[MatchDirection] = mapped_column(SQLEnum(MatchDirection), nullable=False)
    match_details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    status: Mapped[SuggestionStatus] = mapped_column(
        SQLEnum(SuggestionStatus),
        nullable=False,
        default=SuggestionStatus.PENDING,
        index=True,
    )
