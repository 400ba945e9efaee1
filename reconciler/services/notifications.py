"""Outbound notifications for committed match outcomes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from reconciler.logger import get_logger
from reconciler.models import MatchDirection
from reconciler.services.policy import MatchOutcome
from reconciler.services.scoring import ScoreBreakdown

logger = get_logger(__name__)


@dataclass(frozen=True)
class MatchNotification:
    """Everything a dispatcher needs to explain one outcome to a user."""

    outcome: MatchOutcome
    team_id: UUID
    transaction_id: UUID
    inbox_item_id: UUID
    scores: ScoreBreakdown
    direction: MatchDirection

    @property
    def confidence(self) -> float:
        return self.scores.confidence


class NotificationDispatcher(Protocol):
    async def dispatch(self, notification: MatchNotification) -> None: ...


class LoggingNotificationDispatcher:
    """Default dispatcher: one structured log line per outcome."""

    async def dispatch(self, notification: MatchNotification) -> None:
        logger.info(
            "Match outcome",
            outcome=notification.outcome.value,
            team_id=str(notification.team_id),
            transaction_id=str(notification.transaction_id),
            inbox_id=str(notification.inbox_item_id),
            direction=notification.direction.value,
            confidence=notification.confidence,
            scores=notification.scores.as_dict(),
        )
