"""Per-team threshold calibration from review feedback."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.logger import get_logger
from reconciler.models import MatchSuggestion, MatchType, SuggestionStatus
from reconciler.services.scoring import MatchingConfig

logger = get_logger(__name__)

LOOKBACK_DAYS = 90
MIN_SAMPLES = 5
# Largest distance a calibrated cut-point may move from its configured value.
MAX_ADJUSTMENT = 0.05
MIN_THRESHOLD_GAP = 0.01


@dataclass(frozen=True)
class TeamCalibration:
    team_id: UUID
    total_reviewed: int
    confirmed: int
    declined: int
    avg_confidence_confirmed: float
    avg_confidence_declined: float
    auto_match_accuracy: float
    suggestion_acceptance: float
    auto_match_threshold: float
    suggest_threshold: float

    def apply(self, config: MatchingConfig) -> MatchingConfig:
        """Return ``config`` with the calibrated cut-points."""
        return replace(
            config,
            auto_match_threshold=self.auto_match_threshold,
            suggest_threshold=self.suggest_threshold,
        )


def _bounded(value: float, default: float) -> float:
    return round(min(default + MAX_ADJUSTMENT, max(default - MAX_ADJUSTMENT, value)), 4)


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


async def get_team_calibration(
    db: AsyncSession,
    team_id: UUID,
    config: MatchingConfig,
) -> TeamCalibration:
    """Derive cut-points from the team's confirmed and declined suggestions.

    Only reviews from the last 90 days count. With fewer than five samples
    the configured cut-points are returned unchanged.
    """
    since = datetime.now(UTC) - timedelta(days=LOOKBACK_DAYS)
    result = await db.execute(
        select(MatchSuggestion.match_type, MatchSuggestion.status, MatchSuggestion.confidence_score)
        .where(MatchSuggestion.team_id == team_id)
        .where(MatchSuggestion.status.in_([SuggestionStatus.CONFIRMED, SuggestionStatus.DECLINED]))
        .where(MatchSuggestion.created_at > since)
    )
    rows = result.all()

    confirmed = [row for row in rows if row.status == SuggestionStatus.CONFIRMED]
    declined = [row for row in rows if row.status == SuggestionStatus.DECLINED]
    auto = [row for row in rows if row.match_type == MatchType.AUTO_MATCHED]
    suggested = [row for row in rows if row.match_type == MatchType.SUGGESTED]

    avg_confirmed = _mean([row.confidence_score for row in confirmed])
    avg_declined = _mean([row.confidence_score for row in declined])
    auto_accuracy = _mean([1.0 if row.status == SuggestionStatus.CONFIRMED else 0.0 for row in auto])
    acceptance = _mean([1.0 if row.status == SuggestionStatus.CONFIRMED else 0.0 for row in suggested])

    auto_threshold = config.auto_match_threshold
    suggest_threshold = config.suggest_threshold

    if len(rows) >= MIN_SAMPLES:
        declined_auto = sum(1 for row in auto if row.status == SuggestionStatus.DECLINED)
        if declined_auto > 0 and auto_accuracy < 0.95:
            auto_threshold += 0.03
        elif auto and auto_accuracy > 0.97 and len(confirmed) > MIN_SAMPLES:
            auto_threshold -= 0.04

        if suggested:
            if acceptance > 0.9 and len(confirmed) > 8:
                suggest_threshold -= 0.05
            elif acceptance > 0.7 and len(confirmed) > 3:
                suggest_threshold -= 0.03
            elif acceptance < 0.5 and len(declined) > 4:
                suggest_threshold += 0.05

        if confirmed and declined and len(confirmed) > 3:
            gap = avg_confirmed - avg_declined
            if gap > 0.2:
                suggest_threshold -= 0.02
            elif gap < 0.05:
                suggest_threshold += 0.02

        auto_threshold = _bounded(auto_threshold, config.auto_match_threshold)
        suggest_threshold = _bounded(suggest_threshold, config.suggest_threshold)
        auto_threshold = min(1.0, auto_threshold)
        suggest_threshold = max(0.0, min(suggest_threshold, auto_threshold - MIN_THRESHOLD_GAP))

    calibration = TeamCalibration(
        team_id=team_id,
        total_reviewed=len(rows),
        confirmed=len(confirmed),
        declined=len(declined),
        avg_confidence_confirmed=round(avg_confirmed, 4),
        avg_confidence_declined=round(avg_declined, 4),
        auto_match_accuracy=round(auto_accuracy, 4),
        suggestion_acceptance=round(acceptance, 4),
        auto_match_threshold=auto_threshold,
        suggest_threshold=suggest_threshold,
    )
    logger.debug(
        "Team calibration computed",
        team_id=str(team_id),
        samples=len(rows),
        auto_match_threshold=auto_threshold,
        suggest_threshold=suggest_threshold,
    )
    return calibration
