"""Tests for per-team threshold calibration."""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from reconciler.models import MatchType, SuggestionStatus
from reconciler.services.calibration import MAX_ADJUSTMENT, get_team_calibration
from reconciler.services.scoring import DEFAULT_CONFIG
from tests.factories import MatchSuggestionFactory


async def _reviews(db, team_id, count, *, match_type, status, confidence, **kwargs):
    for _ in range(count):
        await MatchSuggestionFactory.create_async(
            db,
            team_id=team_id,
            match_type=match_type,
            status=status,
            confidence_score=confidence,
            **kwargs,
        )


class TestTeamCalibration:
    @pytest.mark.asyncio
    async def test_too_few_samples_keeps_configured_cut_points(self, db, team_id):
        await _reviews(
            db, team_id, 4, match_type=MatchType.AUTO_MATCHED, status=SuggestionStatus.DECLINED, confidence=0.92
        )
        await db.commit()

        calibration = await get_team_calibration(db, team_id, DEFAULT_CONFIG)

        assert calibration.total_reviewed == 4
        assert calibration.auto_match_threshold == DEFAULT_CONFIG.auto_match_threshold
        assert calibration.suggest_threshold == DEFAULT_CONFIG.suggest_threshold

    @pytest.mark.asyncio
    async def test_declined_auto_matches_raise_auto_cut_point(self, db, team_id):
        """GIVEN: Five confirmed and two declined auto-matches with close confidence
        WHEN: Calibrating
        THEN: The auto cut-point rises and the narrow gap nudges suggest up"""
        await _reviews(
            db, team_id, 5, match_type=MatchType.AUTO_MATCHED, status=SuggestionStatus.CONFIRMED, confidence=0.95
        )
        await _reviews(
            db, team_id, 2, match_type=MatchType.AUTO_MATCHED, status=SuggestionStatus.DECLINED, confidence=0.92
        )
        await db.commit()

        calibration = await get_team_calibration(db, team_id, DEFAULT_CONFIG)

        assert calibration.auto_match_threshold == 0.93
        assert calibration.suggest_threshold == 0.72
        assert calibration.auto_match_accuracy == round(5 / 7, 4)

    @pytest.mark.asyncio
    async def test_rejected_suggestions_raise_suggest_cut_point(self, db, team_id):
        await _reviews(
            db, team_id, 10, match_type=MatchType.SUGGESTED, status=SuggestionStatus.DECLINED, confidence=0.75
        )
        await db.commit()

        calibration = await get_team_calibration(db, team_id, DEFAULT_CONFIG)

        assert calibration.suggestion_acceptance == 0.0
        assert calibration.suggest_threshold == 0.75
        assert calibration.auto_match_threshold == DEFAULT_CONFIG.auto_match_threshold

    @pytest.mark.asyncio
    async def test_adjustment_is_bounded(self, db, team_id):
        """GIVEN: Nearly every suggestion accepted with a wide confidence gap
        WHEN: Calibrating
        THEN: The suggest cut-point drops by at most the maximum adjustment"""
        await _reviews(
            db, team_id, 12, match_type=MatchType.SUGGESTED, status=SuggestionStatus.CONFIRMED, confidence=0.9
        )
        await _reviews(
            db, team_id, 1, match_type=MatchType.SUGGESTED, status=SuggestionStatus.DECLINED, confidence=0.5
        )
        await db.commit()

        calibration = await get_team_calibration(db, team_id, DEFAULT_CONFIG)

        assert calibration.suggest_threshold == round(DEFAULT_CONFIG.suggest_threshold - MAX_ADJUSTMENT, 4)
        calibrated = calibration.apply(DEFAULT_CONFIG)
        assert calibrated.suggest_threshold == calibration.suggest_threshold
        assert calibrated.suggest_threshold < calibrated.auto_match_threshold

    @pytest.mark.asyncio
    async def test_old_reviews_and_other_teams_are_ignored(self, db, team_id):
        old = datetime.now(UTC) - timedelta(days=120)
        await _reviews(
            db,
            team_id,
            6,
            match_type=MatchType.AUTO_MATCHED,
            status=SuggestionStatus.DECLINED,
            confidence=0.92,
            created_at=old,
        )
        await _reviews(
            db,
            uuid4(),
            6,
            match_type=MatchType.AUTO_MATCHED,
            status=SuggestionStatus.DECLINED,
            confidence=0.92,
        )
        await _reviews(
            db, team_id, 3, match_type=MatchType.SUGGESTED, status=SuggestionStatus.PENDING, confidence=0.8
        )
        await db.commit()

        calibration = await get_team_calibration(db, team_id, DEFAULT_CONFIG)

        assert calibration.total_reviewed == 0
        assert calibration.auto_match_threshold == DEFAULT_CONFIG.auto_match_threshold
