"""Classification of match confidence into outcomes."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Generic, TypeVar

from reconciler.services.scoring import MatchingConfig, ScoreBreakdown

C = TypeVar("C")


class MatchOutcome(str, Enum):
    """Result of classifying one scored pair."""

    AUTO_MATCHED = "auto_matched"
    SUGGESTED = "suggested"
    NO_MATCH_YET = "no_match_yet"


def classify(score: float, config: MatchingConfig) -> MatchOutcome:
    """Map a combined score to an outcome using the configured cut-points."""
    if score >= config.auto_match_threshold:
        return MatchOutcome.AUTO_MATCHED
    if score >= config.suggest_threshold:
        return MatchOutcome.SUGGESTED
    return MatchOutcome.NO_MATCH_YET


@dataclass(frozen=True)
class ScoredCandidate(Generic[C]):
    """A candidate record with its scores and position in the input."""

    candidate: C
    scores: ScoreBreakdown
    candidate_date: date | None
    index: int

    @property
    def confidence(self) -> float:
        return self.scores.confidence


def _rank_key(scored: ScoredCandidate) -> tuple[float, int, date, int]:
    # Undated candidates sort after every dated one on a tie.
    undated = 1 if scored.candidate_date is None else 0
    candidate_date = scored.candidate_date or date.max
    return (-scored.confidence, undated, candidate_date, scored.index)


def rank_candidates(candidates: Sequence[ScoredCandidate[C]]) -> list[ScoredCandidate[C]]:
    """Order candidates best first.

    Highest combined score wins; exact ties prefer the earlier-dated
    candidate, then the earlier input position, so outcomes are reproducible.
    """
    return sorted(candidates, key=_rank_key)


def qualifying_candidates(
    candidates: Sequence[ScoredCandidate[C]],
    config: MatchingConfig,
) -> Iterator[tuple[ScoredCandidate[C], MatchOutcome]]:
    """Yield candidates best first with their outcome.

    Stops at the first candidate below the suggest cut-point, so nothing
    classified ``NO_MATCH_YET`` is ever yielded.
    """
    for scored in rank_candidates(candidates):
        outcome = classify(scored.confidence, config)
        if outcome == MatchOutcome.NO_MATCH_YET:
            return
        yield scored, outcome
