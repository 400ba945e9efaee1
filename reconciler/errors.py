"""Domain exceptions for the matching engine."""

from uuid import UUID


class MatchingError(Exception):
    """Base class for matching engine errors."""


class MatchingRunError(MatchingError):
    """A run aborted at run level (persistence or a collaborator unavailable)."""

    def __init__(self, message: str, *, team_id: UUID, phase: str) -> None:
        super().__init__(message)
        self.team_id = team_id
        self.phase = phase


class MatchingRunTimeout(MatchingRunError):
    """A run exceeded its duration budget."""


class SuggestionNotFoundError(MatchingError):
    """Suggestion does not exist for the team."""


class SuggestionStateError(MatchingError):
    """Review action is not valid for the suggestion's current state."""


class EmbeddingError(MatchingError):
    """Embedding capability failed or returned an unusable payload."""
