"""SQLAlchemy models package."""

from reconciler.models.inbox import InboxItem, InboxStatus
from reconciler.models.suggestion import (
    MatchDirection,
    MatchSuggestion,
    MatchType,
    SuggestionStatus,
)
from reconciler.models.transaction import Transaction

__all__ = [
    "InboxItem",
    "InboxStatus",
    "MatchDirection",
    "MatchSuggestion",
    "MatchType",
    "SuggestionStatus",
    "Transaction",
]
