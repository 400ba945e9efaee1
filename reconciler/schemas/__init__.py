"""Pydantic schemas package."""

from reconciler.schemas.base import ListResponse
from reconciler.schemas.matching import (
    DedupeRequest,
    DedupeResponse,
    MatchRunRequest,
    MatchRunResponse,
    MatchSuggestionListResponse,
    MatchSuggestionResponse,
)

__all__ = [
    "DedupeRequest",
    "DedupeResponse",
    "ListResponse",
    "MatchRunRequest",
    "MatchRunResponse",
    "MatchSuggestionListResponse",
    "MatchSuggestionResponse",
]
