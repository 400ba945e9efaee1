"""Pydantic schemas for the matching API."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from reconciler.models import MatchDirection, MatchType, SuggestionStatus
from reconciler.schemas.base import ListResponse


class MatchRunRequest(BaseModel):
    """Request body to run matching for a team."""

    team_id: UUID
    transaction_ids: list[UUID] = Field(default_factory=list, max_length=10000)


class MatchRunResponse(BaseModel):
    """Counts reported by a matching run."""

    team_id: UUID
    phase: str
    transactions_processed: int
    transactions_failed: int
    documents_processed: int
    documents_classified: int
    documents_skipped: int
    total_processed: int
    forward_auto_matched: int
    reverse_auto_matched: int
    forward_suggestions_created: int
    reverse_suggestions_created: int
    no_match: int
    unchanged: int


class DedupeRequest(BaseModel):
    """Two provider batches to merge; records use the provider field names."""

    existing: list[dict[str, Any]] = Field(default_factory=list)
    incoming: list[dict[str, Any]] = Field(default_factory=list)


class DedupeResponse(BaseModel):
    merged: list[dict[str, Any]]
    added: int
    duplicate_keys: list[str]


class MatchSuggestionResponse(BaseModel):
    """Suggestion with its sub-scores."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    team_id: UUID
    inbox_item_id: UUID
    transaction_id: UUID
    confidence_score: float
    amount_score: float
    currency_score: float
    date_score: float
    embedding_score: float
    match_type: MatchType
    direction: MatchDirection
    status: SuggestionStatus
    match_details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


MatchSuggestionListResponse = ListResponse[MatchSuggestionResponse]
