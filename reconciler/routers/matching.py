"""Matching API router."""

from uuid import UUID

from fastapi import APIRouter, Query
from sqlalchemy.exc import IntegrityError

from reconciler.database import create_session_maker_from_db
from reconciler.deps import DbSession
from reconciler.errors import (
    MatchingRunError,
    MatchingRunTimeout,
    SuggestionNotFoundError,
    SuggestionStateError,
)
from reconciler.logger import get_logger
from reconciler.schemas.matching import (
    DedupeRequest,
    DedupeResponse,
    MatchRunRequest,
    MatchRunResponse,
    MatchSuggestionListResponse,
    MatchSuggestionResponse,
)
from reconciler.services.deduplication import find_duplicate_keys, merge_transactions
from reconciler.services.matching import run_matching
from reconciler.services.review_queue import (
    confirm_suggestion as confirm_suggestion_service,
)
from reconciler.services.review_queue import (
    decline_suggestion as decline_suggestion_service,
)
from reconciler.services.review_queue import (
    get_inbox_suggestion,
    list_pending_suggestions,
)
from reconciler.utils.exceptions import (
    raise_conflict,
    raise_gateway_timeout,
    raise_not_found,
    raise_service_unavailable,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/matching", tags=["matching"])


@router.post("/run", response_model=MatchRunResponse)
async def run_matching_endpoint(payload: MatchRunRequest, db: DbSession) -> MatchRunResponse:
    session_maker = create_session_maker_from_db(db)
    try:
        summary = await run_matching(
            session_maker,
            team_id=payload.team_id,
            new_transaction_ids=payload.transaction_ids,
        )
    except MatchingRunTimeout as exc:
        raise_gateway_timeout("Matching run timed out", cause=exc)
    except MatchingRunError as exc:
        logger.error("Matching run failed", team_id=str(exc.team_id), phase=exc.phase, error=str(exc))
        raise_service_unavailable("Matching run failed, retry later", cause=exc)

    return MatchRunResponse(
        team_id=summary.team_id,
        phase=summary.phase.value,
        transactions_processed=summary.transactions_processed,
        transactions_failed=summary.transactions_failed,
        documents_processed=summary.documents_processed,
        documents_classified=summary.documents_classified,
        documents_skipped=summary.documents_skipped,
        total_processed=summary.total_processed,
        forward_auto_matched=summary.forward_auto_matched,
        reverse_auto_matched=summary.reverse_auto_matched,
        forward_suggestions_created=summary.forward_suggestions_created,
        reverse_suggestions_created=summary.reverse_suggestions_created,
        no_match=summary.no_match,
        unchanged=summary.unchanged,
    )


@router.post("/transactions/dedupe", response_model=DedupeResponse)
async def dedupe_transactions(payload: DedupeRequest) -> DedupeResponse:
    merged = merge_transactions(payload.existing, payload.incoming)
    return DedupeResponse(
        merged=merged,
        added=len(merged) - len(payload.existing),
        duplicate_keys=sorted(find_duplicate_keys(payload.incoming)),
    )


@router.get("/suggestions", response_model=MatchSuggestionListResponse)
async def list_suggestions(
    db: DbSession,
    team_id: UUID,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> MatchSuggestionListResponse:
    suggestions = await list_pending_suggestions(db, team_id=team_id, limit=limit, offset=offset)
    items = [MatchSuggestionResponse.model_validate(s) for s in suggestions]
    return MatchSuggestionListResponse(items=items, total=len(items))


@router.get("/inbox/{inbox_id}/suggestion", response_model=MatchSuggestionResponse)
async def get_suggestion_for_inbox(inbox_id: UUID, team_id: UUID, db: DbSession) -> MatchSuggestionResponse:
    suggestion = await get_inbox_suggestion(db, inbox_id, team_id=team_id)
    if suggestion is None:
        raise_not_found("Suggestion")
    return MatchSuggestionResponse.model_validate(suggestion)


@router.post("/suggestions/{suggestion_id}/confirm", response_model=MatchSuggestionResponse)
async def confirm_suggestion(suggestion_id: UUID, team_id: UUID, db: DbSession) -> MatchSuggestionResponse:
    try:
        suggestion = await confirm_suggestion_service(db, suggestion_id, team_id=team_id)
        await db.commit()
    except SuggestionNotFoundError as exc:
        raise_not_found("Suggestion", cause=exc)
    except SuggestionStateError as exc:
        await db.rollback()
        raise_conflict(str(exc), cause=exc)
    except IntegrityError as exc:
        await db.rollback()
        raise_conflict("Transaction is already linked to a document", cause=exc)
    await db.refresh(suggestion)
    return MatchSuggestionResponse.model_validate(suggestion)


@router.post("/suggestions/{suggestion_id}/decline", response_model=MatchSuggestionResponse)
async def decline_suggestion(suggestion_id: UUID, team_id: UUID, db: DbSession) -> MatchSuggestionResponse:
    try:
        suggestion = await decline_suggestion_service(db, suggestion_id, team_id=team_id)
        await db.commit()
    except SuggestionNotFoundError as exc:
        raise_not_found("Suggestion", cause=exc)
    except SuggestionStateError as exc:
        await db.rollback()
        raise_conflict(str(exc), cause=exc)
    await db.refresh(suggestion)
    return MatchSuggestionResponse.model_validate(suggestion)
