"""Review queue for match suggestions."""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.errors import SuggestionNotFoundError, SuggestionStateError
from reconciler.logger import get_logger
from reconciler.models import (
    InboxItem,
    InboxStatus,
    MatchSuggestion,
    MatchType,
    SuggestionStatus,
)

logger = get_logger(__name__)


async def list_pending_suggestions(
    db: AsyncSession,
    *,
    team_id: UUID,
    limit: int = 50,
    offset: int = 0,
) -> list[MatchSuggestion]:
    """Return pending suggestions, most confident first."""
    result = await db.execute(
        select(MatchSuggestion)
        .where(MatchSuggestion.team_id == team_id)
        .where(MatchSuggestion.status == SuggestionStatus.PENDING)
        .order_by(MatchSuggestion.confidence_score.desc(), MatchSuggestion.created_at)
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def get_inbox_suggestion(
    db: AsyncSession,
    inbox_item_id: UUID,
    *,
    team_id: UUID,
) -> MatchSuggestion | None:
    """Best pending suggestion for a document, if any."""
    result = await db.execute(
        select(MatchSuggestion)
        .where(MatchSuggestion.team_id == team_id)
        .where(MatchSuggestion.inbox_item_id == inbox_item_id)
        .where(MatchSuggestion.status == SuggestionStatus.PENDING)
        .order_by(MatchSuggestion.confidence_score.desc(), MatchSuggestion.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _get_suggestion_for_update(db: AsyncSession, suggestion_id: UUID, team_id: UUID) -> MatchSuggestion:
    result = await db.execute(
        select(MatchSuggestion)
        .where(MatchSuggestion.id == suggestion_id)
        .where(MatchSuggestion.team_id == team_id)
        .with_for_update()
    )
    suggestion = result.scalar_one_or_none()
    if suggestion is None:
        raise SuggestionNotFoundError(f"Suggestion {suggestion_id} not found")
    return suggestion


async def confirm_suggestion(
    db: AsyncSession,
    suggestion_id: UUID,
    *,
    team_id: UUID,
) -> MatchSuggestion:
    """Accept a pending suggestion and link its document to the transaction.

    The document's other pending suggestions expire. Raises
    ``SuggestionStateError`` when the suggestion was already reviewed, the
    document is already done, or the transaction is linked elsewhere.
    """
    suggestion = await _get_suggestion_for_update(db, suggestion_id, team_id)
    if suggestion.status != SuggestionStatus.PENDING:
        raise SuggestionStateError(f"Suggestion is {suggestion.status.value}, not pending")

    linked = await db.scalar(
        select(InboxItem.id).where(InboxItem.transaction_id == suggestion.transaction_id)
    )
    if linked is not None:
        raise SuggestionStateError("Transaction is already linked to a document")

    now = datetime.now(UTC)
    result = await db.execute(
        update(InboxItem)
        .where(InboxItem.id == suggestion.inbox_item_id)
        .where(InboxItem.team_id == team_id)
        .where(InboxItem.status == InboxStatus.PENDING)
        .where(InboxItem.transaction_id.is_(None))
        .values(status=InboxStatus.DONE, transaction_id=suggestion.transaction_id, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise SuggestionStateError("Document is already reconciled")

    suggestion.status = SuggestionStatus.CONFIRMED
    await db.execute(
        update(MatchSuggestion)
        .where(MatchSuggestion.inbox_item_id == suggestion.inbox_item_id)
        .where(MatchSuggestion.id != suggestion.id)
        .where(MatchSuggestion.status == SuggestionStatus.PENDING)
        .values(status=SuggestionStatus.EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.flush()

    logger.info(
        "Suggestion confirmed",
        team_id=str(team_id),
        suggestion_id=str(suggestion.id),
        inbox_id=str(suggestion.inbox_item_id),
        transaction_id=str(suggestion.transaction_id),
    )
    return suggestion


async def decline_suggestion(
    db: AsyncSession,
    suggestion_id: UUID,
    *,
    team_id: UUID,
) -> MatchSuggestion:
    """Reject a suggestion; the pair is never suggested again.

    Declining a confirmed auto-match also unlinks the document, which goes
    back to pending.
    """
    suggestion = await _get_suggestion_for_update(db, suggestion_id, team_id)

    if suggestion.status == SuggestionStatus.CONFIRMED and suggestion.match_type == MatchType.AUTO_MATCHED:
        await db.execute(
            update(InboxItem)
            .where(InboxItem.id == suggestion.inbox_item_id)
            .where(InboxItem.team_id == team_id)
            .where(InboxItem.transaction_id == suggestion.transaction_id)
            .values(status=InboxStatus.PENDING, transaction_id=None, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
    elif suggestion.status != SuggestionStatus.PENDING:
        raise SuggestionStateError(f"Suggestion is {suggestion.status.value}, cannot decline")

    suggestion.status = SuggestionStatus.DECLINED
    await db.flush()

    logger.info(
        "Suggestion declined",
        team_id=str(team_id),
        suggestion_id=str(suggestion.id),
        match_type=suggestion.match_type.value,
    )
    return suggestion
