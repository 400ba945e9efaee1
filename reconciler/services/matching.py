"""Bidirectional transaction/document matching.

A run has two passes over one team's data:

1. Forward: each newly ingested transaction is scored against the pending
   documents, sequentially.
2. Reverse: every pending document the forward pass did not consume is
   scored against the team's unlinked transactions, in fixed-size batches
   evaluated concurrently.

Every item commits on its own session, so an abandoned run leaves only
whole outcomes behind and re-running is always safe.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.errors import MatchingRunError, MatchingRunTimeout
from reconciler.logger import async_log_timing, get_logger, log_exception
from reconciler.models import (
    InboxItem,
    InboxStatus,
    MatchDirection,
    MatchSuggestion,
    MatchType,
    SuggestionStatus,
    Transaction,
)
from reconciler.services.calibration import get_team_calibration
from reconciler.services.notifications import (
    LoggingNotificationDispatcher,
    MatchNotification,
    NotificationDispatcher,
)
from reconciler.services.policy import MatchOutcome, ScoredCandidate, qualifying_candidates
from reconciler.services.scoring import (
    MatchingConfig,
    ScoreBreakdown,
    load_matching_config,
    score_match,
)
from reconciler.services.similarity import SimilarityProvider, get_similarity_provider

logger = get_logger(__name__)


class MatchRunPhase(str, Enum):
    STARTED = "started"
    FORWARD_PASS = "forward_pass"
    REVERSE_PASS = "reverse_pass"
    COMPLETED = "completed"


class CommitStatus(str, Enum):
    """What persisting one classified pair did."""

    CREATED = "created"
    # The pair's suggestion already existed and was only refreshed.
    UNCHANGED = "unchanged"
    DOCUMENT_TAKEN = "document_taken"
    TRANSACTION_TAKEN = "transaction_taken"


@dataclass(frozen=True)
class ItemResult:
    """Outcome of evaluating one transaction (forward) or document (reverse).

    ``created`` is True only when this run wrote the outcome; finding the
    pair's suggestion already stored leaves it False. A subject whose
    candidates were all taken by concurrent writers ends as no match.
    """

    item_id: UUID
    ok: bool
    outcome: MatchOutcome | None = None
    matched_id: UUID | None = None
    created: bool = False
    error: str | None = None

    @classmethod
    def failed(cls, item_id: UUID, exc: BaseException) -> ItemResult:
        return cls(item_id=item_id, ok=False, error=f"{type(exc).__name__}: {exc}")


@dataclass(frozen=True)
class ForwardPassResult:
    """Forward-pass results plus the documents it consumed by auto-matching."""

    consumed_inbox_ids: frozenset[UUID]
    results: tuple[ItemResult, ...] = ()


@dataclass
class MatchRunSummary:
    team_id: UUID
    phase: MatchRunPhase = MatchRunPhase.STARTED
    transactions_processed: int = 0
    transactions_failed: int = 0
    documents_processed: int = 0
    documents_classified: int = 0
    documents_skipped: int = 0
    forward_auto_matched: int = 0
    reverse_auto_matched: int = 0
    forward_suggestions_created: int = 0
    reverse_suggestions_created: int = 0
    no_match: int = 0
    # Pairs whose suggestion already existed from an earlier run.
    unchanged: int = 0
    failed_item_ids: list[UUID] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return self.transactions_processed + self.documents_processed

    @property
    def auto_matched(self) -> int:
        return self.forward_auto_matched + self.reverse_auto_matched

    @property
    def suggestions_created(self) -> int:
        return self.forward_suggestions_created + self.reverse_suggestions_created

    def record(self, result: ItemResult, direction: MatchDirection) -> None:
        forward = direction == MatchDirection.FORWARD
        if forward:
            self.transactions_processed += 1
        else:
            self.documents_processed += 1

        if not result.ok:
            if forward:
                self.transactions_failed += 1
            else:
                self.documents_skipped += 1
            self.failed_item_ids.append(result.item_id)
            return

        if not forward:
            self.documents_classified += 1
        if result.outcome == MatchOutcome.NO_MATCH_YET:
            self.no_match += 1
        elif result.created and result.outcome == MatchOutcome.AUTO_MATCHED:
            if forward:
                self.forward_auto_matched += 1
            else:
                self.reverse_auto_matched += 1
        elif result.created and result.outcome == MatchOutcome.SUGGESTED:
            if forward:
                self.forward_suggestions_created += 1
            else:
                self.reverse_suggestions_created += 1
        else:
            self.unchanged += 1


def _within_window(a: date | None, b: date | None, window_days: int) -> bool:
    # Undated records stay candidates; their date score is simply 0.
    if a is None or b is None:
        return True
    return abs((a - b).days) <= window_days


class BidirectionalMatcher:
    """Runs both passes for one team. One instance per run."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        team_id: UUID,
        config: MatchingConfig,
        similarity: SimilarityProvider,
        notifier: NotificationDispatcher,
    ) -> None:
        self.session_maker = session_maker
        self.team_id = team_id
        self.config = config
        self.similarity = similarity
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_new_transactions(self, db: AsyncSession, transaction_ids: Sequence[UUID]) -> list[Transaction]:
        """New transactions of the team that are not linked to a document yet."""
        if not transaction_ids:
            return []
        linked = select(InboxItem.transaction_id).where(InboxItem.transaction_id.is_not(None))
        result = await db.execute(
            select(Transaction)
            .where(Transaction.team_id == self.team_id)
            .where(Transaction.id.in_(list(transaction_ids)))
            .where(Transaction.id.not_in(linked))
        )
        by_id = {txn.id: txn for txn in result.scalars().all()}
        # Keep the caller's order; it is the tie-break input order.
        return [by_id[txn_id] for txn_id in dict.fromkeys(transaction_ids) if txn_id in by_id]

    async def load_pending_documents(self, db: AsyncSession) -> list[InboxItem]:
        result = await db.execute(
            select(InboxItem)
            .where(InboxItem.team_id == self.team_id)
            .where(InboxItem.status == InboxStatus.PENDING)
            .where(InboxItem.transaction_id.is_(None))
            .order_by(InboxItem.created_at, InboxItem.id)
        )
        return list(result.scalars().all())

    async def load_candidate_transactions(self, db: AsyncSession) -> list[Transaction]:
        linked = select(InboxItem.transaction_id).where(InboxItem.transaction_id.is_not(None))
        result = await db.execute(
            select(Transaction)
            .where(Transaction.team_id == self.team_id)
            .where(Transaction.id.not_in(linked))
            .order_by(Transaction.created_at, Transaction.id)
        )
        return list(result.scalars().all())

    async def _closed_pairs(
        self,
        db: AsyncSession,
        *,
        inbox_item_id: UUID | None = None,
        transaction_id: UUID | None = None,
    ) -> set[tuple[UUID, UUID]]:
        """Pairs a reviewer has already declined; they never come back."""
        stmt = select(MatchSuggestion.inbox_item_id, MatchSuggestion.transaction_id).where(
            MatchSuggestion.team_id == self.team_id,
            MatchSuggestion.status == SuggestionStatus.DECLINED,
        )
        if inbox_item_id is not None:
            stmt = stmt.where(MatchSuggestion.inbox_item_id == inbox_item_id)
        if transaction_id is not None:
            stmt = stmt.where(MatchSuggestion.transaction_id == transaction_id)
        result = await db.execute(stmt)
        return {(row.inbox_item_id, row.transaction_id) for row in result.all()}

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    async def _score(self, transaction: Transaction, inbox_item: InboxItem) -> ScoreBreakdown:
        embedding_score = await self.similarity.similarity(transaction, inbox_item)
        return score_match(transaction, inbox_item, embedding_score=embedding_score, config=self.config)

    # ------------------------------------------------------------------
    # Persistence of outcomes
    # ------------------------------------------------------------------

    async def _commit_auto_match(
        self,
        db: AsyncSession,
        transaction: Transaction,
        inbox_item: InboxItem,
        scores: ScoreBreakdown,
        direction: MatchDirection,
    ) -> CommitStatus:
        """Link the pair if both sides are still free.

        The conditional update only succeeds while the document is pending
        and unlinked; the unique link column rejects a transaction that
        another writer has already linked.
        """
        try:
            result = await db.execute(
                update(InboxItem)
                .where(InboxItem.id == inbox_item.id)
                .where(InboxItem.team_id == self.team_id)
                .where(InboxItem.status == InboxStatus.PENDING)
                .where(InboxItem.transaction_id.is_(None))
                .values(
                    status=InboxStatus.DONE,
                    transaction_id=transaction.id,
                    updated_at=datetime.now(UTC),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                return CommitStatus.DOCUMENT_TAKEN

            await self._write_suggestion(
                db,
                transaction,
                inbox_item,
                scores,
                direction,
                match_type=MatchType.AUTO_MATCHED,
                status=SuggestionStatus.CONFIRMED,
            )
            await db.execute(
                update(MatchSuggestion)
                .where(MatchSuggestion.inbox_item_id == inbox_item.id)
                .where(MatchSuggestion.transaction_id != transaction.id)
                .where(MatchSuggestion.status == SuggestionStatus.PENDING)
                .values(status=SuggestionStatus.EXPIRED, updated_at=datetime.now(UTC))
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except IntegrityError:
            # The transaction was linked to another document concurrently.
            await db.rollback()
            return CommitStatus.TRANSACTION_TAKEN
        return CommitStatus.CREATED

    async def _link_state(
        self,
        db: AsyncSession,
        transaction: Transaction,
        inbox_item: InboxItem,
    ) -> CommitStatus | None:
        """Which side of the pair, if any, has been linked since loading."""
        linked_document = await db.scalar(
            select(InboxItem.id).where(InboxItem.transaction_id == transaction.id).limit(1)
        )
        if linked_document is not None:
            return CommitStatus.TRANSACTION_TAKEN
        document = await db.execute(
            select(InboxItem.status, InboxItem.transaction_id).where(InboxItem.id == inbox_item.id)
        )
        row = document.one_or_none()
        if row is None or row.status != InboxStatus.PENDING or row.transaction_id is not None:
            return CommitStatus.DOCUMENT_TAKEN
        return None

    async def _write_suggestion(
        self,
        db: AsyncSession,
        transaction: Transaction,
        inbox_item: InboxItem,
        scores: ScoreBreakdown,
        direction: MatchDirection,
        *,
        match_type: MatchType,
        status: SuggestionStatus,
    ) -> bool:
        """Insert or refresh the pair's suggestion. Returns True when a row was created."""
        existing = await db.scalar(
            select(MatchSuggestion)
            .where(MatchSuggestion.inbox_item_id == inbox_item.id)
            .where(MatchSuggestion.transaction_id == transaction.id)
        )
        if existing is not None:
            # Reviewed pairs are never reopened as pending suggestions.
            if existing.status == SuggestionStatus.DECLINED:
                return False
            if existing.status != SuggestionStatus.PENDING and status == SuggestionStatus.PENDING:
                return False
            existing.confidence_score = scores.confidence
            existing.amount_score = scores.amount
            existing.currency_score = scores.currency
            existing.date_score = scores.date
            existing.embedding_score = scores.embedding
            existing.match_type = match_type
            existing.status = status
            await db.flush()
            return False

        db.add(
            MatchSuggestion(
                team_id=self.team_id,
                inbox_item_id=inbox_item.id,
                transaction_id=transaction.id,
                confidence_score=scores.confidence,
                amount_score=scores.amount,
                currency_score=scores.currency,
                date_score=scores.date,
                embedding_score=scores.embedding,
                match_type=match_type,
                direction=direction,
                status=status,
                match_details={
                    "transaction_date": transaction.txn_date.isoformat() if transaction.txn_date else None,
                    "document_date": inbox_item.document_date.isoformat() if inbox_item.document_date else None,
                    "auto_match_threshold": self.config.auto_match_threshold,
                    "suggest_threshold": self.config.suggest_threshold,
                },
            )
        )
        await db.flush()
        return True

    async def _commit_suggestion(
        self,
        db: AsyncSession,
        transaction: Transaction,
        inbox_item: InboxItem,
        scores: ScoreBreakdown,
        direction: MatchDirection,
    ) -> CommitStatus:
        """Store a pending suggestion unless either side is already linked."""
        taken = await self._link_state(db, transaction, inbox_item)
        if taken is not None:
            await db.rollback()
            return taken
        try:
            created = await self._write_suggestion(
                db,
                transaction,
                inbox_item,
                scores,
                direction,
                match_type=MatchType.SUGGESTED,
                status=SuggestionStatus.PENDING,
            )
            await db.commit()
        except IntegrityError:
            # A concurrent writer stored the same pair first.
            await db.rollback()
            return CommitStatus.UNCHANGED
        return CommitStatus.CREATED if created else CommitStatus.UNCHANGED

    async def _notify(
        self,
        outcome: MatchOutcome,
        transaction: Transaction,
        inbox_item: InboxItem,
        scores: ScoreBreakdown,
        direction: MatchDirection,
    ) -> None:
        notification = MatchNotification(
            outcome=outcome,
            team_id=self.team_id,
            transaction_id=transaction.id,
            inbox_item_id=inbox_item.id,
            scores=scores,
            direction=direction,
        )
        try:
            await self.notifier.dispatch(notification)
        except Exception as exc:
            log_exception(
                logger,
                exc,
                "Notification dispatch failed",
                level="warning",
                include_traceback=False,
                team_id=str(self.team_id),
                transaction_id=str(transaction.id),
                inbox_id=str(inbox_item.id),
            )

    async def _apply_outcome(
        self,
        db: AsyncSession,
        outcome: MatchOutcome,
        transaction: Transaction,
        inbox_item: InboxItem,
        scores: ScoreBreakdown,
        direction: MatchDirection,
    ) -> CommitStatus:
        if outcome == MatchOutcome.AUTO_MATCHED:
            status = await self._commit_auto_match(db, transaction, inbox_item, scores, direction)
        else:
            status = await self._commit_suggestion(db, transaction, inbox_item, scores, direction)

        if status == CommitStatus.CREATED:
            await self._notify(outcome, transaction, inbox_item, scores, direction)
        elif status in (CommitStatus.DOCUMENT_TAKEN, CommitStatus.TRANSACTION_TAKEN):
            logger.info(
                "Pair lost to a concurrent writer",
                team_id=str(self.team_id),
                transaction_id=str(transaction.id),
                inbox_id=str(inbox_item.id),
                outcome=outcome.value,
                taken=status.value,
            )
        return status

    async def _commit_ranked(
        self,
        db: AsyncSession,
        subject: Transaction | InboxItem,
        scored: Sequence[ScoredCandidate],
        direction: MatchDirection,
    ) -> ItemResult:
        """Commit the best candidate still available, walking down the ranking.

        A candidate linked elsewhere since loading is passed over for the
        next one. Once the subject itself is linked there is nothing left
        to record for it.
        """
        forward = direction == MatchDirection.FORWARD
        candidate_taken = CommitStatus.DOCUMENT_TAKEN if forward else CommitStatus.TRANSACTION_TAKEN
        for ranked, outcome in qualifying_candidates(scored, self.config):
            if forward:
                transaction, inbox_item = subject, ranked.candidate
            else:
                transaction, inbox_item = ranked.candidate, subject
            status = await self._apply_outcome(db, outcome, transaction, inbox_item, ranked.scores, direction)
            if status == candidate_taken:
                continue
            if status in (CommitStatus.CREATED, CommitStatus.UNCHANGED):
                return ItemResult(
                    item_id=subject.id,
                    ok=True,
                    outcome=outcome,
                    matched_id=ranked.candidate.id,
                    created=status == CommitStatus.CREATED,
                )
            break
        return ItemResult(item_id=subject.id, ok=True, outcome=MatchOutcome.NO_MATCH_YET)

    # ------------------------------------------------------------------
    # Forward pass
    # ------------------------------------------------------------------

    async def _evaluate_transaction(
        self,
        transaction: Transaction,
        documents: Sequence[InboxItem],
    ) -> ItemResult:
        async with self.session_maker() as db:
            declined = await self._closed_pairs(db, transaction_id=transaction.id)
            scored: list[ScoredCandidate[InboxItem]] = []
            for index, doc in enumerate(documents):
                if (doc.id, transaction.id) in declined:
                    continue
                if not _within_window(transaction.txn_date, doc.document_date, self.config.date_window_days):
                    continue
                scores = await self._score(transaction, doc)
                scored.append(ScoredCandidate(doc, scores, doc.document_date, index))

            return await self._commit_ranked(db, transaction, scored, MatchDirection.FORWARD)

    async def forward_pass(
        self,
        transactions: Sequence[Transaction],
        documents: Sequence[InboxItem],
    ) -> ForwardPassResult:
        """Score each new transaction against the pending documents, one at a time."""
        consumed: set[UUID] = set()
        results: list[ItemResult] = []
        for transaction in transactions:
            available = [doc for doc in documents if doc.id not in consumed]
            try:
                result = await self._evaluate_transaction(transaction, available)
            except Exception as exc:
                log_exception(
                    logger,
                    exc,
                    "Forward pass item failed",
                    team_id=str(self.team_id),
                    transaction_id=str(transaction.id),
                )
                result = ItemResult.failed(transaction.id, exc)
            if result.ok and result.created and result.outcome == MatchOutcome.AUTO_MATCHED:
                consumed.add(result.matched_id)
            results.append(result)
        return ForwardPassResult(consumed_inbox_ids=frozenset(consumed), results=tuple(results))

    # ------------------------------------------------------------------
    # Reverse pass
    # ------------------------------------------------------------------

    async def _evaluate_document(
        self,
        inbox_item: InboxItem,
        transactions: Sequence[Transaction],
    ) -> ItemResult:
        async with self.session_maker() as db:
            declined = await self._closed_pairs(db, inbox_item_id=inbox_item.id)
            scored: list[ScoredCandidate[Transaction]] = []
            for index, txn in enumerate(transactions):
                if (inbox_item.id, txn.id) in declined:
                    continue
                if not _within_window(txn.txn_date, inbox_item.document_date, self.config.date_window_days):
                    continue
                scores = await self._score(txn, inbox_item)
                scored.append(ScoredCandidate(txn, scores, txn.txn_date, index))

            return await self._commit_ranked(db, inbox_item, scored, MatchDirection.REVERSE)

    async def _evaluate_document_isolated(
        self,
        inbox_item: InboxItem,
        transactions: Sequence[Transaction],
    ) -> ItemResult:
        try:
            return await self._evaluate_document(inbox_item, transactions)
        except Exception as exc:
            log_exception(
                logger,
                exc,
                "Reverse pass item failed",
                team_id=str(self.team_id),
                inbox_id=str(inbox_item.id),
            )
            return ItemResult.failed(inbox_item.id, exc)

    async def reverse_pass(
        self,
        documents: Sequence[InboxItem],
        transactions: Sequence[Transaction],
        consumed_inbox_ids: frozenset[UUID],
    ) -> list[ItemResult]:
        """Score the unconsumed pending documents in concurrent batches.

        Each batch waits for all of its items before the next one starts; a
        failing item is logged and skipped without affecting its siblings.
        Transactions auto-matched by an earlier batch are no longer offered
        to later ones.
        """
        remaining = [doc for doc in documents if doc.id not in consumed_inbox_ids]
        batch_size = self.config.reverse_batch_size
        linked_transaction_ids: set[UUID] = set()
        results: list[ItemResult] = []
        for start in range(0, len(remaining), batch_size):
            batch = remaining[start : start + batch_size]
            available = [txn for txn in transactions if txn.id not in linked_transaction_ids]
            batch_results = await asyncio.gather(
                *(self._evaluate_document_isolated(doc, available) for doc in batch)
            )
            for result in batch_results:
                if result.ok and result.created and result.outcome == MatchOutcome.AUTO_MATCHED:
                    linked_transaction_ids.add(result.matched_id)
            results.extend(batch_results)
            logger.debug(
                "Reverse pass batch finished",
                team_id=str(self.team_id),
                batch_number=start // batch_size + 1,
                batch_size=len(batch),
                failed=sum(1 for r in batch_results if not r.ok),
            )
        return results

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, new_transaction_ids: Sequence[UUID]) -> MatchRunSummary:
        summary = MatchRunSummary(team_id=self.team_id)
        log_context = {"team_id": str(self.team_id)}

        try:
            async with self.session_maker() as db:
                if self.config.calibration_enabled:
                    calibration = await get_team_calibration(db, self.team_id, self.config)
                    self.config = calibration.apply(self.config)
                transactions = await self.load_new_transactions(db, new_transaction_ids)
                documents = await self.load_pending_documents(db)
        except SQLAlchemyError as exc:
            raise MatchingRunError(
                "Failed to load matching inputs", team_id=self.team_id, phase=summary.phase.value
            ) from exc

        summary.phase = MatchRunPhase.FORWARD_PASS
        async with async_log_timing("forward_pass", logger=logger, **log_context) as timing:
            forward = await self.forward_pass(transactions, documents)
            timing["transactions"] = len(transactions)
            timing["consumed"] = len(forward.consumed_inbox_ids)
        for result in forward.results:
            summary.record(result, MatchDirection.FORWARD)

        summary.phase = MatchRunPhase.REVERSE_PASS
        try:
            async with self.session_maker() as db:
                documents = await self.load_pending_documents(db)
                candidates = await self.load_candidate_transactions(db)
        except SQLAlchemyError as exc:
            raise MatchingRunError(
                "Failed to load reverse pass inputs", team_id=self.team_id, phase=summary.phase.value
            ) from exc

        async with async_log_timing("reverse_pass", logger=logger, **log_context) as timing:
            reverse = await self.reverse_pass(documents, candidates, forward.consumed_inbox_ids)
            timing["documents"] = len(reverse)
        for result in reverse:
            summary.record(result, MatchDirection.REVERSE)

        summary.phase = MatchRunPhase.COMPLETED
        logger.info(
            "Matching run completed",
            team_id=str(self.team_id),
            transactions_processed=summary.transactions_processed,
            documents_processed=summary.documents_processed,
            auto_matched=summary.auto_matched,
            suggestions_created=summary.suggestions_created,
            no_match=summary.no_match,
            unchanged=summary.unchanged,
            failed=len(summary.failed_item_ids),
        )
        return summary


async def run_matching(
    session_maker: async_sessionmaker[AsyncSession],
    *,
    team_id: UUID,
    new_transaction_ids: Sequence[UUID],
    config: MatchingConfig | None = None,
    similarity: SimilarityProvider | None = None,
    notifier: NotificationDispatcher | None = None,
) -> MatchRunSummary:
    """Run the forward and reverse passes for a team.

    Raises ``MatchingRunTimeout`` when the run exceeds its duration budget
    and ``MatchingRunError`` when its inputs cannot be loaded. Outcomes
    committed before either error stay committed.
    """
    matcher = BidirectionalMatcher(
        session_maker,
        team_id=team_id,
        config=config or load_matching_config(),
        similarity=similarity or get_similarity_provider(),
        notifier=notifier or LoggingNotificationDispatcher(),
    )
    timeout = matcher.config.run_timeout_seconds
    try:
        return await asyncio.wait_for(matcher.run(new_transaction_ids), timeout=timeout)
    except TimeoutError as exc:
        logger.error("Matching run timed out", team_id=str(team_id), timeout_seconds=timeout)
        raise MatchingRunTimeout(
            f"Matching run exceeded {timeout}s", team_id=team_id, phase="timeout"
        ) from exc
