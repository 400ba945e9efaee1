"""Tests for transaction batch deduplication.

GIVEN: Provider batches that may re-deliver the same posted movement
WHEN: Merging batches or upserting them into the store
THEN: Each real-world transaction is kept exactly once
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from reconciler.models import Transaction
from reconciler.services.deduplication import (
    find_duplicate_keys,
    merge_transactions,
    upsert_transactions,
)
from reconciler.services.transaction_key import generate_transaction_key

A = [
    {"bookingDate": "2024-01-10", "amount": -20.0, "name": "Coffee"},
    {"bookingDate": "2024-01-11", "amount": 1500, "name": "Salary"},
]
B = [
    {"bookingDate": "2024-01-11", "amount": {"amount": "1500.00", "currency": "EUR"}, "name": "Salary (resync)"},
    {"bookingDate": "2024-01-12", "amount": -9.99, "name": "Streaming"},
]


class TestMergeTransactions:
    def test_redelivery_yields_single_entry(self):
        """GIVEN: Two deliveries of the same transaction
        WHEN: Merging them
        THEN: Exactly one entry with the expected key remains"""
        delivery = {"bookingDate": "2024-01-15", "amount": -100.50}
        merged = merge_transactions([delivery], [dict(delivery)])

        assert len(merged) == 1
        assert generate_transaction_key(merged[0]) == "2024-01-15-100.5-DBIT"

    def test_keeps_existing_order_and_appends_new(self):
        merged = merge_transactions(A, B)

        assert merged[:2] == A
        assert merged[2:] == [B[1]]

    def test_idempotent(self):
        once = merge_transactions(A, B)
        assert merge_transactions(once, B) == once

    def test_identity_laws(self):
        assert merge_transactions(A, []) == A
        assert merge_transactions([], A) == A
        assert merge_transactions([], []) == []

    def test_returns_new_list(self):
        merged = merge_transactions(A, [])
        assert merged is not A


class TestFindDuplicateKeys:
    def test_reports_keys_seen_more_than_once(self):
        records = [*A, *B]
        assert find_duplicate_keys(records) == {"2024-01-11-1500-CRDT"}

    def test_no_duplicates(self):
        assert find_duplicate_keys(A) == set()
        assert find_duplicate_keys([]) == set()

    def test_undated_duplicates_are_reported(self):
        records = [{"amount": 5}, {"amount": "5"}]
        assert find_duplicate_keys(records) == {"undefined-5-CRDT"}

    def test_does_not_mutate_input(self):
        records = [*A, *B]
        snapshot = list(records)
        find_duplicate_keys(records)
        assert records == snapshot


class TestUpsertTransactions:
    @pytest.mark.asyncio
    async def test_creates_new_and_skips_known(self, db, team_id):
        """GIVEN: A stored batch
        WHEN: The provider re-delivers it with one new record
        THEN: Only the new record is created"""
        created = await upsert_transactions(db, team_id=team_id, records=A)
        await db.commit()
        assert len(created) == 2

        created_again = await upsert_transactions(db, team_id=team_id, records=B)
        await db.commit()

        assert [t.name for t in created_again] == ["Streaming"]
        count = await db.scalar(select(func.count(Transaction.id)).where(Transaction.team_id == team_id))
        assert count == 3

    @pytest.mark.asyncio
    async def test_dedupes_within_batch(self, db, team_id):
        created = await upsert_transactions(db, team_id=team_id, records=[B[0], A[1]])
        assert len(created) == 1

    @pytest.mark.asyncio
    async def test_team_scoped(self, db, team_id):
        await upsert_transactions(db, team_id=team_id, records=A)
        other = await upsert_transactions(db, team_id=uuid4(), records=A)
        assert len(other) == 2

    @pytest.mark.asyncio
    async def test_persists_fundamentals(self, db, team_id):
        created = await upsert_transactions(db, team_id=team_id, records=[B[0]])
        await db.commit()

        txn = created[0]
        assert txn.booking_date == date(2024, 1, 11)
        assert txn.amount == Decimal("1500.00")
        assert txn.currency == "EUR"
        assert txn.dedup_key == "2024-01-11-1500-CRDT"
        assert txn.base_amount is None
        assert txn.base_currency is None

    @pytest.mark.asyncio
    async def test_persists_base_currency_amount(self, db, team_id):
        record = {
            "bookingDate": "2024-02-01",
            "amount": {"amount": "-120.00", "currency": "USD"},
            "baseAmount": -110.4,
            "baseCurrency": "eur",
        }
        created = await upsert_transactions(db, team_id=team_id, records=[record])
        await db.commit()

        txn = created[0]
        assert txn.currency == "USD"
        assert txn.base_amount == Decimal("-110.40")
        assert txn.base_currency == "EUR"

    @pytest.mark.asyncio
    async def test_empty_batch(self, db, team_id):
        assert await upsert_transactions(db, team_id=team_id, records=[]) == []
