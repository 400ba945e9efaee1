"""Transaction batch deduplication keyed on fundamental values."""

from collections import Counter
from collections.abc import Iterable, Sequence
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.logger import get_logger
from reconciler.models import Transaction
from reconciler.services.transaction_key import (
    MISSING_DATE_TOKEN,
    amount_value,
    generate_transaction_key,
    parse_amount_field,
)

logger = get_logger(__name__)

R = TypeVar("R")


def merge_transactions(existing: Sequence[R], incoming: Sequence[R]) -> list[R]:
    """Append the incoming records whose key is not already in ``existing``.

    Order of ``existing`` is preserved and new records keep their relative
    order. Merging the same batch twice is a no-op after the first merge.
    """
    if not incoming:
        return list(existing)
    if not existing:
        return list(incoming)

    existing_keys = {generate_transaction_key(record) for record in existing}
    additions = [record for record in incoming if generate_transaction_key(record) not in existing_keys]

    if len(additions) != len(incoming):
        logger.info(
            "Dropped re-delivered transactions during merge",
            existing_count=len(existing),
            incoming_count=len(incoming),
            dropped_count=len(incoming) - len(additions),
        )
    return [*existing, *additions]


def find_duplicate_keys(records: Iterable[Any]) -> set[str]:
    """Report keys occurring more than once in a single list. Does not resolve them."""
    counts = Counter(generate_transaction_key(record) for record in records)
    duplicates = {key for key, count in counts.items() if count > 1}

    undated = sorted(key for key in duplicates if key.startswith(f"{MISSING_DATE_TOKEN}-"))
    if undated:
        logger.warning(
            "Duplicate keys without a fundamental date are low-confidence",
            keys=undated,
        )
    return duplicates


def _parse_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _record_value(record: Any, *names: str) -> Any:
    for name in names:
        if isinstance(record, dict) and name in record:
            return record[name]
    return None


def _record_currency(record: dict[str, Any]) -> str | None:
    raw_amount = record.get("amount")
    currency = record.get("currency")
    if currency is None and isinstance(raw_amount, dict):
        currency = raw_amount.get("currency")
    return _upper_code(currency)


def _upper_code(value: Any) -> str | None:
    return str(value).upper()[:3] if value else None


def _record_base_amount(record: dict[str, Any]) -> Decimal | None:
    value = _record_value(record, "baseAmount", "base_amount")
    if value is None:
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def _record_amount(record: dict[str, Any]) -> Decimal:
    value = amount_value(parse_amount_field(record.get("amount")))
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation:
        return Decimal("0.00")


async def upsert_transactions(
    db: AsyncSession,
    *,
    team_id: UUID,
    records: Sequence[dict[str, Any]],
) -> list[Transaction]:
    """Persist provider records, skipping re-deliveries of known transactions.

    A record is a re-delivery when its key already exists for the team or
    appeared earlier in the same batch. Returns only the transactions that
    were created, i.e. the ones new to the matcher.
    """
    if not records:
        return []

    keyed = [(generate_transaction_key(record), record) for record in records]
    result = await db.execute(
        select(Transaction.dedup_key)
        .where(Transaction.team_id == team_id)
        .where(Transaction.dedup_key.in_(sorted({key for key, _ in keyed})))
    )
    known_keys = set(result.scalars().all())

    created: list[Transaction] = []
    for key, record in keyed:
        if key in known_keys:
            continue
        known_keys.add(key)
        txn = Transaction(
            team_id=team_id,
            booking_date=_parse_date(_record_value(record, "bookingDate", "booking_date")),
            value_date=_parse_date(_record_value(record, "valueDate", "value_date")),
            amount=_record_amount(record),
            currency=_record_currency(record),
            base_amount=_record_base_amount(record),
            base_currency=_upper_code(_record_value(record, "baseCurrency", "base_currency")),
            name=str(record.get("name") or ""),
            description=record.get("description"),
            dedup_key=key,
            embedding=record.get("embedding"),
        )
        db.add(txn)
        created.append(txn)

    await db.flush()

    logger.info(
        "Upserted transaction batch",
        team_id=str(team_id),
        received=len(records),
        created=len(created),
        skipped=len(records) - len(created),
    )
    return created
