"""Stable transaction identity derived from fundamental values.

Banking providers re-deliver the same posted movement (retries, resyncs,
historical backfills) without a reliable upstream id. The key built here
only uses values that never change for a posted transaction:

    {date}-{absoluteAmount}-{CRDT|DBIT}

Equality is by string comparison, so the textual form of every component
is part of the contract.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from typing import Any

CREDIT = "CRDT"
DEBIT = "DBIT"

# Date token used when a record carries neither bookingDate nor valueDate.
MISSING_DATE_TOKEN = "undefined"

_LEADING_NUMBER = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


@dataclass(frozen=True)
class NumericAmount:
    """Amount delivered as a bare number."""

    value: float


@dataclass(frozen=True)
class ObjectAmount:
    """Amount delivered as an ``{amount, currency}`` pair with a string amount."""

    amount: str
    currency: str | None = None


Amount = NumericAmount | ObjectAmount


def parse_amount_field(raw: Any) -> Amount:
    """Tag a raw provider amount field.

    Mappings become ``ObjectAmount``; everything else is treated as a bare
    number (``None`` and unparseable values end up as zero downstream).
    """
    if isinstance(raw, (NumericAmount, ObjectAmount)):
        return raw
    if isinstance(raw, Mapping):
        value = raw.get("amount")
        return ObjectAmount(amount="" if value is None else str(value), currency=raw.get("currency"))
    if isinstance(raw, bool) or raw is None:
        return NumericAmount(0.0)
    if isinstance(raw, (int, float)):
        return NumericAmount(float(raw))
    return ObjectAmount(amount=str(raw))


def parse_float_prefix(value: str) -> float:
    """Parse the leading number of a string; zero when there is none."""
    matched = _LEADING_NUMBER.match(value)
    if not matched:
        return 0.0
    try:
        parsed = float(matched.group(0))
    except ValueError:
        return 0.0
    return parsed if math.isfinite(parsed) else 0.0


def amount_value(amount: Amount) -> float:
    """Signed numeric value of a tagged amount. Never raises."""
    if isinstance(amount, NumericAmount):
        value = amount.value
        return value if math.isfinite(value) else 0.0
    if isinstance(amount, ObjectAmount):
        return parse_float_prefix(amount.amount)
    raise TypeError(f"Unsupported amount type: {type(amount).__name__}")


def direction_of(value: float) -> str:
    """CRDT for amounts >= 0, DBIT below zero."""
    return CREDIT if value >= 0 else DEBIT


def format_number(value: float) -> str:
    """Shortest round-trip text for a number, as JavaScript prints it.

    Integers have no fraction. Magnitudes of at least 1e-6 and below 1e21
    use plain decimal notation, anything outside an unpadded exponent
    (``1e-7``, ``1.5e+21``).
    """
    if value == 0:
        return "0"
    text = repr(value)
    mantissa, _, exponent_text = text.partition("e")
    if not exponent_text:
        return text[:-2] if text.endswith(".0") else text
    exponent = int(exponent_text)
    if exponent <= -7 or exponent >= 21:
        return f"{mantissa}e{'+' if exponent > 0 else '-'}{abs(exponent)}"
    sign = "-" if mantissa.startswith("-") else ""
    digits = mantissa.lstrip("-").replace(".", "")
    if exponent < 0:
        return f"{sign}0.{'0' * (-exponent - 1)}{digits}"
    # repr switches to exponent form from 1e16 on; pad the integer part back out.
    if len(digits) <= exponent + 1:
        return sign + digits + "0" * (exponent + 1 - len(digits))
    return f"{sign}{digits[: exponent + 1]}.{digits[exponent + 1 :]}"


def _format_date(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _field(record: Any, *names: str) -> Any:
    for name in names:
        if isinstance(record, Mapping):
            if name in record:
                return record[name]
        elif hasattr(record, name):
            return getattr(record, name)
    return None


def key_date(record: Any) -> str:
    """Booking date preferred, value date as fallback, literal token if neither."""
    booking = _format_date(_field(record, "bookingDate", "booking_date"))
    if booking is not None:
        return booking
    value = _format_date(_field(record, "valueDate", "value_date"))
    if value is not None:
        return value
    return MISSING_DATE_TOKEN


def has_fundamental_date(record: Any) -> bool:
    """False when the key falls back to the missing-date token."""
    return key_date(record) != MISSING_DATE_TOKEN


def generate_transaction_key(record: Any) -> str:
    """Derive the dedup key of a provider record.

    ``record`` is a mapping (``bookingDate``/``valueDate``/``amount``, the
    provider shape) or any object exposing ``booking_date``/``value_date``/
    ``amount`` attributes.
    """
    value = amount_value(parse_amount_field(_field(record, "amount")))
    return f"{key_date(record)}-{format_number(abs(value))}-{direction_of(value)}"
