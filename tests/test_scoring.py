"""Tests for match scoring."""

from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from reconciler.services.policy import MatchOutcome, classify
from reconciler.services.scoring import (
    DEFAULT_CONFIG,
    base_amounts,
    combine_scores,
    is_cross_currency_match,
    normalize_text,
    score_amount,
    score_currency,
    score_date,
    score_description,
    score_match,
)
from tests.factories import InboxItemFactory, TransactionFactory

BASE_DATE = date(2024, 1, 15)


class TestAmountScore:
    def test_equal_amounts(self):
        assert score_amount(Decimal("250.00"), Decimal("250.00"), DEFAULT_CONFIG) == 1.0

    def test_opposite_signs_compare_absolute_values(self):
        assert score_amount(Decimal("-250.00"), Decimal("250.00"), DEFAULT_CONFIG) == 1.0

    def test_linear_decay(self):
        assert score_amount(100, 90, DEFAULT_CONFIG) == 0.5

    def test_zero_at_tolerance_and_beyond(self):
        assert score_amount(100, 80, DEFAULT_CONFIG) == 0.0
        assert score_amount(100, 10, DEFAULT_CONFIG) == 0.0

    def test_both_zero(self):
        assert score_amount(0, 0, DEFAULT_CONFIG) == 1.0

    def test_missing_or_malformed(self):
        assert score_amount(None, 10, DEFAULT_CONFIG) == 0.0
        assert score_amount("abc", 10, DEFAULT_CONFIG) == 0.0
        assert score_amount(float("inf"), 10, DEFAULT_CONFIG) == 0.0


class TestCurrencyScore:
    def test_match_is_case_insensitive(self):
        assert score_currency("eur", "EUR", DEFAULT_CONFIG) == 1.0

    def test_mismatch_is_reduced_not_zero(self):
        assert score_currency("EUR", "USD", DEFAULT_CONFIG) == 0.3

    def test_missing_is_minimum(self):
        assert score_currency(None, "EUR", DEFAULT_CONFIG) == 0.0
        assert score_currency("  ", "EUR", DEFAULT_CONFIG) == 0.0


class TestDateScore:
    @pytest.mark.parametrize(
        ("offset", "expected"),
        [
            (0, 1.0),
            (1, 0.95),
            (2, 0.85),
            (3, 0.85),
            (5, 0.75),
            (10, 0.60),
            (14, 0.60),
            (22, 0.45),
            (30, 0.30),
            (31, 0.0),
        ],
    )
    def test_tiers(self, offset, expected):
        assert score_date(BASE_DATE, BASE_DATE - timedelta(days=offset), DEFAULT_CONFIG) == expected

    def test_symmetric(self):
        later = BASE_DATE + timedelta(days=5)
        assert score_date(BASE_DATE, later, DEFAULT_CONFIG) == score_date(later, BASE_DATE, DEFAULT_CONFIG)

    def test_never_increases_with_distance(self):
        scores = [score_date(BASE_DATE, BASE_DATE + timedelta(days=d), DEFAULT_CONFIG) for d in range(40)]
        assert all(a >= b for a, b in zip(scores, scores[1:], strict=False))

    def test_missing_date(self):
        assert score_date(None, BASE_DATE, DEFAULT_CONFIG) == 0.0

    def test_short_window(self):
        config = replace(DEFAULT_CONFIG, date_window_days=10)
        assert score_date(BASE_DATE, BASE_DATE + timedelta(days=10), config) == 0.60
        assert score_date(BASE_DATE, BASE_DATE + timedelta(days=11), config) == 0.0


class TestDescriptionScore:
    def test_normalize_text(self):
        assert normalize_text("  ACME, Inc.  #123 ") == "acme inc 123"

    def test_identical_text(self):
        assert score_description("Office Supplies GmbH", "office supplies gmbh") == 1.0

    def test_unrelated_text_scores_low(self):
        assert score_description("Office Supplies GmbH", "Airline tickets") < 0.4

    def test_empty_text(self):
        assert score_description("", "x") == 0.0
        assert score_description("!!!", "x") == 0.0


class TestCombinedScore:
    def test_weighted_mean(self):
        score = combine_scores(amount=1.0, currency=1.0, date_score=1.0, embedding=0.9, config=DEFAULT_CONFIG)
        assert score == 0.97

    def test_bounded(self):
        assert combine_scores(amount=5, currency=5, date_score=5, embedding=5, config=DEFAULT_CONFIG) == 1.0
        assert combine_scores(amount=-1, currency=-1, date_score=-1, embedding=-1, config=DEFAULT_CONFIG) == 0.0

    def test_malformed_records_degrade_to_zero(self):
        breakdown = score_match(SimpleNamespace(), SimpleNamespace(), embedding_score=None, config=DEFAULT_CONFIG)
        assert breakdown.confidence == 0.0
        assert breakdown.as_dict() == {
            "amount": 0.0,
            "currency": 0.0,
            "date": 0.0,
            "embedding": 0.0,
            "confidence": 0.0,
        }

    def test_nan_embedding_is_ignored(self):
        txn = TransactionFactory.build()
        doc = InboxItemFactory.build()
        breakdown = score_match(txn, doc, embedding_score=float("nan"), config=DEFAULT_CONFIG)
        assert breakdown.embedding == 0.0
        assert 0.0 <= breakdown.confidence <= 1.0

    def test_exact_pair_scores_above_auto_cut_point(self):
        """GIVEN: Debit -250.00 and a 250.00 document on the same day, same currency
        WHEN: Scoring with high text similarity
        THEN: The combined score reaches the auto-match cut-point"""
        txn = TransactionFactory.build(amount=Decimal("-250.00"), booking_date=BASE_DATE)
        doc = InboxItemFactory.build(amount=Decimal("250.00"), document_date=BASE_DATE)

        breakdown = score_match(txn, doc, embedding_score=0.9, config=DEFAULT_CONFIG)

        assert breakdown.confidence >= DEFAULT_CONFIG.auto_match_threshold
        assert classify(breakdown.confidence, DEFAULT_CONFIG) == MatchOutcome.AUTO_MATCHED

    def test_twenty_days_apart_falls_into_suggest_band(self):
        txn = TransactionFactory.build(amount=Decimal("-250.00"), booking_date=BASE_DATE)
        doc = InboxItemFactory.build(amount=Decimal("250.00"), document_date=BASE_DATE - timedelta(days=20))

        breakdown = score_match(txn, doc, embedding_score=1.0, config=DEFAULT_CONFIG)

        assert breakdown.date == 0.4875
        assert 0.87 < breakdown.confidence < 0.875
        assert classify(breakdown.confidence, DEFAULT_CONFIG) == MatchOutcome.SUGGESTED

    def test_value_date_used_when_booking_date_missing(self):
        txn = TransactionFactory.build(booking_date=None, value_date=BASE_DATE)
        doc = InboxItemFactory.build(document_date=BASE_DATE)
        assert score_match(txn, doc, embedding_score=0.0, config=DEFAULT_CONFIG).date == 1.0


class TestCrossCurrencyAmounts:
    @pytest.mark.parametrize(
        ("base_a", "base_b", "expected"),
        [
            (50.0, 59.9, True),
            (50.0, 60.5, False),
            (500.0, 514.0, True),
            (500.0, 516.0, False),
            (2000.0, 2029.0, True),
            (2000.0, 2040.0, False),
            (-110.4, 110.0, True),
        ],
    )
    def test_tolerance_tiers(self, base_a, base_b, expected):
        assert is_cross_currency_match(base_a, base_b) is expected

    def test_base_amounts_scored_when_currencies_differ(self):
        """GIVEN: A USD debit and a EUR invoice, both converted to EUR
        WHEN: Scoring the pair
        THEN: Amounts are compared in EUR and the currency mismatch still counts"""
        txn = TransactionFactory.build(
            amount=Decimal("-120.00"), currency="USD", base_amount=Decimal("-110.40"), base_currency="EUR"
        )
        doc = InboxItemFactory.build(
            amount=Decimal("110.00"), currency="EUR", base_amount=Decimal("110.00"), base_currency="eur"
        )

        breakdown = score_match(txn, doc, embedding_score=1.0, config=DEFAULT_CONFIG)

        assert base_amounts(txn, doc) == (110.4, 110.0)
        assert breakdown.amount == score_amount(110.4, 110.0, DEFAULT_CONFIG)
        assert breakdown.amount > score_amount(txn.amount, doc.amount, DEFAULT_CONFIG)
        assert breakdown.currency == DEFAULT_CONFIG.currency_mismatch_score
        assert classify(breakdown.confidence, DEFAULT_CONFIG) == MatchOutcome.AUTO_MATCHED

    def test_base_amounts_outside_tolerance_score_zero(self):
        txn = TransactionFactory.build(
            amount=Decimal("-120.00"), currency="USD", base_amount=Decimal("-110.40"), base_currency="EUR"
        )
        doc = InboxItemFactory.build(
            amount=Decimal("80.00"), currency="EUR", base_amount=Decimal("80.00"), base_currency="EUR"
        )

        assert score_match(txn, doc, embedding_score=1.0, config=DEFAULT_CONFIG).amount == 0.0

    @pytest.mark.parametrize(
        ("txn_fields", "doc_fields"),
        [
            # Same currency: the booked amounts are authoritative.
            (
                {"currency": "EUR", "base_amount": Decimal("-90.00"), "base_currency": "EUR"},
                {"currency": "EUR", "base_amount": Decimal("90.00"), "base_currency": "EUR"},
            ),
            # Converted into different base currencies.
            (
                {"currency": "USD", "base_amount": Decimal("-110.40"), "base_currency": "EUR"},
                {"currency": "EUR", "base_amount": Decimal("95.00"), "base_currency": "GBP"},
            ),
            # One side never converted.
            (
                {"currency": "USD", "base_amount": Decimal("-110.40"), "base_currency": "EUR"},
                {"currency": "EUR", "base_amount": None, "base_currency": None},
            ),
            # Zero conversion.
            (
                {"currency": "USD", "base_amount": Decimal("0.00"), "base_currency": "EUR"},
                {"currency": "EUR", "base_amount": Decimal("110.00"), "base_currency": "EUR"},
            ),
        ],
    )
    def test_own_amounts_used_without_comparable_conversion(self, txn_fields, doc_fields):
        txn = TransactionFactory.build(amount=Decimal("-120.00"), **txn_fields)
        doc = InboxItemFactory.build(amount=Decimal("110.00"), **doc_fields)

        assert base_amounts(txn, doc) is None
        breakdown = score_match(txn, doc, embedding_score=1.0, config=DEFAULT_CONFIG)
        assert breakdown.amount == score_amount(Decimal("-120.00"), Decimal("110.00"), DEFAULT_CONFIG)
