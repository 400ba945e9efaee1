"""Transaction/document match scoring."""

from __future__ import annotations

import math
import os
import re
from dataclasses import asdict, dataclass, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from difflib import SequenceMatcher
from pathlib import Path
from typing import Any

import yaml

from reconciler.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class MatchingConfig:
    """Runtime configuration for scoring, classification and run limits."""

    weight_amount: float
    weight_currency: float
    weight_date: float
    weight_embedding: float
    auto_match_threshold: float
    suggest_threshold: float
    amount_tolerance: float
    currency_mismatch_score: float
    date_window_days: int
    reverse_batch_size: int
    run_timeout_seconds: float
    calibration_enabled: bool = False

    def __post_init__(self) -> None:
        weights = (self.weight_amount, self.weight_currency, self.weight_date, self.weight_embedding)
        if any(weight < 0 for weight in weights) or sum(weights) <= 0:
            raise ValueError("Score weights must be non-negative and not all zero")
        if not 0 <= self.suggest_threshold <= self.auto_match_threshold <= 1:
            raise ValueError("Thresholds must satisfy 0 <= suggest <= auto_match <= 1")
        if self.amount_tolerance <= 0:
            raise ValueError("amount_tolerance must be positive")
        if self.date_window_days < 1:
            raise ValueError("date_window_days must be at least 1")
        if self.reverse_batch_size < 1:
            raise ValueError("reverse_batch_size must be at least 1")
        if self.run_timeout_seconds <= 0:
            raise ValueError("run_timeout_seconds must be positive")


DEFAULT_CONFIG = MatchingConfig(
    weight_amount=0.35,
    weight_currency=0.10,
    weight_date=0.25,
    weight_embedding=0.30,
    auto_match_threshold=0.90,
    suggest_threshold=0.70,
    amount_tolerance=0.20,
    currency_mismatch_score=0.30,
    date_window_days=30,
    reverse_batch_size=10,
    run_timeout_seconds=300.0,
)

_config_cache: MatchingConfig | None = None


def _config_path() -> Path:
    override = os.getenv("MATCHING_CONFIG_PATH")
    if override:
        return Path(override)
    return Path(__file__).resolve().parents[2] / "config" / "matching.yaml"


def load_matching_config(force_reload: bool = False) -> MatchingConfig:
    """Load matching configuration from YAML if available.

    Caches the result to avoid repeated disk I/O. Threshold env vars win
    over the file.
    """
    global _config_cache
    if _config_cache is not None and not force_reload:
        return _config_cache

    config = DEFAULT_CONFIG
    config_path = _config_path()

    if config_path.exists():
        try:
            raw = yaml.safe_load(config_path.read_text()) or {}
            scoring = raw.get("scoring", {})
            weights = scoring.get("weights", {})
            thresholds = scoring.get("thresholds", {})
            tolerances = scoring.get("tolerances", {})
            run = raw.get("run", {})

            config = MatchingConfig(
                weight_amount=float(weights.get("amount", config.weight_amount)),
                weight_currency=float(weights.get("currency", config.weight_currency)),
                weight_date=float(weights.get("date", config.weight_date)),
                weight_embedding=float(weights.get("embedding", config.weight_embedding)),
                auto_match_threshold=float(thresholds.get("auto_match", config.auto_match_threshold)),
                suggest_threshold=float(thresholds.get("suggest", config.suggest_threshold)),
                amount_tolerance=float(tolerances.get("amount", config.amount_tolerance)),
                currency_mismatch_score=float(tolerances.get("currency_mismatch", config.currency_mismatch_score)),
                date_window_days=int(tolerances.get("date_window_days", config.date_window_days)),
                reverse_batch_size=int(run.get("reverse_batch_size", config.reverse_batch_size)),
                run_timeout_seconds=float(run.get("timeout_seconds", config.run_timeout_seconds)),
                calibration_enabled=bool(run.get("calibration_enabled", config.calibration_enabled)),
            )
        except Exception as e:
            logger.warning(
                "Failed to load matching config - using defaults",
                config_path=str(config_path),
                error=str(e),
                error_type=type(e).__name__,
            )
            config = DEFAULT_CONFIG

    auto_match_env = os.getenv("MATCHING_AUTO_MATCH_THRESHOLD")
    suggest_env = os.getenv("MATCHING_SUGGEST_THRESHOLD")
    if auto_match_env:
        config = replace(config, auto_match_threshold=float(auto_match_env))
    if suggest_env:
        config = replace(config, suggest_threshold=float(suggest_env))

    _config_cache = config
    return config


@dataclass(frozen=True)
class ScoreBreakdown:
    """Sub-scores and combined confidence for one transaction/document pair."""

    amount: float
    currency: float
    date: float
    embedding: float
    confidence: float

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


def _clamp(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return min(1.0, max(0.0, value))


def _to_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        number = float(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        return None
    return number if math.isfinite(number) else None


def normalize_text(value: str) -> str:
    """Normalize text for similarity comparison."""
    cleaned = re.sub(r"[^a-z0-9]+", " ", value.lower()).strip()
    return re.sub(r"\s+", " ", cleaned)


def score_description(a: str | None, b: str | None) -> float:
    """Score description similarity (0-1)."""
    if not a or not b:
        return 0.0
    norm_a = normalize_text(a)
    norm_b = normalize_text(b)
    if not norm_a or not norm_b:
        return 0.0
    ratio = SequenceMatcher(None, norm_a, norm_b).ratio()
    tokens_a = set(norm_a.split())
    tokens_b = set(norm_b.split())
    token_score = len(tokens_a & tokens_b) / len(tokens_a | tokens_b)
    return round(0.6 * ratio + 0.4 * token_score, 4)


def score_amount(txn_amount: Any, doc_amount: Any, config: MatchingConfig) -> float:
    """Score amount match (0-1) on absolute values.

    1.0 for equal amounts, linear decay with the relative difference, 0 at
    ``config.amount_tolerance`` and beyond.
    """
    a = _to_float(txn_amount)
    b = _to_float(doc_amount)
    if a is None or b is None:
        return 0.0
    a, b = abs(a), abs(b)
    largest = max(a, b)
    if largest == 0:
        return 1.0
    relative_diff = abs(a - b) / largest
    return round(_clamp(1.0 - relative_diff / config.amount_tolerance), 4)


def _currency_code(value: Any) -> str:
    return str(value or "").strip().upper()


def _cross_currency_tolerance(average: float) -> float:
    # Absolute slack for FX rate and fee differences, tighter as totals grow.
    if average < 100:
        return max(10.0, average * 0.04)
    if average < 1000:
        return max(15.0, average * 0.02)
    return max(25.0, average * 0.015)


def base_amounts(transaction: Any, inbox_item: Any) -> tuple[float, float] | None:
    """Absolute base-currency amounts of a cross-currency pair.

    Only returned when the two sides are in different currencies, both
    carry a conversion into the same base currency and neither converted
    amount is zero. Otherwise the pair is compared on its own amounts.
    """
    currency_a = _currency_code(getattr(transaction, "currency", None))
    currency_b = _currency_code(getattr(inbox_item, "currency", None))
    if not currency_a or not currency_b or currency_a == currency_b:
        return None
    base_a = _currency_code(getattr(transaction, "base_currency", None))
    base_b = _currency_code(getattr(inbox_item, "base_currency", None))
    if not base_a or base_a != base_b:
        return None
    amount_a = _to_float(getattr(transaction, "base_amount", None))
    amount_b = _to_float(getattr(inbox_item, "base_amount", None))
    if not amount_a or not amount_b:
        return None
    return abs(amount_a), abs(amount_b)


def is_cross_currency_match(base_a: float, base_b: float) -> bool:
    """Whether two base-currency amounts are close enough to be one payment."""
    average = (abs(base_a) + abs(base_b)) / 2
    return abs(abs(base_a) - abs(base_b)) < _cross_currency_tolerance(average)


def score_currency(txn_currency: str | None, doc_currency: str | None, config: MatchingConfig) -> float:
    """Score currency agreement (0-1). Missing data scores the minimum."""
    a = (txn_currency or "").strip().upper()
    b = (doc_currency or "").strip().upper()
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return _clamp(config.currency_mismatch_score)


def score_date(txn_date: date | None, doc_date: date | None, config: MatchingConfig) -> float:
    """Score date proximity (0-1)."""
    # Tiers:
    # - Same day: 1.0
    # - 1 day: 0.95, 3 days: 0.85, 7 days: 0.75, 14 days: 0.60
    # - Then linear down to 0.30 at the window edge
    # - Beyond config.date_window_days: 0
    if txn_date is None or doc_date is None:
        return 0.0
    diff_days = abs((txn_date - doc_date).days)
    window = config.date_window_days
    if diff_days > window:
        return 0.0
    if diff_days == 0:
        return 1.0
    if diff_days <= 1:
        return 0.95
    if diff_days <= 3:
        return 0.85
    if diff_days <= 7:
        return 0.75
    if diff_days <= 14 or window <= 14:
        return 0.60
    return round(0.60 - 0.30 * (diff_days - 14) / (window - 14), 4)


def combine_scores(
    *,
    amount: float,
    currency: float,
    date_score: float,
    embedding: float,
    config: MatchingConfig,
) -> float:
    """Weighted mean of the sub-scores, bounded to [0, 1]."""
    total_weight = config.weight_amount + config.weight_currency + config.weight_date + config.weight_embedding
    if total_weight <= 0:
        return 0.0
    weighted = (
        _clamp(amount) * config.weight_amount
        + _clamp(currency) * config.weight_currency
        + _clamp(date_score) * config.weight_date
        + _clamp(embedding) * config.weight_embedding
    )
    return round(_clamp(weighted / total_weight), 4)


def score_match(
    transaction: Any,
    inbox_item: Any,
    *,
    embedding_score: float | None,
    config: MatchingConfig,
) -> ScoreBreakdown:
    """Score one transaction against one document.

    Works on anything exposing the model attributes (``amount``,
    ``currency``, ``txn_date`` / ``document_date``). Missing values degrade
    the relevant sub-score to 0 instead of failing.

    When the currencies differ but both sides were converted into the same
    base currency, the amount sub-score compares the converted amounts and
    is 0 unless they fall within the cross-currency tolerance.
    """
    txn_date = getattr(transaction, "txn_date", None)
    doc_date = getattr(inbox_item, "document_date", None)

    converted = base_amounts(transaction, inbox_item)
    if converted is None:
        amount = score_amount(getattr(transaction, "amount", None), getattr(inbox_item, "amount", None), config)
    elif is_cross_currency_match(*converted):
        amount = score_amount(*converted, config)
    else:
        amount = 0.0
    currency = score_currency(getattr(transaction, "currency", None), getattr(inbox_item, "currency", None), config)
    date_score = score_date(txn_date, doc_date, config)
    embedding = round(_clamp(embedding_score if embedding_score is not None else 0.0), 4)

    confidence = combine_scores(
        amount=amount,
        currency=currency,
        date_score=date_score,
        embedding=embedding,
        config=config,
    )
    return ScoreBreakdown(
        amount=amount,
        currency=currency,
        date=date_score,
        embedding=embedding,
        confidence=confidence,
    )
