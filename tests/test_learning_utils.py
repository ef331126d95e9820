#!/usr/bin/env python3
"""learning_utils pure-function regressions."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from learning_models import (
    EntryQualitySignal,
    MarketConditionSignal,
    SmartWalletSignal,
    TokenSafetySignal,
    TradeFingerprint,
)
from learning_utils import (
    VECTOR_DIMENSIONS,
    calculate_correlation,
    clamp,
    cosine_similarity,
    euclidean_distance,
    exponential_decay,
    fingerprint_to_vector,
    json_contains,
    kelly_position,
    limit_adjustment,
    profit_factor,
    safe_parse_json,
)


def _fp(wallets: int = 3, safety: float = 80.0, dip: float = 25.0, regime: str = "FULL") -> TradeFingerprint:
    return TradeFingerprint(
        smart_wallets=SmartWalletSignal(count=wallets, tiers=(1, 2)),
        token_safety=TokenSafetySignal(overall_score=safety, liquidity_locked=True, liquidity_depth=50000),
        market_conditions=MarketConditionSignal(sol_price=150, regime=regime, time_of_day=14, day_of_week=2),
        entry_quality=EntryQualitySignal(dip_depth=dip, token_age=90, buy_sell_ratio=2.0),
    )


def _approx(a: float, b: float, tol: float = 1e-9) -> bool:
    return abs(float(a) - float(b)) <= tol


def test_fingerprint_vector_has_fixed_length_in_unit_range() -> None:
    vec = fingerprint_to_vector(_fp())
    assert len(vec) == VECTOR_DIMENSIONS
    assert all(0.0 <= v <= 1.0 for v in vec)


def test_cosine_similarity_identical_is_one() -> None:
    fp = _fp()
    assert _approx(cosine_similarity(fp, fp), 1.0)
    sparse = TradeFingerprint(
        market_conditions=MarketConditionSignal(sol_trend="down", btc_trend="down", regime="PAUSE"),
        entry_quality=EntryQualitySignal(hype_phase="NOT_A_PHASE"),
    )
    assert 0.0 < cosine_similarity(sparse, fp) < 1.0


def test_cosine_similarity_is_symmetric() -> None:
    a = _fp(wallets=1, safety=20.0, regime="DEFENSIVE")
    b = _fp(wallets=8, safety=95.0, dip=40.0)
    assert _approx(cosine_similarity(a, b), cosine_similarity(b, a))
    assert euclidean_distance(a, a) == 0.0
    assert euclidean_distance(a, b) > 0.0


def test_correlation_edge_cases() -> None:
    assert calculate_correlation([], []) == 0.0
    assert calculate_correlation([1, 2, 3], [1, 2]) == 0.0
    assert calculate_correlation([1, 1, 1], [1, 2, 3]) == 0.0
    assert _approx(calculate_correlation([1, 2, 3, 4], [2, 4, 6, 8]), 1.0)
    assert _approx(calculate_correlation([1, 2, 3, 4], [8, 6, 4, 2]), -1.0)


def test_exponential_decay_half_life() -> None:
    assert exponential_decay(0) == 1.0
    assert _approx(exponential_decay(30), 0.5)
    assert _approx(exponential_decay(60), 0.25)
    assert _approx(exponential_decay(10, half_life=10), 0.5)


def test_kelly_position_half_kelly_and_zero_loss() -> None:
    # no losses: avg loss falls back to 25, b=0.8, kelly=(0.48-0.4)/0.8=0.1
    assert _approx(kelly_position(0.6, 20.0, 0.0), 0.05)
    assert _approx(kelly_position(0.6, 20.0, 0.0, no_loss_fallback=10.0), 0.2)
    # b=2, kelly=(0.6*2-0.4)/2=0.4, half=0.2
    assert _approx(kelly_position(0.6, 20.0, -10.0), 0.2)
    assert kelly_position(0.1, 5.0, 10.0) == 0.0


def test_limit_adjustment_caps_step_and_bounds() -> None:
    assert limit_adjustment(25.0, 40.0, 12.0, 35.0, 2.0) == 27.0
    assert limit_adjustment(25.0, 10.0, 12.0, 35.0, 2.0) == 23.0
    assert limit_adjustment(34.5, 40.0, 12.0, 35.0, 2.0) == 35.0
    assert limit_adjustment(25.0, 26.0, 12.0, 35.0, 2.0) == 26.0
    assert clamp(-1, 0, 1) == 0.0


def test_profit_factor_capped_and_empty() -> None:
    assert profit_factor([]) == 0.0
    assert profit_factor([10.0, 5.0]) == 10.0
    assert _approx(profit_factor([30.0, -10.0, -5.0]), 2.0)
    assert profit_factor([-5.0]) == 0.0


def test_json_contains_structural_match() -> None:
    stored = {"a": {"b": 1, "c": [1, 2, 3]}, "flag": True}
    assert json_contains(stored, {"a": {"b": 1}}) is True
    assert json_contains(stored, {"a": {"c": [3]}}) is True
    assert json_contains(stored, {"a": {"b": 2}}) is False
    assert json_contains(stored, {"flag": 1}) is False
    assert json_contains(stored, {"missing": 1}) is False
    assert json_contains({"x": 1.0}, {"x": 1}) is True


def test_safe_parse_json_defaults() -> None:
    assert safe_parse_json('{"a": 1}', {}) == {"a": 1}
    assert safe_parse_json("not json", {"d": 1}) == {"d": 1}
    assert safe_parse_json(None, []) == []
    assert safe_parse_json([1], None) == [1]
