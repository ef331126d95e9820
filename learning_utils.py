#!/usr/bin/env python3
"""
Similarity and statistics helpers for the learning core.

Pure functions only: fingerprint vectorization, similarity/distance,
correlation, recency decay, Kelly sizing, clamping and rounding.
"""

from __future__ import annotations

import json
import math
from typing import Any, List, Sequence

from learning_models import TradeFingerprint


_TREND_VALUES = {"up": 1.0, "stable": 0.5, "down": 0.0}
_REGIME_VALUES = {"FULL": 1.0, "CAUTIOUS": 0.66, "DEFENSIVE": 0.33, "PAUSE": 0.0}
_HYPE_VALUES = {
    "DISCOVERY": 0.2,
    "EARLY_FOMO": 0.4,
    "PEAK_FOMO": 0.6,
    "DISTRIBUTION": 0.8,
    "DUMP": 1.0,
}

VECTOR_DIMENSIONS = 23


def normalize(value: float, lo: float, hi: float) -> float:
    """Scale value into [0, 1] over [lo, hi], clamped."""
    if hi == lo:
        return 0.0
    return clamp((float(value) - lo) / (hi - lo), 0.0, 1.0)


def trend_to_number(trend: str) -> float:
    return _TREND_VALUES.get(str(trend).lower(), 0.5)


def regime_to_number(regime: str) -> float:
    return _REGIME_VALUES.get(str(regime).upper(), 0.5)


def hype_phase_to_number(phase: str) -> float:
    return _HYPE_VALUES.get(str(phase).upper(), 0.5)


def fingerprint_to_vector(fp: TradeFingerprint) -> List[float]:
    """Flatten a fingerprint into a fixed 23-dimension vector in [0, 1]."""
    sw = fp.smart_wallets
    ts = fp.token_safety
    mc = fp.market_conditions
    so = fp.social_signals
    eq = fp.entry_quality
    return [
        # smart wallets
        normalize(sw.count, 0, 10),
        sw.tiers[0] / 3.0 if len(sw.tiers) > 0 else 0.0,
        sw.tiers[1] / 3.0 if len(sw.tiers) > 1 else 0.0,
        # token safety
        ts.overall_score / 100.0,
        1.0 if ts.liquidity_locked else 0.0,
        normalize(ts.liquidity_depth, 0, 200000),
        1.0 if ts.honeypot_risk else 0.0,
        1.0 if ts.mint_authority else 0.0,
        1.0 if ts.freeze_authority else 0.0,
        # market conditions
        normalize(mc.sol_price, 0, 300),
        trend_to_number(mc.sol_trend),
        trend_to_number(mc.btc_trend),
        regime_to_number(mc.regime),
        mc.time_of_day / 24.0,
        mc.day_of_week / 7.0,
        # social
        normalize(so.twitter_followers, 0, 10000),
        normalize(so.telegram_members, 0, 5000),
        normalize(so.mention_velocity, 0, 100),
        # entry quality
        normalize(eq.dip_depth, 0, 50),
        normalize(eq.distance_from_ath, 0, 100),
        normalize(eq.token_age, 0, 14400),
        normalize(eq.buy_sell_ratio, 0, 10),
        hype_phase_to_number(eq.hype_phase),
    ]


def cosine_similarity(fp1: TradeFingerprint, fp2: TradeFingerprint) -> float:
    """Cosine similarity of two fingerprints; 0 when either vector is all zeros."""
    v1 = fingerprint_to_vector(fp1)
    v2 = fingerprint_to_vector(fp2)
    dot = sum(a * b for a, b in zip(v1, v2))
    mag1 = math.sqrt(sum(a * a for a in v1))
    mag2 = math.sqrt(sum(b * b for b in v2))
    if mag1 == 0 or mag2 == 0:
        return 0.0
    return dot / (mag1 * mag2)


def euclidean_distance(fp1: TradeFingerprint, fp2: TradeFingerprint) -> float:
    v1 = fingerprint_to_vector(fp1)
    v2 = fingerprint_to_vector(fp2)
    return math.sqrt(sum((a - b) ** 2 for a, b in zip(v1, v2)))


def calculate_correlation(x: Sequence[float], y: Sequence[float]) -> float:
    """Pearson correlation; 0 for mismatched, empty or constant input."""
    if len(x) != len(y) or not x:
        return 0.0
    n = len(x)
    sum_x = sum(x)
    sum_y = sum(y)
    sum_xy = sum(a * b for a, b in zip(x, y))
    sum_x2 = sum(a * a for a in x)
    sum_y2 = sum(b * b for b in y)
    numerator = n * sum_xy - sum_x * sum_y
    denom_sq = (n * sum_x2 - sum_x * sum_x) * (n * sum_y2 - sum_y * sum_y)
    if denom_sq <= 0:
        return 0.0
    return numerator / math.sqrt(denom_sq)


def exponential_decay(days_ago: float, half_life: float = 30.0) -> float:
    return math.pow(2.0, -float(days_ago) / float(half_life))


def days_between(ts1: float, ts2: float) -> float:
    """Absolute distance in days between two epoch timestamps."""
    return abs(float(ts2) - float(ts1)) / 86400.0


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return float(sum(values)) / len(values)


def clamp(value: float, lo: float, hi: float) -> float:
    return max(float(lo), min(float(hi), float(value)))


def round_to(value: float, decimals: int = 2) -> float:
    return round(float(value), int(decimals))


def limit_adjustment(current: float, optimal: float, lo: float, hi: float, max_step: float = 2.0) -> float:
    """Move current toward optimal by at most max_step, then clamp to [lo, hi]."""
    delta = clamp(float(optimal) - float(current), -max_step, max_step)
    return clamp(float(current) + delta, lo, hi)


def kelly_position(win_rate: float, avg_win: float, avg_loss: float, no_loss_fallback: float = 25.0) -> float:
    """Half-Kelly fraction, floored at 0.

    Returns are in percent. With no loss history avg_loss is 0 and
    no_loss_fallback stands in for it.
    """
    loss = abs(float(avg_loss)) or float(no_loss_fallback)
    b = float(avg_win) / max(1.0, loss)
    q = 1.0 - float(win_rate)
    kelly = (float(win_rate) * b - q) / max(0.01, b)
    return max(0.0, kelly * 0.5)


def profit_factor(returns: Sequence[float], cap: float = 10.0) -> float:
    """Gross wins / gross losses, capped; 0 with no data, cap with no losses."""
    gross_win = sum(r for r in returns if r > 0)
    gross_loss = abs(sum(r for r in returns if r < 0))
    if gross_loss == 0:
        return float(cap) if gross_win > 0 else 0.0
    return min(float(cap), gross_win / gross_loss)


def safe_parse_json(raw: Any, default: Any) -> Any:
    if isinstance(raw, (dict, list)):
        return raw
    if not isinstance(raw, (str, bytes)):
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


def json_contains(container: Any, needle: Any) -> bool:
    """Structural containment: every key/value of needle is present in container.

    Dicts match recursively; lists match when each needle element is contained
    in some container element; scalars compare by equality.
    """
    if isinstance(needle, dict):
        if not isinstance(container, dict):
            return False
        for key, value in needle.items():
            if key not in container or not json_contains(container[key], value):
                return False
        return True
    if isinstance(needle, list):
        if not isinstance(container, list):
            return False
        return all(any(json_contains(c, p) for c in container) for p in needle)
    if isinstance(needle, bool) or isinstance(container, bool):
        return needle is container
    if isinstance(needle, (int, float)) and isinstance(container, (int, float)):
        return float(needle) == float(container)
    return needle == container
