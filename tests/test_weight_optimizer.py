#!/usr/bin/env python3
"""WeightOptimizer bounds, normalization and persistence regressions."""

import sys
import tempfile
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from learning_db import LearningDB
from learning_models import (
    CATEGORIES,
    CategoryWeights,
    SmartWalletSignal,
    TokenSafetySignal,
    Trade,
    TradeFingerprint,
)
from weight_optimizer import (
    WeightOptimizer,
    WeightOptimizerConfig,
    score_entry_quality,
    score_smart_wallet,
    weight_drift,
)


def _new_db() -> LearningDB:
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    return LearningDB(db_path)


def _config(**overrides) -> WeightOptimizerConfig:
    values = dict(
        min_trades=10,
        min_side_samples=5,
        min_spread=5.0,
        max_adjustment=5.0,
        min_weight=5.0,
        max_weight=40.0,
        persist_threshold=2.0,
        window=50,
        drift_warning=50.0,
    )
    values.update(overrides)
    return WeightOptimizerConfig(**values)


def _trade(i: int, win: bool) -> Trade:
    fp = TradeFingerprint(
        smart_wallets=SmartWalletSignal(count=5 if win else 0),
        token_safety=TokenSafetySignal(overall_score=90.0 if win else 20.0),
    )
    now = time.time() - i * 60
    return Trade(
        id=f"t{i}",
        token_address=f"tok{i}",
        entry_price=1.0,
        entry_amount=1.0,
        entry_time=now - 3600,
        exit_time=now,
        exit_reason="take_profit" if win else "stop_loss",
        pnl_percent=30.0 if win else -20.0,
        fingerprint=fp,
        outcome="WIN" if win else "LOSS",
    )


def _sample(wins: int, losses: int) -> list:
    return [_trade(i, True) for i in range(wins)] + [_trade(wins + i, False) for i in range(losses)]


def _assert_valid(weights: CategoryWeights, previous: CategoryWeights, cfg: WeightOptimizerConfig) -> None:
    assert abs(weights.total() - 100.0) < 1e-6
    for c in CATEGORIES:
        assert cfg.min_weight - 1e-9 <= weights.get(c) <= cfg.max_weight + 1e-9
        assert abs(weights.get(c) - previous.get(c)) <= cfg.max_adjustment + 1e-6


def test_category_scorers_stay_in_range() -> None:
    loaded = TradeFingerprint(smart_wallets=SmartWalletSignal(count=12, tiers=(1, 1, 1, 1)))
    assert score_smart_wallet(loaded) == 100.0
    assert score_smart_wallet(TradeFingerprint()) == 0.0
    assert 0.0 <= score_entry_quality(TradeFingerprint()) <= 100.0


def test_four_wins_six_losses_is_not_persisted() -> None:
    db = _new_db()
    optimizer = WeightOptimizer(db, config=_config())
    result = optimizer.optimize(_sample(4, 6))
    assert result.status == "skipped"
    assert result.reason == "insufficient_data"
    assert result.persisted is False
    assert db.count_snapshots() == 1
    assert result.new_weights == CategoryWeights()


def test_predictive_categories_gain_weight_within_bounds() -> None:
    db = _new_db()
    events = []
    cfg = _config()
    optimizer = WeightOptimizer(db, config=cfg, on_event=events.append)
    result = optimizer.optimize(_sample(10, 10))

    assert result.status == "updated"
    assert result.persisted is True
    assert result.snapshot_version == 2
    assert result.adjustments_made == 1
    _assert_valid(result.new_weights, CategoryWeights(), cfg)
    assert result.new_weights.smart_wallet > 30.0
    assert result.new_weights.token_safety > 25.0
    assert result.new_weights.social_signals < 10.0
    assert result.analyses["market_conditions"].meaningful is False
    assert db.get_latest_snapshot().weights == result.new_weights
    assert [e.kind for e in events] == ["weights_adjusted"]


def test_repeated_cycles_never_breach_bounds() -> None:
    db = _new_db()
    cfg = _config()
    optimizer = WeightOptimizer(db, config=cfg)
    trades = _sample(15, 15)
    previous = optimizer.get_current_weights()
    for _ in range(25):
        result = optimizer.optimize(trades)
        _assert_valid(result.new_weights, previous, cfg)
        previous = optimizer.get_current_weights()
    assert previous.smart_wallet <= cfg.max_weight
    assert previous.social_signals >= cfg.min_weight


def test_frozen_category_keeps_its_weight() -> None:
    db = _new_db()
    db.freeze_parameter("weight_smart_wallet", 30.0, reason="manual")
    optimizer = WeightOptimizer(db, config=_config())
    result = optimizer.optimize(_sample(10, 10))
    assert result.frozen_skipped == ["smart_wallet"]
    assert result.new_weights.smart_wallet == 30.0
    assert abs(result.new_weights.total() - 100.0) < 1e-6


def test_small_change_is_not_persisted() -> None:
    db = _new_db()
    optimizer = WeightOptimizer(db, config=_config(persist_threshold=1000.0))
    result = optimizer.optimize(_sample(10, 10))
    assert result.status == "unchanged"
    assert result.persisted is False
    assert db.count_snapshots() == 1


def test_trades_without_fingerprint_are_skipped() -> None:
    db = _new_db()
    optimizer = WeightOptimizer(db, config=_config())
    trades = _sample(10, 10)
    for t in trades[:3]:
        t.fingerprint = None
    result = optimizer.optimize(trades)
    assert result.skipped_items == 3


def test_weight_drift() -> None:
    assert weight_drift(CategoryWeights()) == 0.0
    moved = CategoryWeights(smart_wallet=35.0, token_safety=20.0)
    assert weight_drift(moved) == 10.0


def test_recalculate_weights_returns_persisted_weights() -> None:
    db = _new_db()
    optimizer = WeightOptimizer(db, config=_config())
    weights = optimizer.recalculate_weights(_sample(10, 10))
    assert weights == db.get_latest_snapshot().weights
    assert weights != CategoryWeights()
