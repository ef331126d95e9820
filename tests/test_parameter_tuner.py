#!/usr/bin/env python3
"""ParameterTuner step limits, safety bounds and frozen handling."""

import copy
import sys
import tempfile
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from learning_db import LearningDB
from learning_models import (
    DEFAULT_PARAMETERS,
    PARAMETER_LIMITS,
    EntryQualitySignal,
    MarketConditionSignal,
    SmartWalletSignal,
    Trade,
    TradeFingerprint,
)
from parameter_tuner import (
    ParameterAnalysis,
    ParameterTuner,
    ParameterTunerConfig,
    apply_parameter_value,
    parameter_group,
    range_recommendation,
)


def _new_db() -> LearningDB:
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    return LearningDB(db_path)


def _config(**overrides) -> ParameterTunerConfig:
    values = dict(min_trades=30, window=100, min_confidence=0.3, step=2.0, take_profit_step=10.0)
    values.update(overrides)
    return ParameterTunerConfig(**values)


def _params() -> dict:
    return copy.deepcopy(DEFAULT_PARAMETERS)


_SEQ = [0]


def _trade(
    outcome: str,
    pnl_pct: float,
    exit_reason: str = "take_profit",
    hold_hours: float = 1.0,
    dip: float = 22.0,
    wallets: int = 3,
    token_age: float = 45.0,
    hour: int = 14,
) -> Trade:
    _SEQ[0] += 1
    exit_time = time.time() - _SEQ[0] * 60
    return Trade(
        id=f"t{_SEQ[0]}",
        token_address=f"tok{_SEQ[0]}",
        entry_price=1.0,
        entry_amount=1.0,
        entry_time=exit_time - hold_hours * 3600,
        exit_time=exit_time,
        exit_reason=exit_reason,
        pnl_percent=pnl_pct,
        fingerprint=TradeFingerprint(
            smart_wallets=SmartWalletSignal(count=wallets),
            market_conditions=MarketConditionSignal(time_of_day=hour),
            entry_quality=EntryQualitySignal(dip_depth=dip, token_age=token_age),
        ),
        outcome=outcome,
    )


def _stops(tight: int, far: int, level: float = 25.0, far_loss: float = 10.0) -> list:
    return [_trade("LOSS", -level, "stop_loss") for _ in range(tight)] + [
        _trade("LOSS", -far_loss, "stop_loss") for _ in range(far)
    ]


def test_stop_loss_widens_when_stops_are_tight() -> None:
    tuner = ParameterTuner(_new_db(), config=_config())
    analysis = tuner.optimize_stop_loss(_stops(12, 8), _params())
    assert analysis.current_value == 25.0
    assert analysis.optimal_value == 27.0
    assert analysis.recommendation == "increase"
    assert analysis.sample_size == 20


def test_stop_loss_is_clamped_to_safety_bound() -> None:
    tuner = ParameterTuner(_new_db(), config=_config())
    params = _params()
    params["stop_loss_percent"] = 34.0
    analysis = tuner.optimize_stop_loss(_stops(20, 0, level=34.0), params)
    assert analysis.optimal_value == PARAMETER_LIMITS["stop_loss_percent"][1]

    params["stop_loss_percent"] = 35.0
    analysis = tuner.optimize_stop_loss(_stops(20, 0, level=35.0), params)
    assert analysis.optimal_value == 35.0
    assert analysis.recommendation == "keep"


def test_stop_loss_tightens_when_losses_stay_small() -> None:
    tuner = ParameterTuner(_new_db(), config=_config())
    analysis = tuner.optimize_stop_loss(_stops(0, 12, far_loss=5.0), _params())
    assert analysis.optimal_value == 23.0
    assert analysis.recommendation == "decrease"

    params = _params()
    params["stop_loss_percent"] = 12.0
    analysis = tuner.optimize_stop_loss(_stops(0, 12, far_loss=1.0), params)
    assert analysis.optimal_value == 12.0


def test_stop_loss_needs_ten_stopped_trades() -> None:
    tuner = ParameterTuner(_new_db(), config=_config())
    assert tuner.optimize_stop_loss(_stops(5, 4), _params()) is None


def test_take_profit_levels_move_one_step() -> None:
    tuner = ParameterTuner(_new_db(), config=_config())
    winners = [_trade("WIN", 50.0) for _ in range(10)]
    analyses = {a.parameter: a for a in tuner.optimize_take_profit_levels(winners, _params())}
    assert analyses["take_profit_level_1"].optimal_value == 40.0
    assert analyses["take_profit_level_1"].recommendation == "increase"
    assert analyses["take_profit_level_2"].optimal_value == 50.0
    assert analyses["take_profit_level_3"].optimal_value == 90.0
    assert analyses["take_profit_level_4"].optimal_value == 190.0
    for a in analyses.values():
        assert abs(a.optimal_value - a.current_value) <= 10.0


def test_position_sizes_stay_in_bounds_and_step() -> None:
    tuner = ParameterTuner(_new_db(), config=_config())
    trades = [_trade("WIN", 80.0) for _ in range(25)] + [_trade("LOSS", -10.0) for _ in range(10)]
    lo, hi = PARAMETER_LIMITS["position_sizes"]
    for analysis in tuner.optimize_position_sizes(trades, _params()):
        assert lo <= analysis.optimal_value <= hi
        assert abs(analysis.optimal_value - analysis.current_value) <= 2.0 + 1e-9
        assert analysis.parameter.startswith("position_size_")


def test_entry_parameters_respect_bounds() -> None:
    tuner = ParameterTuner(_new_db(), config=_config())
    trades = [_trade("WIN", 40.0, dip=12.0, wallets=5, token_age=10.0) for _ in range(20)]
    trades += [_trade("LOSS", -20.0, dip=42.0, wallets=1, token_age=300.0) for _ in range(15)]
    analyses = {a.parameter: a for a in tuner.optimize_entry_parameters(trades, _params())}

    dip = analyses["dip_entry_range"]
    assert dip.optimal_value == {"min": 18.0, "max": 28.0}
    assert dip.recommendation == "decrease"

    wallets = analyses["smart_wallet_count_threshold"]
    assert 1.0 <= wallets.optimal_value <= 5.0
    assert abs(wallets.optimal_value - wallets.current_value) <= 2.0

    age = analyses["token_age_min"]
    assert age.optimal_value == 8.0
    assert age.recommendation == "decrease"


def test_timing_window_moves_toward_profitable_hours() -> None:
    tuner = ParameterTuner(_new_db(), config=_config())
    trades = []
    for hour in (2, 3, 4, 5, 6):
        trades += [_trade("WIN", 30.0, hour=hour) for _ in range(4)]
    for hour in (18, 19, 20, 21, 22):
        trades += [_trade("LOSS", -20.0, hour=hour) for _ in range(4)]
    analysis = tuner.optimize_timing_windows(trades, _params())
    assert analysis.current_value == {"start": 9, "end": 23}
    assert analysis.optimal_value["start"] == 7
    assert analysis.optimal_value["end"] == 21


def test_range_recommendation_cases() -> None:
    cur = {"min": 20.0, "max": 30.0}
    assert range_recommendation(cur, {"min": 24.0, "max": 34.0}) == "increase"
    assert range_recommendation(cur, {"min": 16.0, "max": 26.0}) == "decrease"
    assert range_recommendation(cur, {"min": 17.0, "max": 33.0}) == "widen"
    assert range_recommendation(cur, {"min": 22.0, "max": 28.0}) == "narrow"
    assert range_recommendation(cur, {"min": 21.0, "max": 30.0}) == "keep"


def test_apply_parameter_value_and_groups() -> None:
    params = _params()
    apply_parameter_value(params, "take_profit_level_2", 70.0)
    apply_parameter_value(params, "position_size_low", 1.5)
    apply_parameter_value(params, "stop_loss_percent", 27.0)
    assert params["take_profit_levels"][1]["target"] == 70.0
    assert params["take_profit_levels"][1]["sell"] == 25.0
    assert params["position_sizes"]["low"] == 1.5
    assert params["stop_loss_percent"] == 27.0
    assert parameter_group("take_profit_level_3") == "take_profit_levels"
    assert parameter_group("position_size_high") == "position_sizes"
    assert parameter_group("stop_loss_percent") == "stop_loss_percent"


def _analysis(name: str, current, optimal, confidence: float = 0.8, recommendation: str = "increase") -> ParameterAnalysis:
    return ParameterAnalysis(
        parameter=name,
        current_value=current,
        optimal_value=optimal,
        confidence=confidence,
        sample_size=40,
        avg_return_at_optimal=5.0,
        win_rate_at_optimal=0.6,
        recommendation=recommendation,
    )


def test_apply_skips_frozen_keep_and_low_confidence() -> None:
    db = _new_db()
    db.freeze_parameter("stop_loss_percent", 25.0, reason="manual")
    db.freeze_parameter("take_profit_levels", None, reason="manual")
    db.freeze_parameter("weight_smart_wallet", 30.0, reason="weights only")
    events = []
    tuner = ParameterTuner(db, config=_config(), on_event=events.append)
    params = tuner.get_current_parameters()

    result = tuner.apply_analyses(
        [
            _analysis("stop_loss_percent", 25.0, 27.0),
            _analysis("take_profit_level_1", 30.0, 40.0),
            _analysis("token_age_min", 10.0, 12.0, confidence=0.1),
            _analysis("time_based_stop_hours", 4.0, 4.0, recommendation="keep"),
            _analysis("smart_wallet_count_threshold", 2.0, 3.0),
        ],
        params,
        trade_count=40,
    )

    assert result.frozen_skipped == ["stop_loss_percent", "take_profit_level_1"]
    assert [a.parameter for a in result.applied] == ["smart_wallet_count_threshold"]
    assert result.status == "updated"
    latest = db.get_latest_snapshot()
    assert latest.version == result.snapshot_version
    assert latest.parameters["smart_wallet_count_threshold"] == 3.0
    assert latest.parameters["stop_loss_percent"] == 25.0
    assert [e.kind for e in events] == ["parameter_adjusted"]
    rows = db.get_recent_parameter_adjustments(10)
    assert [r["parameter_name"] for r in rows] == ["smart_wallet_count_threshold"]


def test_apply_with_nothing_accepted_writes_nothing() -> None:
    db = _new_db()
    tuner = ParameterTuner(db, config=_config())
    result = tuner.apply_analyses(
        [_analysis("token_age_min", 10.0, 12.0, confidence=0.05)], tuner.get_current_parameters(), 40
    )
    assert result.status == "unchanged"
    assert result.adjustments_made == 0
    assert db.count_snapshots() == 1


def test_tune_skips_below_minimum_trades() -> None:
    db = _new_db()
    tuner = ParameterTuner(db, config=_config())
    result = tuner.tune(_stops(12, 8))
    assert result.status == "skipped"
    assert result.reason == "insufficient_data"
    assert db.count_snapshots() == 1


def test_tune_persists_stop_loss_change() -> None:
    db = _new_db()
    tuner = ParameterTuner(db, config=_config())
    trades = _stops(12, 8) + [_trade("WIN", 35.0) for _ in range(15)]
    result = tuner.tune(trades)

    assert result.status == "updated"
    applied = {a.parameter: a for a in result.applied}
    assert applied["stop_loss_percent"].optimal_value == 27.0
    params = db.get_latest_snapshot().parameters
    assert params["stop_loss_percent"] == 27.0
    assert set(result.regime_stats) >= {"FULL", "CAUTIOUS", "DEFENSIVE", "PAUSE"}
    lo, hi = PARAMETER_LIMITS["stop_loss_percent"]
    assert lo <= params["stop_loss_percent"] <= hi


def test_position_sizes_without_losses_use_fallback_loss() -> None:
    tuner = ParameterTuner(_new_db(), config=_config())
    trades = [_trade("WIN", 20.0) for _ in range(30)]
    sizes = {a.parameter: a for a in tuner.optimize_position_sizes(trades, _params())}
    # avg loss falls back to 25%, so a clean win streak sizes up rather than to the floor
    assert sizes["position_size_high"].optimal_value == 5.0
    assert sizes["position_size_medium"].optimal_value == 3.0
    assert sizes["position_size_low"].optimal_value == 1.5
    assert sizes["position_size_low"].recommendation == "increase"
