#!/usr/bin/env python3
"""MetaLearner impact evaluation, learning-rate governance, health and auto-revert."""

import sys
import tempfile
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from learning_db import LearningDB
from learning_models import CategoryWeights, Trade
from learning_params import set_config
from meta_learner import (
    LEARNING_RATE_KEY,
    MetaLearner,
    MetaLearnerConfig,
    impact_score,
    performance_metrics,
)


def _new_db() -> LearningDB:
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    return LearningDB(db_path)


def _config(**overrides) -> MetaLearnerConfig:
    values = dict(
        cooldown_hours=24.0,
        min_trades_each_side=20,
        improvement_threshold=0.02,
        degradation_threshold=-0.05,
        max_consecutive_failures=3,
        lr_floor=0.25,
        lr_restore_factor=1.2,
        lr_restore_improvement_rate=0.7,
        auto_revert_min_win_rate=0.35,
        stability_min_trades=30,
    )
    values.update(overrides)
    return MetaLearnerConfig(**values)


def _store_trades(db: LearningDB, prefix: str, start: float, count: int, win_every: int, win_pct: float) -> None:
    """Completed trades closing one minute apart from `start`; every `win_every`-th is a win."""
    for i in range(count):
        exit_time = start + i * 60
        win = i % win_every == 0
        db.upsert_trade(
            Trade(
                id=f"{prefix}{i}",
                token_address=f"tok-{prefix}{i}",
                entry_price=1.0,
                entry_amount=1.0,
                entry_time=exit_time - 600,
                exit_time=exit_time,
                exit_reason="take_profit" if win else "stop_loss",
                pnl_percent=win_pct if win else -15.0,
                outcome="WIN" if win else "LOSS",
            )
        )


def _record_evaluations(db: LearningDB, *classifications: str) -> None:
    for i, classification in enumerate(classifications):
        db.record_adjustment_evaluation(
            "weight",
            1000 + i,
            impact_score=0.05 if classification == "improved" else -0.1,
            classification=classification,
            improved=classification == "improved",
            data={"recommendation": "keep" if classification == "improved" else "revert"},
        )


def test_impact_score_formula() -> None:
    before = {"win_rate": 0.40, "profit_factor": 1.0, "avg_return": 2.0}
    after = {"win_rate": 0.50, "profit_factor": 1.5, "avg_return": 6.0}
    # 0.4*0.1 + 0.3*0.05 + 0.3*0.04
    assert abs(impact_score(before, after) - 0.067) < 1e-9
    assert impact_score(before, before) == 0.0


def test_classify_thresholds() -> None:
    meta = MetaLearner(_new_db(), config=_config())
    assert meta.classify(0.02) == ("keep", "improved", True)
    assert meta.classify(-0.05) == ("revert", "degraded", False)
    assert meta.classify(0.01) == ("monitor", "neutral", True)
    assert meta.classify(-0.01) == ("monitor", "neutral", False)


def test_performance_metrics_empty_window() -> None:
    metrics = performance_metrics([])
    assert metrics == {"trade_count": 0, "win_rate": 0.0, "profit_factor": 0.0, "avg_return": 0.0}


def test_adjustment_with_thin_windows_is_left_unevaluated() -> None:
    db = _new_db()
    db.ensure_baseline_snapshot()
    now = time.time()
    changed_at = now - 48 * 3600
    db.commit_weight_update(
        CategoryWeights(), CategoryWeights(smart_wallet=35.0, token_safety=20.0), {},
        trade_count=30, win_rate=0.5, profit_factor=1.0, created_at=changed_at,
    )
    _store_trades(db, "b", changed_at - 30 * 60, 25, 2, 30.0)
    _store_trades(db, "a", changed_at + 60, 10, 2, 30.0)

    meta = MetaLearner(db, config=_config())
    assert meta.evaluate_adjustment_impacts(now=now) == []
    assert len(db.get_unevaluated_weight_adjustments(now)) == 1


def test_adjustment_inside_cooldown_is_not_evaluated() -> None:
    db = _new_db()
    db.ensure_baseline_snapshot()
    now = time.time()
    changed_at = now - 3600
    db.commit_weight_update(
        CategoryWeights(), CategoryWeights(smart_wallet=35.0, token_safety=20.0), {},
        trade_count=30, win_rate=0.5, profit_factor=1.0, created_at=changed_at,
    )
    meta = MetaLearner(db, config=_config())
    assert meta.evaluate_adjustment_impacts(now=now) == []


def test_improving_adjustment_is_kept() -> None:
    db = _new_db()
    db.ensure_baseline_snapshot()
    now = time.time()
    changed_at = now - 48 * 3600
    db.commit_weight_update(
        CategoryWeights(), CategoryWeights(smart_wallet=35.0, token_safety=20.0), {},
        trade_count=30, win_rate=0.25, profit_factor=0.8, created_at=changed_at,
    )
    # before: 1 win in 4; after: 1 win in 2 with bigger winners
    _store_trades(db, "b", changed_at - 40 * 60, 30, 4, 20.0)
    _store_trades(db, "a", changed_at + 60, 30, 2, 40.0)

    events = []
    meta = MetaLearner(db, config=_config(), on_event=events.append)
    impacts = meta.evaluate_adjustment_impacts(now=now)

    assert len(impacts) == 1
    impact = impacts[0]
    assert impact.adjustment_type == "weight"
    assert impact.recommendation == "keep"
    assert impact.classification == "improved"
    assert impact.after_metrics["win_rate"] > impact.before_metrics["win_rate"]
    assert db.get_unevaluated_weight_adjustments(now) == []
    assert db.get_recent_evaluations(1)[0]["classification"] == "improved"
    assert [e.kind for e in events] == ["adjustment_evaluated"]


def test_degrading_parameter_adjustment_is_flagged() -> None:
    db = _new_db()
    db.ensure_baseline_snapshot()
    now = time.time()
    changed_at = now - 48 * 3600
    params = db.get_latest_snapshot().parameters
    db.commit_parameter_adjustments(
        [{"parameter_name": "stop_loss_percent", "old_value": 25.0, "new_value": 27.0}],
        params,
        trade_count=30,
        win_rate=0.5,
        profit_factor=1.0,
        created_at=changed_at,
    )
    _store_trades(db, "b", changed_at - 40 * 60, 30, 2, 40.0)
    _store_trades(db, "a", changed_at + 60, 30, 5, 10.0)

    events = []
    meta = MetaLearner(db, config=_config(), on_event=events.append)
    impacts = meta.evaluate_adjustment_impacts(now=now)

    assert [i.recommendation for i in impacts] == ["revert"]
    assert impacts[0].parameter_name == "stop_loss_percent"
    assert [e.kind for e in events] == ["adjustment_evaluated", "adjustment_flagged_revert"]


def test_learning_rate_halves_after_consecutive_failures_and_floors() -> None:
    db = _new_db()
    meta = MetaLearner(db, config=_config())
    assert meta.get_learning_rate() == 1.0

    _record_evaluations(db, "degraded", "degraded", "degraded")
    assert meta.count_consecutive_failures() == 3
    assert meta.update_learning_rate() == 0.5
    assert db.get_state(LEARNING_RATE_KEY) == 0.5
    assert meta.update_learning_rate() == 0.25
    assert meta.update_learning_rate() == 0.25


def test_learning_rate_restores_on_high_improvement_rate() -> None:
    db = _new_db()
    db.set_state(LEARNING_RATE_KEY, 0.5)
    meta = MetaLearner(db, config=_config())
    _record_evaluations(db, "improved", "improved", "improved", "improved")
    assert meta.get_improvement_rate() == 1.0
    assert abs(meta.update_learning_rate() - 0.6) < 1e-9


def test_consecutive_failures_stop_at_first_non_degraded() -> None:
    db = _new_db()
    meta = MetaLearner(db, config=_config())
    _record_evaluations(db, "degraded", "improved", "degraded", "degraded")
    # newest first: degraded, degraded, improved
    assert meta.count_consecutive_failures() == 2


def test_health_status_levels() -> None:
    db = _new_db()
    meta = MetaLearner(db, config=_config())
    health = meta.get_learning_health_status()
    assert health.overall_health == "good"
    assert health.recent_improvement_rate == 0.5
    assert health.total_drift == 0.0

    _record_evaluations(db, "improved", "neutral", "degraded", "degraded")
    assert meta.get_learning_health_status().overall_health == "critical"

    db2 = _new_db()
    meta2 = MetaLearner(db2, config=_config())
    _record_evaluations(db2, "neutral", "improved", "improved")
    health2 = meta2.get_learning_health_status()
    # improvement rate 2/3 with no failures is good
    assert health2.overall_health == "good"
    drifted = CategoryWeights(
        smart_wallet=40.0, token_safety=5.0, market_conditions=10.0, social_signals=25.0, entry_quality=20.0
    )
    db2.insert_snapshot(drifted, {})
    assert meta2.get_learning_health_status().overall_health == "warning"


def test_stability_protection_needs_thirty_trades() -> None:
    db = _new_db()
    meta = MetaLearner(db, config=_config())
    _store_trades(db, "t", time.time() - 10_000, 29, 2, 20.0)
    assert meta.check_stability_protection() is False
    _store_trades(db, "u", time.time() - 5_000, 1, 2, 20.0)
    assert meta.check_stability_protection() is True


def test_critical_review_auto_reverts_to_last_healthy_snapshot() -> None:
    set_config({"config": {"learning": {"auto_revert": True}}})
    try:
        db = _new_db()
        db.ensure_baseline_snapshot()
        db.insert_snapshot(CategoryWeights(), {"stop_loss_percent": 22.0}, win_rate=0.55, note="healthy")
        db.insert_snapshot(CategoryWeights(), {"stop_loss_percent": 30.0}, win_rate=0.20, note="bad")
        _record_evaluations(db, "degraded", "degraded", "degraded")

        events = []
        meta = MetaLearner(db, config=_config(), on_event=events.append)
        result = meta.execute_meta_review_cycle()

        assert result.health.overall_health == "critical"
        assert result.reverted_from == 3
        assert result.reverted_to == 2
        assert result.new_version == 4
        latest = db.get_latest_snapshot()
        assert latest.parameters == {"stop_loss_percent": 22.0}
        assert db.get_snapshot(3).parameters == {"stop_loss_percent": 30.0}
        assert [e.kind for e in events] == ["health_critical", "snapshot_reverted"]
        # failures before the reversion no longer count
        assert meta.count_consecutive_failures() == 0
    finally:
        set_config(None)


def test_critical_review_without_auto_revert_keeps_history() -> None:
    set_config({"config": {"learning": {"auto_revert": False}}})
    try:
        db = _new_db()
        db.ensure_baseline_snapshot()
        db.insert_snapshot(CategoryWeights(), {}, win_rate=0.55)
        _record_evaluations(db, "degraded", "degraded", "degraded")
        meta = MetaLearner(db, config=_config())
        result = meta.execute_meta_review_cycle()
        assert result.health.overall_health == "critical"
        assert result.new_version is None
        assert db.count_snapshots() == 2
    finally:
        set_config(None)


def test_learning_report_shape() -> None:
    db = _new_db()
    meta = MetaLearner(db, config=_config())
    report = meta.generate_learning_report()
    for key in (
        "generated_at",
        "current_state",
        "health",
        "learning_rate",
        "total_drift",
        "recent_adjustments",
        "impact_history",
        "reversions",
        "cycle_history",
        "recommendations",
    ):
        assert key in report
    assert report["current_state"]["snapshot_version"] == 1
    assert report["recommendations"] == [
        "Learning engine is operating normally",
        "Continue monitoring performance metrics",
    ]
