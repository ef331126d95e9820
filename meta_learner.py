#!/usr/bin/env python3
"""
Meta-learner: judges the learner's own adjustments.

Each weight/parameter adjustment starts unevaluated. Once it is older than
the cooldown window, the trades closed before and after it are compared and
the adjustment is classified:

    impact = 0.4 * d_win_rate + 0.3 * (d_profit_factor * 0.1) + 0.3 * (d_avg_return * 0.01)

    impact >= improvement_threshold  -> keep    (improved)
    impact <= degradation_threshold  -> revert  (degraded)
    otherwise                        -> monitor (neutral)

Evaluations are append-only meta records. Consecutive degraded evaluations
halve the advisory learning-rate multiplier; a high improvement rate restores
it. Health rolls failures, improvement rate and weight drift into
good/warning/critical, and a critical review may copy the last healthy
snapshot forward (reversion never rewrites history).
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from learning_db import LearningDB
from learning_errors import ComputationError, InsufficientDataError
from learning_models import (
    OUTCOME_WIN,
    LearningEvent,
    LearningSnapshot,
    Trade,
)
from learning_params import cfg_get, get_param
from learning_utils import mean, profit_factor
from logging_utils import get_logger
from weight_optimizer import weight_drift


LEARNING_RATE_KEY = "learning_rate_multiplier"
EVALUATION_WINDOW = 60
IMPROVEMENT_LOOKBACK_DAYS = 30

HEALTH_GOOD = "good"
HEALTH_WARNING = "warning"
HEALTH_CRITICAL = "critical"

_HEALTH_TEXT = {
    HEALTH_CRITICAL: "Consider pausing learning engine and reverting to a stable snapshot",
    HEALTH_WARNING: "Monitor closely. Consider freezing some parameters",
    HEALTH_GOOD: "Learning engine is performing well",
}


@dataclass(frozen=True)
class MetaLearnerConfig:
    cooldown_hours: float
    min_trades_each_side: int
    improvement_threshold: float
    degradation_threshold: float
    max_consecutive_failures: int
    lr_floor: float
    lr_restore_factor: float
    lr_restore_improvement_rate: float
    auto_revert_min_win_rate: float
    stability_min_trades: int

    @classmethod
    def from_params(cls) -> "MetaLearnerConfig":
        return cls(
            cooldown_hours=float(get_param("meta_learner", "cooldown_hours")),
            min_trades_each_side=int(get_param("meta_learner", "min_trades_each_side")),
            improvement_threshold=float(get_param("meta_learner", "improvement_threshold")),
            degradation_threshold=float(get_param("meta_learner", "degradation_threshold")),
            max_consecutive_failures=int(get_param("meta_learner", "max_consecutive_failures")),
            lr_floor=float(get_param("meta_learner", "lr_floor")),
            lr_restore_factor=float(get_param("meta_learner", "lr_restore_factor")),
            lr_restore_improvement_rate=float(get_param("meta_learner", "lr_restore_improvement_rate")),
            auto_revert_min_win_rate=float(get_param("meta_learner", "auto_revert_min_win_rate")),
            stability_min_trades=int(get_param("meta_learner", "stability_min_trades")),
        )


def performance_metrics(trades: List[Trade]) -> Dict[str, float]:
    returns = [t.return_pct for t in trades]
    wins = sum(1 for t in trades if t.outcome == OUTCOME_WIN)
    return {
        "trade_count": len(trades),
        "win_rate": wins / len(trades) if trades else 0.0,
        "profit_factor": profit_factor(returns),
        "avg_return": mean(returns),
    }


def impact_score(before: Dict[str, float], after: Dict[str, float]) -> float:
    d_win_rate = after["win_rate"] - before["win_rate"]
    d_pf = after["profit_factor"] - before["profit_factor"]
    d_avg = after["avg_return"] - before["avg_return"]
    return 0.4 * d_win_rate + 0.3 * (d_pf * 0.1) + 0.3 * (d_avg * 0.01)


@dataclass
class AdjustmentImpact:
    adjustment_type: str  # weight | parameter
    adjustment_id: int
    parameter_name: str
    before_value: Any
    after_value: Any
    before_metrics: Dict[str, float]
    after_metrics: Dict[str, float]
    impact_score: float
    recommendation: str  # keep | monitor | revert
    classification: str  # improved | neutral | degraded
    improved: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LearningHealthStatus:
    overall_health: str
    recent_improvement_rate: float
    consecutive_failures: int
    learning_rate_multiplier: float
    total_drift: float
    recommendation: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MetaReviewResult:
    status: str  # completed | skipped
    reason: str
    impacts: List[AdjustmentImpact] = field(default_factory=list)
    health: Optional[LearningHealthStatus] = None
    learning_rate: float = 1.0
    reverted_from: Optional[int] = None
    reverted_to: Optional[int] = None
    new_version: Optional[int] = None

    @property
    def adjustments_made(self) -> int:
        return len(self.impacts)


class MetaLearner:
    """Impact evaluation, learning-rate governance, health and snapshot rollback."""

    def __init__(
        self,
        db: LearningDB,
        config: Optional[MetaLearnerConfig] = None,
        on_event: Optional[Callable[[LearningEvent], None]] = None,
    ):
        self.db = db
        self.config = config or MetaLearnerConfig.from_params()
        self.on_event = on_event
        self.log = get_logger("meta_learner")

    def _emit(self, kind: str, payload: Dict[str, Any]) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(LearningEvent(kind=kind, payload=payload))
        except Exception as e:
            self.log.warning(f"on_event callback failed for {kind}: {e}")

    # ------------------------------------------------------------------
    # Impact evaluation
    # ------------------------------------------------------------------

    def _windows(self, changed_at: float) -> Tuple[List[Trade], List[Trade]]:
        before = self.db.get_completed_trades_before(changed_at, EVALUATION_WINDOW)
        after = self.db.get_completed_trades_after(changed_at, EVALUATION_WINDOW)
        need = self.config.min_trades_each_side
        if len(before) < need:
            raise InsufficientDataError("trades before adjustment", need, len(before))
        if len(after) < need:
            raise InsufficientDataError("trades after adjustment", need, len(after))
        return before, after

    def classify(self, score: float) -> Tuple[str, str, bool]:
        """(recommendation, classification, improved) for an impact score."""
        if score >= self.config.improvement_threshold:
            return "keep", "improved", True
        if score <= self.config.degradation_threshold:
            return "revert", "degraded", False
        return "monitor", "neutral", score >= 0

    def evaluate_adjustment(self, adjustment: Dict[str, Any]) -> Optional[AdjustmentImpact]:
        """Compare the trade windows around one adjustment; None when either side is too thin."""
        try:
            before, after = self._windows(float(adjustment["created_at"]))
        except InsufficientDataError as e:
            self.log.debug(f"Skipping evaluation of {adjustment['type']} #{adjustment['id']}: {e}")
            return None

        before_metrics = performance_metrics(before)
        after_metrics = performance_metrics(after)
        score = impact_score(before_metrics, after_metrics)
        recommendation, classification, improved = self.classify(score)
        return AdjustmentImpact(
            adjustment_type=str(adjustment["type"]),
            adjustment_id=int(adjustment["id"]),
            parameter_name=str(adjustment["parameter_name"]),
            before_value=adjustment.get("old_value"),
            after_value=adjustment.get("new_value"),
            before_metrics=before_metrics,
            after_metrics=after_metrics,
            impact_score=round(score, 6),
            recommendation=recommendation,
            classification=classification,
            improved=improved,
        )

    def evaluate_adjustment_impacts(self, now: Optional[float] = None) -> List[AdjustmentImpact]:
        """Evaluate every unevaluated adjustment older than the cooldown; persist each evaluation."""
        now_ts = float(now if now is not None else time.time())
        cutoff = now_ts - self.config.cooldown_hours * 3600.0
        pending = self.db.get_unevaluated_weight_adjustments(cutoff) + self.db.get_unevaluated_parameter_adjustments(
            cutoff
        )
        if not pending:
            self.log.debug("No adjustments ready for evaluation")
            return []

        impacts: List[AdjustmentImpact] = []
        for adjustment in pending:
            try:
                impact = self.evaluate_adjustment(adjustment)
            except (ComputationError, KeyError, TypeError, ValueError) as e:
                self.log.warning(f"Skipping malformed adjustment {adjustment.get('id')}: {e}")
                continue
            if impact is None:
                continue
            self.db.record_adjustment_evaluation(
                impact.adjustment_type,
                impact.adjustment_id,
                impact_score=impact.impact_score,
                classification=impact.classification,
                improved=impact.improved,
                data=impact.to_dict(),
                notes=f"{impact.parameter_name}: {impact.recommendation} (score: {impact.impact_score:.4f})",
            )
            impacts.append(impact)
            self.log.info(
                f"Evaluated {impact.adjustment_type} #{impact.adjustment_id} {impact.parameter_name}: "
                f"{impact.recommendation} (score={impact.impact_score:.4f})"
            )
            self._emit("adjustment_evaluated", impact.to_dict())
            if impact.recommendation == "revert":
                self.log.warning(
                    f"Adjustment {impact.adjustment_type} #{impact.adjustment_id} "
                    f"({impact.parameter_name}) flagged for revert"
                )
                self._emit("adjustment_flagged_revert", impact.to_dict())

        self.update_learning_rate(now=now_ts)
        return impacts

    # ------------------------------------------------------------------
    # Learning-rate governance
    # ------------------------------------------------------------------

    def get_learning_rate(self) -> float:
        value = self.db.get_state(LEARNING_RATE_KEY, 1.0)
        try:
            return float(value)
        except (TypeError, ValueError):
            return 1.0

    def count_consecutive_failures(self) -> int:
        """Leading run of degraded evaluations since the last reversion."""
        since = self.db.get_last_meta_time("reversion")
        failures = 0
        for evaluation in self.db.get_recent_evaluations(10, since=since):
            if evaluation["classification"] != "degraded":
                break
            failures += 1
        return failures

    def get_improvement_rate(self, now: Optional[float] = None) -> float:
        now_ts = float(now if now is not None else time.time())
        since = now_ts - IMPROVEMENT_LOOKBACK_DAYS * 86400.0
        evaluations = self.db.get_recent_evaluations(10000, since=since)
        if not evaluations:
            return 0.5
        return sum(1 for e in evaluations if e["improved"]) / len(evaluations)

    def update_learning_rate(self, now: Optional[float] = None) -> float:
        current = self.get_learning_rate()
        failures = self.count_consecutive_failures()
        rate = self.get_improvement_rate(now=now)
        updated = current

        if failures >= self.config.max_consecutive_failures:
            updated = max(self.config.lr_floor, current * 0.5)
            if updated != current:
                self.log.warning(
                    f"Learning rate reduced {current:.3f} -> {updated:.3f} after {failures} consecutive failures"
                )
        elif rate > self.config.lr_restore_improvement_rate and current < 1.0:
            updated = min(1.0, current * self.config.lr_restore_factor)
            self.log.info(f"Learning rate restored {current:.3f} -> {updated:.3f} (improvement rate {rate:.2f})")

        if updated != current:
            self.db.set_state(LEARNING_RATE_KEY, round(updated, 6))
        return updated

    # ------------------------------------------------------------------
    # Health & stability
    # ------------------------------------------------------------------

    def get_learning_health_status(self, now: Optional[float] = None) -> LearningHealthStatus:
        rate = self.get_improvement_rate(now=now)
        failures = self.count_consecutive_failures()
        drift = weight_drift(self.db.ensure_baseline_snapshot().weights)

        if failures >= self.config.max_consecutive_failures or rate < 0.3:
            health = HEALTH_CRITICAL
        elif drift > 40 or rate < 0.5 or failures >= 2:
            health = HEALTH_WARNING
        else:
            health = HEALTH_GOOD

        return LearningHealthStatus(
            overall_health=health,
            recent_improvement_rate=round(rate, 4),
            consecutive_failures=failures,
            learning_rate_multiplier=self.get_learning_rate(),
            total_drift=round(drift, 4),
            recommendation=_HEALTH_TEXT[health],
        )

    def check_stability_protection(self) -> bool:
        """True once enough completed trades exist to trust a new adjustment."""
        count = self.db.count_completed_trades()
        if count < self.config.stability_min_trades:
            self.log.debug(f"Stability protection active: {count} < {self.config.stability_min_trades} trades")
            return False
        return True

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def get_available_snapshots(self, limit: int = 10) -> List[LearningSnapshot]:
        return self.db.list_snapshots(limit)

    def revert_to_snapshot(self, version: int, reason: str = "manual_revert") -> LearningSnapshot:
        """Copy snapshot `version` forward as a new current version."""
        reverted = self.db.revert_to_snapshot(version, reason=reason)
        self.log.warning(f"Reverted to snapshot v{version} as v{reverted.version} ({reason})")
        self._emit(
            "snapshot_reverted",
            {"target_version": int(version), "new_version": reverted.version, "reason": reason},
        )
        return reverted

    def _find_safe_snapshot(self) -> Optional[LearningSnapshot]:
        snapshots = self.get_available_snapshots(5)
        if not snapshots:
            return None
        current = snapshots[0].version
        for snap in snapshots[1:]:
            if snap.version != current and snap.win_rate > self.config.auto_revert_min_win_rate:
                return snap
        return None

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def execute_meta_review_cycle(self, auto_revert: bool = True, now: Optional[float] = None) -> MetaReviewResult:
        impacts = self.evaluate_adjustment_impacts(now=now)
        health = self.get_learning_health_status(now=now)
        result = MetaReviewResult(
            status="completed",
            reason="reviewed",
            impacts=impacts,
            health=health,
            learning_rate=self.get_learning_rate(),
        )

        if health.overall_health == HEALTH_CRITICAL:
            self.log.error(
                f"Learning engine health critical: improvement_rate={health.recent_improvement_rate:.2f} "
                f"failures={health.consecutive_failures} ({health.recommendation})"
            )
            self._emit("health_critical", health.to_dict())

            allowed = bool(auto_revert) and bool(cfg_get(("config", "learning", "auto_revert"), True))
            if allowed and health.consecutive_failures >= self.config.max_consecutive_failures:
                safe = self._find_safe_snapshot()
                if safe is None:
                    self.log.warning("No healthy snapshot available for auto-revert")
                else:
                    current = self.db.get_latest_snapshot()
                    reverted = self.revert_to_snapshot(safe.version, reason="auto_revert")
                    result.reverted_from = current.version if current else None
                    result.reverted_to = safe.version
                    result.new_version = reverted.version

        self.log.info(
            f"Meta review done: evaluated={len(impacts)} health={health.overall_health} "
            f"improvement_rate={health.recent_improvement_rate:.2f}"
        )
        return result

    def generate_recommendations(
        self,
        health: LearningHealthStatus,
        evaluations: List[Dict[str, Any]],
    ) -> List[str]:
        recommendations: List[str] = []
        if health.overall_health == HEALTH_CRITICAL:
            recommendations.append("URGENT: Consider pausing the learning engine")
            recommendations.append("Review recent adjustments for potential issues")
            recommendations.append("Consider reverting to a previous stable snapshot")
        if health.total_drift > 50:
            recommendations.append("Total weight drift exceeds 50% - manual review recommended")
        if health.learning_rate_multiplier < 0.5:
            recommendations.append("Learning rate has been significantly reduced due to poor performance")
            recommendations.append("Review data quality and market conditions")
        if health.consecutive_failures >= 2:
            recommendations.append(f"{health.consecutive_failures} consecutive failed adjustments detected")
            recommendations.append("Consider freezing some parameters temporarily")
        recent_reverts = sum(1 for e in evaluations[:5] if (e.get("data") or {}).get("recommendation") == "revert")
        if recent_reverts >= 2:
            recommendations.append("Multiple recent adjustments recommended for revert")
            recommendations.append("Learning may be overfitting to recent data")
        if not recommendations:
            recommendations.append("Learning engine is operating normally")
            recommendations.append("Continue monitoring performance metrics")
        return recommendations

    def generate_learning_report(self, now: Optional[float] = None) -> Dict[str, Any]:
        snapshot = self.db.ensure_baseline_snapshot()
        health = self.get_learning_health_status(now=now)
        evaluations = self.db.get_recent_evaluations(20)
        return {
            "generated_at": float(now if now is not None else time.time()),
            "current_state": {
                "snapshot_version": snapshot.version,
                "weights": snapshot.weights.to_dict(),
                "parameters": snapshot.parameters,
                "trade_count": snapshot.trade_count,
                "win_rate": snapshot.win_rate,
                "profit_factor": snapshot.profit_factor,
            },
            "health": health.to_dict(),
            "learning_rate": self.get_learning_rate(),
            "total_drift": health.total_drift,
            "recent_adjustments": self.db.get_recent_parameter_adjustments(10),
            "impact_history": evaluations,
            "reversions": self.db.get_meta_records("reversion", 5),
            "cycle_history": [c.to_dict() for c in self.db.list_cycles(20)],
            "recommendations": self.generate_recommendations(health, evaluations),
        }
