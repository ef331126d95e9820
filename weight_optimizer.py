#!/usr/bin/env python3
"""
Category weight optimizer.

Re-estimates the five conviction category weights from recent win/loss
samples. Each category has a pure 0-100 scoring function over the trade
fingerprint; the spread between its average on wins and on losses is the
category's predictive power. Weights move toward their predictive-power share
by at most MAX_ADJUSTMENT points per cycle, stay within [MIN_WEIGHT,
MAX_WEIGHT], and are renormalized to sum to exactly 100.

Weights are stored as percentages; consumers divide by 100
(CategoryWeights.as_fractions()).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from learning_db import LearningDB
from learning_models import (
    CATEGORIES,
    DEFAULT_WEIGHTS,
    OUTCOME_LOSS,
    OUTCOME_RUG,
    OUTCOME_WIN,
    CategoryWeights,
    LearningEvent,
    Trade,
    TradeFingerprint,
    completed_only,
    frozen_weight_name,
)
from learning_params import get_param
from learning_utils import clamp, mean, normalize, regime_to_number, round_to, trend_to_number
from logging_utils import get_logger


# =============================================================================
# Category scoring (0-100 per trade)
# =============================================================================

_TIER_BONUS = {1: 10.0, 2: 5.0, 3: 2.0}
_HYPE_SCORES = {
    "DISCOVERY": 100.0,
    "EARLY_FOMO": 80.0,
    "PEAK_FOMO": 40.0,
    "DISTRIBUTION": 20.0,
    "DUMP": 0.0,
}
IDEAL_DIP_DEPTH = 25.0


def score_smart_wallet(fp: TradeFingerprint) -> float:
    base = min(int(fp.smart_wallets.count), 5) * 15.0
    bonus = sum(_TIER_BONUS.get(int(t), 0.0) for t in fp.smart_wallets.tiers)
    return clamp(base + bonus, 0.0, 100.0)


def score_token_safety(fp: TradeFingerprint) -> float:
    return clamp(fp.token_safety.overall_score, 0.0, 100.0)


def score_market_conditions(fp: TradeFingerprint) -> float:
    mc = fp.market_conditions
    trend = (trend_to_number(mc.sol_trend) + trend_to_number(mc.btc_trend)) / 2.0
    return clamp(0.6 * regime_to_number(mc.regime) * 100.0 + 0.4 * trend * 100.0, 0.0, 100.0)


def score_social_signals(fp: TradeFingerprint) -> float:
    so = fp.social_signals
    parts = [
        normalize(so.twitter_followers, 0, 10000),
        normalize(so.telegram_members, 0, 5000),
        normalize(so.mention_velocity, 0, 100),
    ]
    return clamp(mean(parts) * 100.0, 0.0, 100.0)


def score_entry_quality(fp: TradeFingerprint) -> float:
    eq = fp.entry_quality
    dip_score = clamp(100.0 - abs(eq.dip_depth - IDEAL_DIP_DEPTH) * 4.0, 0.0, 100.0)
    ath_score = normalize(eq.distance_from_ath, 0, 100) * 100.0
    hype_score = _HYPE_SCORES.get(str(eq.hype_phase).upper(), 50.0)
    return clamp(0.4 * dip_score + 0.3 * ath_score + 0.3 * hype_score, 0.0, 100.0)


CATEGORY_SCORERS: Dict[str, Callable[[TradeFingerprint], float]] = {
    "smart_wallet": score_smart_wallet,
    "token_safety": score_token_safety,
    "market_conditions": score_market_conditions,
    "social_signals": score_social_signals,
    "entry_quality": score_entry_quality,
}


def weight_drift(weights: CategoryWeights) -> float:
    """Sum of absolute deviations from the fixed baseline weights."""
    return sum(abs(weights.get(c) - DEFAULT_WEIGHTS[c]) for c in CATEGORIES)


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True)
class WeightOptimizerConfig:
    min_trades: int
    min_side_samples: int
    min_spread: float
    max_adjustment: float
    min_weight: float
    max_weight: float
    persist_threshold: float
    window: int
    drift_warning: float

    @classmethod
    def from_params(cls) -> "WeightOptimizerConfig":
        return cls(
            min_trades=int(get_param("weight_optimizer", "min_trades")),
            min_side_samples=int(get_param("weight_optimizer", "min_side_samples")),
            min_spread=float(get_param("weight_optimizer", "min_spread")),
            max_adjustment=float(get_param("weight_optimizer", "max_adjustment")),
            min_weight=float(get_param("weight_optimizer", "min_weight")),
            max_weight=float(get_param("weight_optimizer", "max_weight")),
            persist_threshold=float(get_param("weight_optimizer", "persist_threshold")),
            window=int(get_param("weight_optimizer", "window")),
            drift_warning=float(get_param("weight_optimizer", "drift_warning")),
        )


@dataclass
class CategoryAnalysis:
    category: str
    avg_on_wins: float
    avg_on_losses: float
    spread: float
    predictive_power: float
    win_samples: int
    loss_samples: int
    meaningful: bool


@dataclass
class WeightOptimizationResult:
    status: str  # updated | unchanged | skipped
    reason: str
    old_weights: CategoryWeights
    new_weights: CategoryWeights
    total_delta: float = 0.0
    persisted: bool = False
    snapshot_version: Optional[int] = None
    analyses: Dict[str, CategoryAnalysis] = field(default_factory=dict)
    frozen_skipped: List[str] = field(default_factory=list)
    skipped_items: int = 0

    @property
    def adjustments_made(self) -> int:
        return 1 if self.persisted else 0


# =============================================================================
# Optimizer
# =============================================================================

class WeightOptimizer:
    """Win/loss correlation based category weight re-estimation."""

    def __init__(
        self,
        db: LearningDB,
        config: Optional[WeightOptimizerConfig] = None,
        on_event: Optional[Callable[[LearningEvent], None]] = None,
    ):
        self.db = db
        self.config = config or WeightOptimizerConfig.from_params()
        self.on_event = on_event
        self.log = get_logger("weight_optimizer")

    def _emit(self, kind: str, payload: Dict) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(LearningEvent(kind=kind, payload=payload))
        except Exception as e:
            self.log.warning(f"on_event callback failed for {kind}: {e}")

    def get_current_weights(self) -> CategoryWeights:
        """Weights of the highest snapshot version (baseline if none)."""
        return self.db.ensure_baseline_snapshot().weights

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze_categories(self, trades: List[Trade]) -> Tuple[Dict[str, CategoryAnalysis], int]:
        """Per-category win/loss spread. Returns (analyses, skipped item count)."""
        win_scores: Dict[str, List[float]] = {c: [] for c in CATEGORIES}
        loss_scores: Dict[str, List[float]] = {c: [] for c in CATEGORIES}
        skipped = 0

        for trade in trades:
            if trade.outcome == OUTCOME_WIN:
                bucket = win_scores
            elif trade.outcome in (OUTCOME_LOSS, OUTCOME_RUG):
                bucket = loss_scores
            else:
                continue
            if trade.fingerprint is None:
                skipped += 1
                continue
            try:
                scores = {c: float(CATEGORY_SCORERS[c](trade.fingerprint)) for c in CATEGORIES}
            except (TypeError, ValueError, AttributeError) as e:
                self.log.warning(f"Skipping trade {trade.id} in weight analysis: {e}")
                skipped += 1
                continue
            for category, score in scores.items():
                bucket[category].append(score)

        analyses: Dict[str, CategoryAnalysis] = {}
        for category in CATEGORIES:
            wins = win_scores[category]
            losses = loss_scores[category]
            avg_w = mean(wins)
            avg_l = mean(losses)
            spread = avg_w - avg_l
            enough = len(wins) >= self.config.min_side_samples and len(losses) >= self.config.min_side_samples
            analyses[category] = CategoryAnalysis(
                category=category,
                avg_on_wins=avg_w,
                avg_on_losses=avg_l,
                spread=spread,
                predictive_power=abs(spread) / 100.0 if enough else 0.0,
                win_samples=len(wins),
                loss_samples=len(losses),
                meaningful=enough and abs(spread) >= self.config.min_spread,
            )
        return analyses, skipped

    # ------------------------------------------------------------------
    # Weight math
    # ------------------------------------------------------------------

    def _bounds(self, old: float, pinned: bool) -> Tuple[float, float]:
        if pinned:
            return old, old
        lo = max(self.config.min_weight, old - self.config.max_adjustment)
        hi = min(self.config.max_weight, old + self.config.max_adjustment)
        return lo, hi

    def _normalize_bounded(
        self,
        values: Dict[str, float],
        bounds: Dict[str, Tuple[float, float]],
    ) -> Dict[str, float]:
        """Scale values proportionally to sum to 100 while honouring per-category bounds."""
        out = {c: clamp(values[c], *bounds[c]) for c in CATEGORIES}
        fixed: Set[str] = {c for c in CATEGORIES if bounds[c][0] == bounds[c][1]}

        for _ in range(len(CATEGORIES) + 1):
            free = [c for c in CATEGORIES if c not in fixed]
            if not free:
                break
            remaining = 100.0 - sum(out[c] for c in fixed)
            free_sum = sum(out[c] for c in free)
            if free_sum <= 0:
                break
            scale = remaining / free_sum
            newly_fixed = False
            for c in free:
                scaled = out[c] * scale
                lo, hi = bounds[c]
                if scaled < lo or scaled > hi:
                    out[c] = clamp(scaled, lo, hi)
                    fixed.add(c)
                    newly_fixed = True
                else:
                    out[c] = scaled
            if not newly_fixed:
                break

        rounded = {c: round_to(out[c]) for c in CATEGORIES}
        residual = round_to(100.0 - sum(rounded.values()))
        if residual != 0:
            candidates = sorted(
                (c for c in CATEGORIES if bounds[c][0] != bounds[c][1]),
                key=lambda c: rounded[c],
                reverse=True,
            )
            for c in candidates:
                lo, hi = bounds[c]
                if lo <= rounded[c] + residual <= hi:
                    rounded[c] = round_to(rounded[c] + residual)
                    break
        return rounded

    def compute_new_weights(
        self,
        current: CategoryWeights,
        analyses: Dict[str, CategoryAnalysis],
        frozen: Set[str],
    ) -> Tuple[CategoryWeights, List[str]]:
        """Bounded step toward predictive-power shares. Returns (weights, frozen categories skipped)."""
        old = {c: clamp(current.get(c), self.config.min_weight, self.config.max_weight) for c in CATEGORIES}
        total_power = sum(a.predictive_power for a in analyses.values())
        frozen_skipped: List[str] = []
        proposed = dict(old)

        for category in CATEGORIES:
            analysis = analyses.get(category)
            if frozen_weight_name(category) in frozen:
                frozen_skipped.append(category)
                self.log.info(f"Weight {category} is frozen; skipping")
                continue
            if analysis is None or not analysis.meaningful or total_power <= 0:
                continue
            ideal = analysis.predictive_power / total_power * 100.0
            step = clamp(ideal - old[category], -self.config.max_adjustment, self.config.max_adjustment)
            proposed[category] = clamp(old[category] + step, self.config.min_weight, self.config.max_weight)

        bounds = {c: self._bounds(old[c], c in frozen_skipped) for c in CATEGORIES}
        normalized = self._normalize_bounded(proposed, bounds)
        return CategoryWeights(**normalized), frozen_skipped

    def calculate_weight_drift(self, weights: Optional[CategoryWeights] = None) -> float:
        """Drift of the given (or current) weights; warns above drift_warning."""
        drift = weight_drift(weights or self.get_current_weights())
        if drift > self.config.drift_warning:
            self.log.warning(f"Significant weight drift detected: {drift:.2f} (> {self.config.drift_warning:.0f})")
        return drift

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def optimize(self, recent_trades: List[Trade]) -> WeightOptimizationResult:
        current = self.get_current_weights()
        completed = completed_only(recent_trades)
        wins = sum(1 for t in completed if t.outcome == OUTCOME_WIN)
        losses = sum(1 for t in completed if t.outcome in (OUTCOME_LOSS, OUTCOME_RUG))

        if (
            len(completed) < self.config.min_trades
            or wins < self.config.min_side_samples
            or losses < self.config.min_side_samples
        ):
            self.log.info(
                f"Insufficient trades for weight adjustment: total={len(completed)} wins={wins} losses={losses}"
            )
            return WeightOptimizationResult(
                status="skipped",
                reason="insufficient_data",
                old_weights=current,
                new_weights=current,
            )

        analyses, skipped = self.analyze_categories(completed)
        frozen = self.db.get_frozen_names()
        new_weights, frozen_skipped = self.compute_new_weights(current, analyses, frozen)
        total_delta = round(sum(abs(new_weights.get(c) - current.get(c)) for c in CATEGORIES), 4)

        result = WeightOptimizationResult(
            status="unchanged",
            reason="below_persist_threshold",
            old_weights=current,
            new_weights=new_weights,
            total_delta=total_delta,
            analyses=analyses,
            frozen_skipped=frozen_skipped,
            skipped_items=skipped,
        )
        if total_delta < self.config.persist_threshold:
            self.log.info(f"Weight change {total_delta:.2f} below threshold; not persisting")
            return result

        reasons = {
            c: f"spread={a.spread:.1f} power={a.predictive_power:.3f}"
            for c, a in analyses.items()
            if abs(new_weights.get(c) - current.get(c)) > 0
        }
        perf = self.db.get_performance_summary(100)
        version = self.db.commit_weight_update(
            current,
            new_weights,
            reasons,
            trade_count=int(perf["trade_count"]),
            win_rate=float(perf["win_rate"]),
            profit_factor=float(perf["profit_factor"]),
        )
        result.status = "updated"
        result.reason = "weights_adjusted"
        result.persisted = True
        result.snapshot_version = version
        self.log.info(f"Saved new weights v{version}: {new_weights.to_dict()} (delta={total_delta:.2f})")
        self.calculate_weight_drift(new_weights)
        self._emit(
            "weights_adjusted",
            {
                "version": version,
                "old": current.to_dict(),
                "new": new_weights.to_dict(),
                "total_delta": total_delta,
            },
        )
        return result

    def recalculate_weights(self, recent_trades: List[Trade]) -> CategoryWeights:
        """Compute (and persist when significant) new weights; returns them."""
        return self.optimize(recent_trades).new_weights

    def execute_optimization_cycle(self) -> WeightOptimizationResult:
        trades = self.db.get_recent_completed_trades(self.config.window)
        return self.optimize(trades)
