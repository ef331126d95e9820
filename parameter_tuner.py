#!/usr/bin/env python3
"""
Trading parameter tuner.

Buckets a rolling window of completed trades by the feature behind each
tunable parameter (dip depth, smart-wallet count, token age, hold time,
hour of day), scores buckets by win_rate * max(0, avg_return) and nudges the
current value toward the best bucket. Every move is capped per cycle
(step for ranges/thresholds, take_profit_step for take-profit targets) and
clamped to PARAMETER_LIMITS.

Stop-loss uses the tight-stop rate instead of bucketing; position sizes use
half-Kelly scaled per conviction tier.

Accepted analyses (not frozen, not "keep", confidence >= min_confidence)
are written as one new snapshot plus one learning_parameters row each.
"""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from learning_db import LearningDB
from learning_models import (
    DEFAULT_PARAMETERS,
    EXIT_STOP_LOSS,
    EXIT_TRAILING_STOP,
    OUTCOME_LOSS,
    OUTCOME_RUG,
    OUTCOME_WIN,
    PARAMETER_LIMITS,
    REGIMES,
    LearningEvent,
    Trade,
    completed_only,
)
from learning_params import get_param
from learning_utils import clamp, kelly_position, limit_adjustment, mean
from logging_utils import get_logger


RECOMMEND_INCREASE = "increase"
RECOMMEND_DECREASE = "decrease"
RECOMMEND_KEEP = "keep"
RECOMMEND_WIDEN = "widen"
RECOMMEND_NARROW = "narrow"

TOKEN_AGE_BINS: Tuple[Tuple[str, float, Optional[float]], ...] = (
    ("0-30", 0.0, 30.0),
    ("30-60", 30.0, 60.0),
    ("60-120", 60.0, 120.0),
    ("120-240", 120.0, 240.0),
    ("240+", 240.0, None),
)
HOLD_TIME_BINS: Tuple[Tuple[str, float, Optional[float]], ...] = (
    ("0-2h", 0.0, 2.0),
    ("2-4h", 2.0, 4.0),
    ("4-6h", 4.0, 6.0),
    ("6-8h", 6.0, 8.0),
    ("8h+", 8.0, None),
)
# Time stop candidate per hold-time bin (the open-ended bin is never chosen).
HOLD_TIME_CUTOFFS = (2.0, 4.0, 6.0, 8.0)
POSITION_TIERS = (("high", 1.0), ("medium", 0.6), ("low", 0.3))

TAKE_PROFIT_PREFIX = "take_profit_level_"
POSITION_SIZE_PREFIX = "position_size_"


@dataclass(frozen=True)
class ParameterTunerConfig:
    min_trades: int
    window: int
    min_confidence: float
    step: float
    take_profit_step: float

    @classmethod
    def from_params(cls) -> "ParameterTunerConfig":
        return cls(
            min_trades=int(get_param("parameter_tuner", "min_trades")),
            window=int(get_param("parameter_tuner", "window")),
            min_confidence=float(get_param("parameter_tuner", "min_confidence")),
            step=float(get_param("parameter_tuner", "step")),
            take_profit_step=float(get_param("parameter_tuner", "take_profit_step")),
        )


@dataclass
class BucketStats:
    bucket: str
    count: int = 0
    wins: int = 0
    losses: int = 0
    total_return: float = 0.0

    def add(self, trade: Trade) -> None:
        self.count += 1
        if trade.outcome == OUTCOME_WIN:
            self.wins += 1
        else:
            self.losses += 1
        self.total_return += trade.return_pct

    @property
    def win_rate(self) -> float:
        return self.wins / max(1, self.count)

    @property
    def avg_return(self) -> float:
        return self.total_return / max(1, self.count)

    @property
    def score(self) -> float:
        return self.win_rate * max(0.0, self.avg_return)


@dataclass
class ParameterAnalysis:
    parameter: str
    current_value: Any
    optimal_value: Any
    confidence: float
    sample_size: int
    avg_return_at_optimal: float
    win_rate_at_optimal: float
    recommendation: str

    def reason(self) -> str:
        return (
            f"{self.recommendation}: confidence {self.confidence * 100:.0f}%, "
            f"win rate {self.win_rate_at_optimal * 100:.1f}%"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parameter": self.parameter,
            "current_value": self.current_value,
            "optimal_value": self.optimal_value,
            "confidence": round(self.confidence, 4),
            "sample_size": self.sample_size,
            "avg_return_at_optimal": round(self.avg_return_at_optimal, 4),
            "win_rate_at_optimal": round(self.win_rate_at_optimal, 4),
            "recommendation": self.recommendation,
        }


@dataclass
class ParameterTuningResult:
    status: str  # updated | unchanged | skipped
    reason: str
    analyses: List[ParameterAnalysis] = field(default_factory=list)
    applied: List[ParameterAnalysis] = field(default_factory=list)
    frozen_skipped: List[str] = field(default_factory=list)
    snapshot_version: Optional[int] = None
    regime_stats: Dict[str, Dict[str, float]] = field(default_factory=dict)

    @property
    def adjustments_made(self) -> int:
        return len(self.applied)


def _direction(new: float, current: float) -> str:
    if new > current:
        return RECOMMEND_INCREASE
    if new < current:
        return RECOMMEND_DECREASE
    return RECOMMEND_KEEP


def range_recommendation(current: Dict[str, float], optimal: Dict[str, float]) -> str:
    """Center shift beyond 2 points wins over a spread change beyond 2 points."""
    current_spread = float(current["max"]) - float(current["min"])
    optimal_spread = float(optimal["max"]) - float(optimal["min"])
    center_shift = (float(optimal["min"]) + float(optimal["max"])) / 2.0 - (
        float(current["min"]) + float(current["max"])
    ) / 2.0
    if abs(center_shift) > 2 and center_shift > 0:
        return RECOMMEND_INCREASE
    if abs(center_shift) > 2 and center_shift < 0:
        return RECOMMEND_DECREASE
    if optimal_spread > current_spread + 2:
        return RECOMMEND_WIDEN
    if optimal_spread < current_spread - 2:
        return RECOMMEND_NARROW
    return RECOMMEND_KEEP


def stepped_range_recommendation(
    current: Dict[str, float],
    target: Dict[str, float],
    stepped: Dict[str, float],
) -> str:
    """Direction toward the best bucket's range; keep when the capped step moved nothing."""
    if float(stepped["min"]) == float(current["min"]) and float(stepped["max"]) == float(current["max"]):
        return RECOMMEND_KEEP
    return range_recommendation(current, target)


def _bin_for(value: float, bins: Tuple[Tuple[str, float, Optional[float]], ...]) -> str:
    for name, lo, hi in bins:
        if value >= lo and (hi is None or value < hi):
            return name
    return bins[0][0]


def apply_parameter_value(params: Dict[str, Any], name: str, value: Any) -> None:
    """Write one tuned value into a parameter map (in place)."""
    if name.startswith(TAKE_PROFIT_PREFIX):
        index = int(name[len(TAKE_PROFIT_PREFIX):]) - 1
        params["take_profit_levels"][index]["target"] = value
    elif name.startswith(POSITION_SIZE_PREFIX):
        tier = name[len(POSITION_SIZE_PREFIX):]
        params["position_sizes"][tier] = value
    else:
        params[name] = copy.deepcopy(value)


def parameter_group(name: str) -> str:
    """Top-level parameter key a tuned name belongs to (freezing the group freezes all)."""
    if name.startswith(TAKE_PROFIT_PREFIX):
        return "take_profit_levels"
    if name.startswith(POSITION_SIZE_PREFIX):
        return "position_sizes"
    return name


class ParameterTuner:
    """Bucketed threshold search plus Kelly sizing over recent trades."""

    def __init__(
        self,
        db: LearningDB,
        config: Optional[ParameterTunerConfig] = None,
        on_event: Optional[Callable[[LearningEvent], None]] = None,
    ):
        self.db = db
        self.config = config or ParameterTunerConfig.from_params()
        self.on_event = on_event
        self.log = get_logger("parameter_tuner")

    def _emit(self, kind: str, payload: Dict[str, Any]) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(LearningEvent(kind=kind, payload=payload))
        except Exception as e:
            self.log.warning(f"on_event callback failed for {kind}: {e}")

    def get_current_parameters(self) -> Dict[str, Any]:
        """Parameters of the highest snapshot, filled in from defaults."""
        params = copy.deepcopy(DEFAULT_PARAMETERS)
        stored = self.db.ensure_baseline_snapshot().parameters or {}
        for key, value in stored.items():
            if isinstance(value, dict) and isinstance(params.get(key), dict):
                params[key].update(copy.deepcopy(value))
            else:
                params[key] = copy.deepcopy(value)
        return params

    # ------------------------------------------------------------------
    # Entry parameters
    # ------------------------------------------------------------------

    def optimize_entry_parameters(
        self,
        trades: List[Trade],
        params: Optional[Dict[str, Any]] = None,
    ) -> List[ParameterAnalysis]:
        if len(trades) < self.config.min_trades:
            return []
        current = params if params is not None else self.get_current_parameters()
        analyses: List[ParameterAnalysis] = []
        for fn in (self.optimize_dip_entry_range, self.optimize_wallet_count_threshold, self.optimize_token_age):
            analysis = fn(trades, current)
            if analysis is not None:
                analyses.append(analysis)
        return analyses

    def optimize_dip_entry_range(self, trades: List[Trade], params: Dict[str, Any]) -> Optional[ParameterAnalysis]:
        current = {k: float(v) for k, v in params["dip_entry_range"].items()}
        lo_bound, hi_bound = PARAMETER_LIMITS["dip_entry_range"]

        buckets: Dict[int, BucketStats] = {}
        for trade in trades:
            if trade.fingerprint is None:
                continue
            start = int(math.floor(trade.fingerprint.entry_quality.dip_depth / 5.0)) * 5
            buckets.setdefault(start, BucketStats(f"{start}-{start + 5}")).add(trade)

        ranked = sorted((b for b in buckets.values() if b.count >= 5), key=lambda b: b.score, reverse=True)
        if not ranked:
            return None
        best = ranked[0]
        opt_min, opt_max = (float(x) for x in best.bucket.split("-"))

        step = self.config.step
        new_min = limit_adjustment(current["min"], opt_min, lo_bound, hi_bound - 10, step)
        new_max = limit_adjustment(current["max"], opt_max, lo_bound + 10, hi_bound, step)
        optimal = {"min": new_min, "max": new_max}
        return ParameterAnalysis(
            parameter="dip_entry_range",
            current_value=current,
            optimal_value=optimal,
            confidence=min(1.0, best.count / 20.0),
            sample_size=len(trades),
            avg_return_at_optimal=best.avg_return,
            win_rate_at_optimal=best.win_rate,
            recommendation=stepped_range_recommendation(current, {"min": opt_min, "max": opt_max}, optimal),
        )

    def optimize_wallet_count_threshold(
        self,
        trades: List[Trade],
        params: Dict[str, Any],
    ) -> Optional[ParameterAnalysis]:
        current = float(params["smart_wallet_count_threshold"])
        lo_bound, hi_bound = PARAMETER_LIMITS["smart_wallet_count_threshold"]

        buckets: Dict[int, BucketStats] = {}
        for trade in trades:
            if trade.fingerprint is None:
                continue
            count = int(trade.fingerprint.smart_wallets.count)
            buckets.setdefault(count, BucketStats(str(count))).add(trade)
        if not buckets:
            return None

        optimal = current
        best_score = 0.0
        for threshold in range(1, 6):
            eligible = [b for c, b in buckets.items() if c >= threshold]
            total = sum(b.count for b in eligible)
            if total < 5:
                continue
            wr = sum(b.wins for b in eligible) / total
            avg = sum(b.total_return for b in eligible) / total
            score = wr * max(0.0, avg) * math.log(total + 1)
            if score > best_score:
                best_score = score
                optimal = float(threshold)

        new_value = limit_adjustment(current, optimal, lo_bound, hi_bound, self.config.step)
        at_optimal = buckets.get(int(optimal))
        return ParameterAnalysis(
            parameter="smart_wallet_count_threshold",
            current_value=current,
            optimal_value=new_value,
            confidence=min(1.0, sum(b.count for b in buckets.values()) / 50.0),
            sample_size=len(trades),
            avg_return_at_optimal=at_optimal.avg_return if at_optimal else 0.0,
            win_rate_at_optimal=at_optimal.win_rate if at_optimal else 0.0,
            recommendation=_direction(new_value, current),
        )

    def optimize_token_age(self, trades: List[Trade], params: Dict[str, Any]) -> Optional[ParameterAnalysis]:
        current = float(params["token_age_min"])
        lo_bound, hi_bound = PARAMETER_LIMITS["token_age_min"]

        buckets = {name: BucketStats(name) for name, _, _ in TOKEN_AGE_BINS}
        bin_floor = {name: lo for name, lo, _ in TOKEN_AGE_BINS}
        for trade in trades:
            if trade.fingerprint is None:
                continue
            buckets[_bin_for(trade.fingerprint.entry_quality.token_age, TOKEN_AGE_BINS)].add(trade)

        ranked = sorted((b for b in buckets.values() if b.count >= 3), key=lambda b: b.score, reverse=True)
        if not ranked:
            return None
        best = ranked[0]

        new_value = limit_adjustment(current, bin_floor[best.bucket], lo_bound, hi_bound, self.config.step)
        return ParameterAnalysis(
            parameter="token_age_min",
            current_value=current,
            optimal_value=new_value,
            confidence=min(1.0, best.count / 15.0),
            sample_size=len(trades),
            avg_return_at_optimal=best.avg_return,
            win_rate_at_optimal=best.win_rate,
            recommendation=_direction(new_value, current),
        )

    # ------------------------------------------------------------------
    # Exit parameters
    # ------------------------------------------------------------------

    def optimize_exit_parameters(
        self,
        trades: List[Trade],
        params: Optional[Dict[str, Any]] = None,
    ) -> List[ParameterAnalysis]:
        if len(trades) < self.config.min_trades:
            return []
        current = params if params is not None else self.get_current_parameters()
        analyses: List[ParameterAnalysis] = []
        stop_loss = self.optimize_stop_loss(trades, current)
        if stop_loss is not None:
            analyses.append(stop_loss)
        analyses.extend(self.optimize_take_profit_levels(trades, current))
        time_stop = self.optimize_time_based_stop(trades, current)
        if time_stop is not None:
            analyses.append(time_stop)
        trailing = self.optimize_trailing_stops(trades, current)
        if trailing is not None:
            analyses.append(trailing)
        return analyses

    def optimize_stop_loss(self, trades: List[Trade], params: Dict[str, Any]) -> Optional[ParameterAnalysis]:
        """Widen when many stops land right at the level, tighten when none do and losses stay small."""
        current = float(params["stop_loss_percent"])
        lo_bound, hi_bound = PARAMETER_LIMITS["stop_loss_percent"]

        stopped = [t for t in trades if t.exit_reason in (EXIT_STOP_LOSS, EXIT_TRAILING_STOP)]
        if len(stopped) < 10:
            return None

        losses = [abs(t.return_pct) for t in stopped]
        avg_loss = mean(losses)
        tight = sum(1 for loss in losses if current - 2 <= loss <= current + 2)
        tight_rate = tight / len(stopped)

        new_value = current
        if tight_rate > 0.4:
            new_value = min(current + self.config.step, hi_bound)
        elif tight_rate < 0.1 and avg_loss < current - 5:
            new_value = max(current - self.config.step, lo_bound)
        new_value = clamp(new_value, lo_bound, hi_bound)

        self.log.debug(f"Stop-loss analysis: stopped={len(stopped)} tight_rate={tight_rate:.2f} avg_loss={avg_loss:.2f}")
        return ParameterAnalysis(
            parameter="stop_loss_percent",
            current_value=current,
            optimal_value=new_value,
            confidence=min(1.0, len(stopped) / 30.0),
            sample_size=len(stopped),
            avg_return_at_optimal=-avg_loss,
            win_rate_at_optimal=1.0 - tight_rate,
            recommendation=_direction(new_value, current),
        )

    def optimize_take_profit_levels(self, trades: List[Trade], params: Dict[str, Any]) -> List[ParameterAnalysis]:
        levels = params["take_profit_levels"]
        lo_bound, hi_bound = PARAMETER_LIMITS["take_profit_levels"]
        winners = [t for t in trades if t.outcome == OUTCOME_WIN]
        if len(winners) < 10:
            return []

        step = self.config.take_profit_step
        returns = [t.return_pct for t in winners]
        analyses: List[ParameterAnalysis] = []
        for i, level in enumerate(levels):
            target = float(level["target"])
            reach_rate = sum(1 for r in returns if r >= target) / len(returns)
            new_target = target
            if reach_rate > 0.8:
                new_target = min(target + step, hi_bound)
            elif reach_rate < 0.3 and i > 0:
                floor = float(levels[i - 1]["target"]) + step
                # never move up on a decrease, never below the hard floor
                new_target = min(target, max(target - step, floor, lo_bound))
            new_target = clamp(new_target, lo_bound, hi_bound)

            reached = [r for r in returns if r >= new_target]
            analyses.append(
                ParameterAnalysis(
                    parameter=f"{TAKE_PROFIT_PREFIX}{i + 1}",
                    current_value=target,
                    optimal_value=new_target,
                    confidence=min(1.0, len(winners) / 30.0),
                    sample_size=len(winners),
                    avg_return_at_optimal=mean(reached),
                    win_rate_at_optimal=reach_rate,
                    recommendation=_direction(new_target, target),
                )
            )
        return analyses

    def optimize_time_based_stop(self, trades: List[Trade], params: Dict[str, Any]) -> Optional[ParameterAnalysis]:
        current = float(params["time_based_stop_hours"])
        lo_bound, hi_bound = PARAMETER_LIMITS["time_based_stop_hours"]

        buckets = {name: BucketStats(name) for name, _, _ in HOLD_TIME_BINS}
        for trade in trades:
            hours = trade.hold_hours
            if hours is None:
                continue
            buckets[_bin_for(hours, HOLD_TIME_BINS)].add(trade)

        optimal = current
        best_wr = 0.0
        for (name, _, _), cutoff in zip(HOLD_TIME_BINS, HOLD_TIME_CUTOFFS):
            bucket = buckets[name]
            if bucket.count >= 5 and bucket.win_rate > best_wr:
                best_wr = bucket.win_rate
                optimal = cutoff
        if best_wr == 0.0:
            return None

        new_value = limit_adjustment(current, optimal, lo_bound, hi_bound, self.config.step)
        return ParameterAnalysis(
            parameter="time_based_stop_hours",
            current_value=current,
            optimal_value=new_value,
            confidence=min(1.0, len(trades) / 50.0),
            sample_size=len(trades),
            avg_return_at_optimal=0.0,
            win_rate_at_optimal=best_wr,
            recommendation=_direction(new_value, current),
        )

    def optimize_trailing_stops(self, trades: List[Trade], params: Dict[str, Any]) -> Optional[ParameterAnalysis]:
        """Widen every tier when trailing exits mostly lose, tighten when they mostly win."""
        current = {k: float(v) for k, v in params["trailing_stop_distances"].items()}
        lo_bound, hi_bound = PARAMETER_LIMITS["trailing_stop_distances"]

        trailing = [t for t in trades if t.exit_reason == EXIT_TRAILING_STOP]
        if len(trailing) < 10:
            return None
        wr = sum(1 for t in trailing if t.outcome == OUTCOME_WIN) / len(trailing)

        delta = 0.0
        if wr < 0.4:
            delta = self.config.step
        elif wr > 0.8:
            delta = -self.config.step
        new_value = {tier: clamp(dist + delta, lo_bound, hi_bound) for tier, dist in current.items()}

        if new_value == current:
            recommendation = RECOMMEND_KEEP
        else:
            recommendation = RECOMMEND_WIDEN if delta > 0 else RECOMMEND_NARROW
        return ParameterAnalysis(
            parameter="trailing_stop_distances",
            current_value=current,
            optimal_value=new_value,
            confidence=min(1.0, len(trailing) / 30.0),
            sample_size=len(trailing),
            avg_return_at_optimal=mean([t.return_pct for t in trailing]),
            win_rate_at_optimal=wr,
            recommendation=recommendation,
        )

    # ------------------------------------------------------------------
    # Sizing, regimes, timing
    # ------------------------------------------------------------------

    def optimize_position_sizes(
        self,
        trades: List[Trade],
        params: Optional[Dict[str, Any]] = None,
    ) -> List[ParameterAnalysis]:
        """Half-Kelly per conviction tier (factors 1.0 / 0.6 / 0.3)."""
        if len(trades) < self.config.min_trades:
            return []
        current_sizes = (params if params is not None else self.get_current_parameters())["position_sizes"]
        lo_bound, hi_bound = PARAMETER_LIMITS["position_sizes"]

        wins = [t.return_pct for t in trades if t.outcome == OUTCOME_WIN]
        losses = [t.return_pct for t in trades if t.outcome in (OUTCOME_LOSS, OUTCOME_RUG)]
        wr = len(wins) / max(1, len(trades))
        avg_win = mean(wins)
        avg_loss = mean(losses)

        half_kelly = clamp(kelly_position(wr, avg_win, avg_loss) * 100.0, lo_bound, hi_bound)
        self.log.debug(f"Kelly sizing: win_rate={wr:.2f} avg_loss={avg_loss:.2f} half_kelly={half_kelly:.2f}%")

        analyses: List[ParameterAnalysis] = []
        for tier, factor in POSITION_TIERS:
            current = float(current_sizes[tier])
            optimal = clamp(half_kelly * factor, lo_bound, hi_bound)
            new_value = round(limit_adjustment(current, optimal, lo_bound, hi_bound, self.config.step), 1)
            analyses.append(
                ParameterAnalysis(
                    parameter=f"{POSITION_SIZE_PREFIX}{tier}",
                    current_value=current,
                    optimal_value=new_value,
                    confidence=min(1.0, len(trades) / 50.0),
                    sample_size=len(trades),
                    avg_return_at_optimal=avg_win,
                    win_rate_at_optimal=wr,
                    recommendation=_direction(new_value, current),
                )
            )
        return analyses

    def optimize_market_regime_thresholds(self, trades: List[Trade]) -> Dict[str, Dict[str, float]]:
        """Per-regime performance; reported only, thresholds are not tuned."""
        stats = {regime: BucketStats(regime) for regime in REGIMES}
        for trade in trades:
            regime = trade.fingerprint.market_conditions.regime if trade.fingerprint else "CAUTIOUS"
            stats.setdefault(regime, BucketStats(regime)).add(trade)
        summary = {
            regime: {"count": b.count, "win_rate": round(b.win_rate, 4), "avg_return": round(b.avg_return, 4)}
            for regime, b in stats.items()
        }
        self.log.info(
            "Market regime performance: "
            + ", ".join(f"{r} wr={s['win_rate']:.2f} avg={s['avg_return']:.2f}" for r, s in summary.items())
        )
        return summary

    def optimize_timing_windows(
        self,
        trades: List[Trade],
        params: Optional[Dict[str, Any]] = None,
    ) -> Optional[ParameterAnalysis]:
        if len(trades) < self.config.min_trades:
            return None
        hours = (params if params is not None else self.get_current_parameters())["peak_trading_hours"]
        current = {"min": float(hours["start"]), "max": float(hours["end"])}
        lo_bound, hi_bound = PARAMETER_LIMITS["peak_trading_hours"]

        stats = {h: BucketStats(str(h)) for h in range(24)}
        for trade in trades:
            hour = trade.fingerprint.market_conditions.time_of_day if trade.fingerprint else trade.entry_hour
            stats[int(hour) % 24].add(trade)

        ranked = sorted(
            ((h, b) for h, b in stats.items() if b.count >= 3),
            key=lambda item: item[1].score,
            reverse=True,
        )
        if len(ranked) < 5:
            return None
        peak = [h for h, _ in ranked[: int(math.ceil(len(ranked) / 2.0))]]

        new_start = int(limit_adjustment(current["min"], min(peak), lo_bound, hi_bound, self.config.step))
        new_end = int(limit_adjustment(current["max"], max(peak), lo_bound, hi_bound, self.config.step))
        optimal = {"min": float(new_start), "max": float(new_end)}
        best = ranked[0][1]
        return ParameterAnalysis(
            parameter="peak_trading_hours",
            current_value={"start": int(current["min"]), "end": int(current["max"])},
            optimal_value={"start": new_start, "end": new_end},
            confidence=min(1.0, len(trades) / 100.0),
            sample_size=len(trades),
            avg_return_at_optimal=best.avg_return,
            win_rate_at_optimal=best.win_rate,
            recommendation=stepped_range_recommendation(
                current, {"min": float(min(peak)), "max": float(max(peak))}, optimal
            ),
        )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def _frozen_parameter_names(self) -> Set[str]:
        return {name for name in self.db.get_frozen_names() if not name.startswith("weight_")}

    def apply_analyses(
        self,
        analyses: List[ParameterAnalysis],
        params: Dict[str, Any],
        trade_count: int,
    ) -> ParameterTuningResult:
        frozen = self._frozen_parameter_names()
        result = ParameterTuningResult(status="unchanged", reason="no_adjustments", analyses=list(analyses))
        new_params = copy.deepcopy(params)
        rows: List[Dict[str, Any]] = []

        for analysis in analyses:
            if analysis.parameter in frozen or parameter_group(analysis.parameter) in frozen:
                self.log.info(f"Parameter {analysis.parameter} is frozen; skipping")
                result.frozen_skipped.append(analysis.parameter)
                continue
            if analysis.recommendation == RECOMMEND_KEEP:
                continue
            if analysis.confidence < self.config.min_confidence:
                self.log.debug(f"Low confidence for {analysis.parameter} ({analysis.confidence:.2f}); skipping")
                continue
            apply_parameter_value(new_params, analysis.parameter, analysis.optimal_value)
            rows.append(
                {
                    "parameter_name": analysis.parameter,
                    "old_value": analysis.current_value,
                    "new_value": analysis.optimal_value,
                    "recommendation": analysis.recommendation,
                    "reason": analysis.reason(),
                    "confidence": analysis.confidence,
                }
            )
            result.applied.append(analysis)

        if not rows:
            return result

        perf = self.db.get_performance_summary(100)
        version = self.db.commit_parameter_adjustments(
            rows,
            new_params,
            trade_count=int(trade_count),
            win_rate=float(perf["win_rate"]),
            profit_factor=float(perf["profit_factor"]),
        )
        result.status = "updated"
        result.reason = "parameters_adjusted"
        result.snapshot_version = version
        for analysis in result.applied:
            self.log.info(
                f"Parameter adjusted v{version}: {analysis.parameter} "
                f"{analysis.current_value} -> {analysis.optimal_value} ({analysis.recommendation})"
            )
            self._emit(
                "parameter_adjusted",
                {
                    "version": version,
                    "parameter": analysis.parameter,
                    "old": analysis.current_value,
                    "new": analysis.optimal_value,
                    "recommendation": analysis.recommendation,
                    "confidence": round(analysis.confidence, 4),
                },
            )
        return result

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def tune(self, recent_trades: List[Trade]) -> ParameterTuningResult:
        completed = completed_only(recent_trades)
        if len(completed) < self.config.min_trades:
            self.log.info(
                f"Skipping parameter tuning: insufficient data ({len(completed)} < {self.config.min_trades})"
            )
            return ParameterTuningResult(status="skipped", reason="insufficient_data")

        params = self.get_current_parameters()
        analyses: List[ParameterAnalysis] = []
        analyses.extend(self.optimize_entry_parameters(completed, params))
        analyses.extend(self.optimize_exit_parameters(completed, params))
        analyses.extend(self.optimize_position_sizes(completed, params))
        regime_stats = self.optimize_market_regime_thresholds(completed)
        timing = self.optimize_timing_windows(completed, params)
        if timing is not None:
            analyses.append(timing)

        result = self.apply_analyses(analyses, params, len(completed))
        result.regime_stats = regime_stats
        self.log.info(
            f"Parameter tuning done: analyses={len(analyses)} applied={result.adjustments_made} "
            f"frozen_skipped={len(result.frozen_skipped)}"
        )
        return result

    def execute_tuning_cycle(self) -> ParameterTuningResult:
        trades = self.db.get_recent_completed_trades(self.config.window)
        return self.tune(trades)
