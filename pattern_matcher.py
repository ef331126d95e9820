#!/usr/bin/env python3
"""
Pattern memory for the learning core.

Every completed trade carries a fingerprint of its entry conditions. Before a
new entry, similar historical fingerprints are looked up (cosine similarity x
30-day half-life recency) and their outcomes turn into a conviction adjustment.

Win/danger libraries deduplicate by structural containment of the stored
fingerprint JSON, not by the similarity metric used for lookups.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from learning_db import LearningDB
from learning_errors import ComputationError
from learning_models import (
    OUTCOME_LOSS,
    OUTCOME_RUG,
    OUTCOME_WIN,
    EntryQualitySignal,
    MarketConditionSignal,
    SmartWalletSignal,
    SocialSignal,
    TokenSafetySignal,
    Trade,
    TradeFingerprint,
)
from learning_params import get_param
from learning_utils import cosine_similarity, days_between, exponential_decay
from logging_utils import get_logger


MIN_ADJUSTMENT = -15
MAX_ADJUSTMENT = 5


@dataclass(frozen=True)
class PatternMatcherConfig:
    recent_window: int
    default_limit: int
    half_life_days: float
    win_return_threshold: float
    danger_loss_threshold: float
    danger_confidence_start: float
    danger_confidence_step: float
    danger_similarity: float
    danger_min_confidence: float

    @classmethod
    def from_params(cls) -> "PatternMatcherConfig":
        return cls(
            recent_window=int(get_param("pattern_matcher", "recent_window")),
            default_limit=int(get_param("pattern_matcher", "default_limit")),
            half_life_days=float(get_param("pattern_matcher", "half_life_days")),
            win_return_threshold=float(get_param("pattern_matcher", "win_return_threshold")),
            danger_loss_threshold=float(get_param("pattern_matcher", "danger_loss_threshold")),
            danger_confidence_start=float(get_param("pattern_matcher", "danger_confidence_start")),
            danger_confidence_step=float(get_param("pattern_matcher", "danger_confidence_step")),
            danger_similarity=float(get_param("pattern_matcher", "danger_similarity")),
            danger_min_confidence=float(get_param("pattern_matcher", "danger_min_confidence")),
        )


@dataclass
class ScoredTrade:
    trade: Trade
    similarity: float
    recency_weight: float
    score: float


class PatternMatcher:
    """Fingerprinting, similar-trade lookup and win/danger pattern libraries."""

    def __init__(
        self,
        db: LearningDB,
        config: Optional[PatternMatcherConfig] = None,
    ):
        self.db = db
        self.config = config or PatternMatcherConfig.from_params()
        self.log = get_logger("pattern_matcher")

    # ------------------------------------------------------------------
    # Fingerprints
    # ------------------------------------------------------------------

    def create_fingerprint(
        self,
        trade: Trade,
        context: Optional[Dict[str, Any]] = None,
        now: Optional[float] = None,
    ) -> TradeFingerprint:
        """Return the trade's fingerprint, or build one from the known context.

        Fingerprints are write-once: an existing one is returned unchanged.
        """
        if trade.fingerprint is not None:
            return trade.fingerprint

        if context:
            try:
                return TradeFingerprint.from_dict(context)
            except ComputationError as e:
                self.log.warning(f"Ignoring malformed fingerprint context for {trade.id}: {e}")

        ts = float(now if now is not None else (trade.entry_time or time.time()))
        dt = datetime.fromtimestamp(ts, tz=timezone.utc)
        return TradeFingerprint(
            smart_wallets=SmartWalletSignal(),
            token_safety=TokenSafetySignal(),
            market_conditions=MarketConditionSignal(
                regime="FULL",
                sol_trend="stable",
                btc_trend="stable",
                time_of_day=dt.hour,
                # Sunday = 0
                day_of_week=(dt.weekday() + 1) % 7,
            ),
            social_signals=SocialSignal(),
            entry_quality=EntryQualitySignal(hype_phase="DISCOVERY"),
        )

    # ------------------------------------------------------------------
    # Similar trades
    # ------------------------------------------------------------------

    def score_similar_trades(
        self,
        fingerprint: TradeFingerprint,
        now: Optional[float] = None,
    ) -> List[ScoredTrade]:
        """Score the recent fingerprinted window, best first."""
        now_ts = float(now if now is not None else time.time())
        candidates = self.db.get_recent_completed_trades(
            self.config.recent_window,
            order_by="entry_time",
            require_fingerprint=True,
        )
        scored: List[ScoredTrade] = []
        for trade in candidates:
            if trade.fingerprint is None:
                continue
            similarity = cosine_similarity(fingerprint, trade.fingerprint)
            recency = exponential_decay(days_between(now_ts, trade.entry_time), self.config.half_life_days)
            scored.append(ScoredTrade(trade, similarity, recency, similarity * recency))
        scored.sort(key=lambda s: s.score, reverse=True)
        return scored

    def find_similar_trades(
        self,
        fingerprint: TradeFingerprint,
        limit: Optional[int] = None,
        now: Optional[float] = None,
    ) -> List[Trade]:
        """Top-`limit` neighbors by similarity x recency. Empty history gives []."""
        use_limit = self.config.default_limit if limit is None else int(limit)
        scored = self.score_similar_trades(fingerprint, now=now)
        if not scored:
            self.log.debug("No historical trades found for pattern matching")
            return []
        self.log.debug(
            f"Found {min(len(scored), use_limit)} similar trades "
            f"(analyzed={len(scored)} top_score={scored[0].score:.3f})"
        )
        return [s.trade for s in scored[:use_limit]]

    @staticmethod
    def get_pattern_match_adjustment(neighbors: List[Trade]) -> int:
        """Conviction adjustment in [-15, +5] from neighbor outcomes."""
        if not neighbors:
            return 0
        wins = sum(1 for t in neighbors if t.outcome == OUTCOME_WIN)
        win_rate = wins / len(neighbors)
        if win_rate >= 0.7:
            adjustment = 5
        elif win_rate >= 0.5:
            adjustment = 0
        elif win_rate >= 0.3:
            adjustment = -5
        else:
            adjustment = -10
        if any(t.outcome == OUTCOME_RUG for t in neighbors):
            adjustment -= 5
        return max(MIN_ADJUSTMENT, min(MAX_ADJUSTMENT, adjustment))

    def check_for_danger_patterns(self, fingerprint: TradeFingerprint) -> int:
        """Penalty (<= 0) from the strongest high-confidence danger pattern resembling this setup."""
        worst = 0
        for pattern in self.db.list_danger_patterns(min_confidence=self.config.danger_min_confidence):
            try:
                stored = TradeFingerprint.from_dict(pattern.pattern)
            except ComputationError as e:
                self.log.warning(f"Skipping malformed danger pattern {pattern.id}: {e}")
                continue
            if cosine_similarity(fingerprint, stored) < self.config.danger_similarity:
                continue
            penalty = -min(10, int(round(pattern.confidence / 10.0)))
            if penalty < worst:
                worst = penalty
        if worst < 0:
            self.log.warning(f"Danger pattern match: penalty {worst}")
        return worst

    def get_conviction_adjustment(self, fingerprint: TradeFingerprint, now: Optional[float] = None) -> Dict[str, int]:
        """Neighbor adjustment plus danger penalty for an entry candidate."""
        neighbors = self.find_similar_trades(fingerprint, now=now)
        pattern_adj = self.get_pattern_match_adjustment(neighbors)
        danger_adj = self.check_for_danger_patterns(fingerprint)
        return {
            "neighbors": len(neighbors),
            "pattern_adjustment": pattern_adj,
            "danger_adjustment": danger_adj,
            "total": pattern_adj + danger_adj,
        }

    # ------------------------------------------------------------------
    # Libraries
    # ------------------------------------------------------------------

    def store_trade_pattern(self, trade: Trade, fingerprint: TradeFingerprint) -> Dict[str, Any]:
        """Attach the fingerprint to the stored trade (write-once) and update libraries."""
        self.db.set_trade_fingerprint(trade.id, fingerprint)
        return self.update_pattern_libraries(trade, fingerprint)

    def update_pattern_libraries(self, trade: Trade, fingerprint: TradeFingerprint) -> Dict[str, Any]:
        result: Dict[str, Any] = {"win_pattern": None, "danger_pattern": None}
        pnl_pct = trade.pnl_percent
        pattern = fingerprint.to_dict()

        if trade.outcome == OUTCOME_WIN and pnl_pct is not None and pnl_pct > self.config.win_return_threshold:
            win = self.db.upsert_win_pattern(pattern, float(pnl_pct))
            result["win_pattern"] = win.id
            self.log.debug(f"Win pattern {win.id}: occurrences={win.occurrences} avg_return={win.avg_return:.2f}")

        is_big_loss = (
            trade.outcome == OUTCOME_LOSS
            and pnl_pct is not None
            and pnl_pct < self.config.danger_loss_threshold
        )
        if trade.outcome == OUTCOME_RUG or is_big_loss:
            reason = f"{trade.outcome} with {pnl_pct}% loss"
            danger = self.db.upsert_danger_pattern(
                pattern,
                reason,
                start_confidence=self.config.danger_confidence_start,
                confidence_step=self.config.danger_confidence_step,
            )
            result["danger_pattern"] = danger.id
            self.log.warning(
                f"Danger pattern {danger.id} from {trade.token_address or trade.id}: "
                f"{reason} (confidence={danger.confidence:.0f}, occurrences={danger.occurrences})"
            )
        return result

    def get_pattern_stats(self) -> Dict[str, Any]:
        counts = self.db.get_pattern_counts()
        counts["high_confidence_danger_patterns"] = len(
            self.db.list_danger_patterns(min_confidence=self.config.danger_min_confidence)
        )
        return counts

    def reset_pattern_libraries(self) -> Dict[str, int]:
        deleted = self.db.reset_pattern_libraries()
        self.log.warning(
            f"Pattern libraries reset: win={deleted['win_patterns']} danger={deleted['danger_patterns']}"
        )
        return deleted
