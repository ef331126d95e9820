#!/usr/bin/env python3
"""
Data model for the learning core.

Records shared by the pattern matcher, optimizers, meta-learner and store:
- TradeFingerprint (five sub-signals captured at entry, write-once)
- Trade (completed trade with terminal outcome)
- CategoryWeights (percentages summing to 100)
- LearningSnapshot, pattern library entries, cycles, frozen params, events
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from learning_errors import ComputationError


# =============================================================================
# Constants
# =============================================================================

OUTCOME_WIN = "WIN"
OUTCOME_LOSS = "LOSS"
OUTCOME_RUG = "RUG"
OUTCOME_BREAKEVEN = "BREAKEVEN"
OUTCOMES = (OUTCOME_WIN, OUTCOME_LOSS, OUTCOME_RUG, OUTCOME_BREAKEVEN)

EXIT_TAKE_PROFIT = "take_profit"
EXIT_STOP_LOSS = "stop_loss"
EXIT_TRAILING_STOP = "trailing_stop"
EXIT_TIME_STOP = "time_stop"
EXIT_DANGER_SIGNAL = "danger_signal"
EXIT_MANUAL = "manual"

REGIMES = ("FULL", "CAUTIOUS", "DEFENSIVE", "PAUSE")
TRENDS = ("up", "stable", "down")
HYPE_PHASES = ("DISCOVERY", "EARLY_FOMO", "PEAK_FOMO", "DISTRIBUTION", "DUMP")

CYCLE_PATTERN = "pattern_matching"
CYCLE_WEIGHT = "weight_optimization"
CYCLE_PARAMETER = "parameter_tuning"
CYCLE_META = "meta_review"
CYCLE_REPORT = "full_report"
CYCLE_TYPES = (CYCLE_PATTERN, CYCLE_WEIGHT, CYCLE_PARAMETER, CYCLE_META, CYCLE_REPORT)

CYCLE_RUNNING = "running"
CYCLE_COMPLETED = "completed"
CYCLE_FAILED = "failed"

# What started a cycle row; only milestone rows count toward milestone idempotency.
TRIGGER_MILESTONE = "milestone"
TRIGGER_MANUAL = "manual"
TRIGGER_TRADE = "trade"

CATEGORIES = (
    "smart_wallet",
    "token_safety",
    "market_conditions",
    "social_signals",
    "entry_quality",
)

DEFAULT_WEIGHTS: Dict[str, float] = {
    "smart_wallet": 30.0,
    "token_safety": 25.0,
    "market_conditions": 15.0,
    "social_signals": 10.0,
    "entry_quality": 20.0,
}

DEFAULT_PARAMETERS: Dict[str, Any] = {
    "dip_entry_range": {"min": 20.0, "max": 30.0},
    "smart_wallet_count_threshold": 2,
    "token_age_min": 10.0,
    "token_age_max": 240.0,
    "stop_loss_percent": 25.0,
    "early_discovery_stop_loss": 15.0,
    "trailing_stop_distances": {"tier1": 15.0, "tier2": 12.0, "tier3": 10.0},
    "take_profit_levels": [
        {"target": 30.0, "sell": 20.0},
        {"target": 60.0, "sell": 25.0},
        {"target": 100.0, "sell": 25.0},
        {"target": 200.0, "sell": 15.0},
    ],
    "time_based_stop_hours": 4.0,
    "position_sizes": {"high": 5.0, "medium": 3.0, "low": 1.0},
    "market_regime_thresholds": {"cautious": 3.0, "defensive": 7.0, "pause": 15.0},
    "peak_trading_hours": {"start": 9, "end": 23},
}

# Hard safety bounds for tuned values.
PARAMETER_LIMITS: Dict[str, Tuple[float, float]] = {
    "stop_loss_percent": (12.0, 35.0),
    "trailing_stop_distances": (5.0, 20.0),
    "take_profit_levels": (15.0, 300.0),
    "position_sizes": (0.5, 5.0),
    "dip_entry_range": (10.0, 50.0),
    "time_based_stop_hours": (2.0, 8.0),
    "smart_wallet_count_threshold": (1.0, 5.0),
    "token_age_min": (5.0, 60.0),
    "peak_trading_hours": (0.0, 23.0),
}


def _num(value: Any, default: float = 0.0) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    try:
        out = float(value)
    except (TypeError, ValueError) as exc:
        raise ComputationError(f"not a number: {value!r}") from exc
    if out != out:
        raise ComputationError("NaN value")
    return out


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _section(data: Dict[str, Any], *keys: str) -> Dict[str, Any]:
    value = _pick(data, *keys, default={})
    if not isinstance(value, dict):
        raise ComputationError(f"fingerprint section {keys[0]} is not an object")
    return value


# =============================================================================
# Fingerprint
# =============================================================================

@dataclass(frozen=True)
class SmartWalletSignal:
    count: int = 0
    tiers: Tuple[int, ...] = ()
    addresses: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TokenSafetySignal:
    overall_score: float = 0.0
    liquidity_locked: bool = False
    liquidity_depth: float = 0.0
    honeypot_risk: bool = False
    mint_authority: bool = False
    freeze_authority: bool = False


@dataclass(frozen=True)
class MarketConditionSignal:
    sol_price: float = 0.0
    sol_trend: str = "stable"
    btc_trend: str = "stable"
    regime: str = "FULL"
    time_of_day: int = 0
    day_of_week: int = 0


@dataclass(frozen=True)
class SocialSignal:
    twitter_followers: float = 0.0
    telegram_members: float = 0.0
    mention_velocity: float = 0.0


@dataclass(frozen=True)
class EntryQualitySignal:
    dip_depth: float = 0.0
    distance_from_ath: float = 0.0
    token_age: float = 0.0
    buy_sell_ratio: float = 0.0
    hype_phase: str = "DISCOVERY"


@dataclass(frozen=True)
class TradeFingerprint:
    """Conditions at the moment of entry. Never mutated after creation."""

    smart_wallets: SmartWalletSignal = field(default_factory=SmartWalletSignal)
    token_safety: TokenSafetySignal = field(default_factory=TokenSafetySignal)
    market_conditions: MarketConditionSignal = field(default_factory=MarketConditionSignal)
    social_signals: SocialSignal = field(default_factory=SocialSignal)
    entry_quality: EntryQualitySignal = field(default_factory=EntryQualitySignal)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "smart_wallets": {
                "count": int(self.smart_wallets.count),
                "tiers": [int(t) for t in self.smart_wallets.tiers],
                "addresses": list(self.smart_wallets.addresses),
            },
            "token_safety": {
                "overall_score": self.token_safety.overall_score,
                "liquidity_locked": self.token_safety.liquidity_locked,
                "liquidity_depth": self.token_safety.liquidity_depth,
                "honeypot_risk": self.token_safety.honeypot_risk,
                "mint_authority": self.token_safety.mint_authority,
                "freeze_authority": self.token_safety.freeze_authority,
            },
            "market_conditions": {
                "sol_price": self.market_conditions.sol_price,
                "sol_trend": self.market_conditions.sol_trend,
                "btc_trend": self.market_conditions.btc_trend,
                "regime": self.market_conditions.regime,
                "time_of_day": self.market_conditions.time_of_day,
                "day_of_week": self.market_conditions.day_of_week,
            },
            "social_signals": {
                "twitter_followers": self.social_signals.twitter_followers,
                "telegram_members": self.social_signals.telegram_members,
                "mention_velocity": self.social_signals.mention_velocity,
            },
            "entry_quality": {
                "dip_depth": self.entry_quality.dip_depth,
                "distance_from_ath": self.entry_quality.distance_from_ath,
                "token_age": self.entry_quality.token_age,
                "buy_sell_ratio": self.entry_quality.buy_sell_ratio,
                "hype_phase": self.entry_quality.hype_phase,
            },
        }

    @classmethod
    def from_dict(cls, data: Any) -> "TradeFingerprint":
        """Build from stored JSON. Accepts snake_case and camelCase keys.

        Raises ComputationError on malformed input.
        """
        if not isinstance(data, dict):
            raise ComputationError("fingerprint is not an object")
        sw = _section(data, "smart_wallets", "smartWallets")
        ts = _section(data, "token_safety", "tokenSafety")
        mc = _section(data, "market_conditions", "marketConditions")
        so = _section(data, "social_signals", "socialSignals")
        eq = _section(data, "entry_quality", "entryQuality")

        tiers = sw.get("tiers") or []
        addresses = sw.get("addresses") or []
        if not isinstance(tiers, (list, tuple)) or not isinstance(addresses, (list, tuple)):
            raise ComputationError("smart wallet tiers/addresses must be lists")

        return cls(
            smart_wallets=SmartWalletSignal(
                count=int(_num(sw.get("count"))),
                tiers=tuple(int(_num(t)) for t in tiers),
                addresses=tuple(str(a) for a in addresses),
            ),
            token_safety=TokenSafetySignal(
                overall_score=_num(_pick(ts, "overall_score", "overallScore")),
                liquidity_locked=bool(_pick(ts, "liquidity_locked", "liquidityLocked", default=False)),
                liquidity_depth=_num(_pick(ts, "liquidity_depth", "liquidityDepth")),
                honeypot_risk=bool(_pick(ts, "honeypot_risk", "honeypotRisk", default=False)),
                mint_authority=bool(_pick(ts, "mint_authority", "mintAuthority", default=False)),
                freeze_authority=bool(_pick(ts, "freeze_authority", "freezeAuthority", default=False)),
            ),
            market_conditions=MarketConditionSignal(
                sol_price=_num(_pick(mc, "sol_price", "solPrice")),
                sol_trend=str(_pick(mc, "sol_trend", "solTrend", default="stable")),
                btc_trend=str(_pick(mc, "btc_trend", "btcTrend", default="stable")),
                regime=str(_pick(mc, "regime", default="FULL")),
                time_of_day=int(_num(_pick(mc, "time_of_day", "timeOfDay"))),
                day_of_week=int(_num(_pick(mc, "day_of_week", "dayOfWeek"))),
            ),
            social_signals=SocialSignal(
                twitter_followers=_num(_pick(so, "twitter_followers", "twitterFollowers")),
                telegram_members=_num(_pick(so, "telegram_members", "telegramMembers")),
                mention_velocity=_num(_pick(so, "mention_velocity", "mentionVelocity")),
            ),
            entry_quality=EntryQualitySignal(
                dip_depth=_num(_pick(eq, "dip_depth", "dipDepth")),
                distance_from_ath=_num(_pick(eq, "distance_from_ath", "distanceFromATH")),
                token_age=_num(_pick(eq, "token_age", "tokenAge")),
                buy_sell_ratio=_num(_pick(eq, "buy_sell_ratio", "buySellRatio")),
                hype_phase=str(_pick(eq, "hype_phase", "hypePhase", default="DISCOVERY")),
            ),
        )


# =============================================================================
# Trades
# =============================================================================

@dataclass
class Trade:
    """A trade record. Only trades with a non-null outcome feed learning."""

    id: str
    token_address: str
    entry_price: float
    entry_amount: float
    entry_time: float
    exit_price: Optional[float] = None
    exit_amount: Optional[float] = None
    exit_time: Optional[float] = None
    exit_reason: Optional[str] = None
    pnl: Optional[float] = None
    pnl_percent: Optional[float] = None
    conviction_score: float = 0.0
    fingerprint: Optional[TradeFingerprint] = None
    outcome: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.outcome is not None

    @property
    def return_pct(self) -> float:
        return float(self.pnl_percent or 0.0)

    @property
    def hold_hours(self) -> Optional[float]:
        if self.exit_time is None:
            return None
        return max(0.0, (float(self.exit_time) - float(self.entry_time)) / 3600.0)

    @property
    def entry_hour(self) -> int:
        return datetime.fromtimestamp(float(self.entry_time), tz=timezone.utc).hour

    def with_fingerprint(self, fingerprint: TradeFingerprint) -> "Trade":
        return replace(self, fingerprint=fingerprint)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "token_address": self.token_address,
            "entry_price": self.entry_price,
            "entry_amount": self.entry_amount,
            "entry_time": self.entry_time,
            "exit_price": self.exit_price,
            "exit_amount": self.exit_amount,
            "exit_time": self.exit_time,
            "exit_reason": self.exit_reason,
            "pnl": self.pnl,
            "pnl_percent": self.pnl_percent,
            "conviction_score": self.conviction_score,
            "fingerprint": self.fingerprint.to_dict() if self.fingerprint else None,
            "outcome": self.outcome,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trade":
        if not isinstance(data, dict):
            raise ComputationError("trade is not an object")
        trade_id = _pick(data, "id", "trade_id")
        if trade_id is None:
            raise ComputationError("trade without id")
        fp_raw = data.get("fingerprint")
        outcome = _pick(data, "outcome")
        if outcome is not None:
            outcome = str(outcome).upper()
            if outcome not in OUTCOMES:
                raise ComputationError(f"unknown outcome {outcome!r}")

        def _opt(*keys: str) -> Optional[float]:
            value = _pick(data, *keys)
            return None if value is None else _num(value)

        return cls(
            id=str(trade_id),
            token_address=str(_pick(data, "token_address", "tokenAddress", default="")),
            entry_price=_num(_pick(data, "entry_price", "entryPrice")),
            entry_amount=_num(_pick(data, "entry_amount", "entryAmount")),
            entry_time=_num(_pick(data, "entry_time", "entryTime", default=time.time())),
            exit_price=_opt("exit_price", "exitPrice"),
            exit_amount=_opt("exit_amount", "exitAmount"),
            exit_time=_opt("exit_time", "exitTime"),
            exit_reason=_pick(data, "exit_reason", "exitReason"),
            pnl=_opt("pnl", "profit_loss", "profitLoss"),
            pnl_percent=_opt("pnl_percent", "profit_loss_percent", "profitLossPercent"),
            conviction_score=_num(_pick(data, "conviction_score", "convictionScore")),
            fingerprint=TradeFingerprint.from_dict(fp_raw) if fp_raw else None,
            outcome=outcome,
        )


# =============================================================================
# Weights & snapshots
# =============================================================================

@dataclass
class CategoryWeights:
    """Category weights as percentages. Consumers use as_fractions()."""

    smart_wallet: float = DEFAULT_WEIGHTS["smart_wallet"]
    token_safety: float = DEFAULT_WEIGHTS["token_safety"]
    market_conditions: float = DEFAULT_WEIGHTS["market_conditions"]
    social_signals: float = DEFAULT_WEIGHTS["social_signals"]
    entry_quality: float = DEFAULT_WEIGHTS["entry_quality"]

    def get(self, category: str) -> float:
        if category not in CATEGORIES:
            raise KeyError(f"Unknown category '{category}'")
        return float(getattr(self, category))

    def to_dict(self) -> Dict[str, float]:
        return {c: float(getattr(self, c)) for c in CATEGORIES}

    def total(self) -> float:
        return float(sum(self.to_dict().values()))

    def as_fractions(self) -> Dict[str, float]:
        return {c: v / 100.0 for c, v in self.to_dict().items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CategoryWeights":
        values = {c: _num(data.get(c), DEFAULT_WEIGHTS[c]) for c in CATEGORIES}
        return cls(**values)

    @classmethod
    def from_stored(cls, data: Any) -> "CategoryWeights":
        """Read stored weights, renormalizing legacy fraction rows and drifted sums."""
        if not isinstance(data, dict):
            return cls()
        values = {c: _num(data.get(c), 0.0) for c in CATEGORIES}
        total = sum(values.values())
        if total <= 0:
            return cls()
        if total <= 1.5:
            values = {c: v * 100.0 for c, v in values.items()}
            total = sum(values.values())
        if abs(total - 100.0) > 0.01:
            values = {c: v * 100.0 / total for c, v in values.items()}
        return cls(**values)


@dataclass
class LearningSnapshot:
    version: int
    weights: CategoryWeights
    parameters: Dict[str, Any]
    trade_count: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    created_at: float = field(default_factory=time.time)
    note: str = ""
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "weights": self.weights.to_dict(),
            "parameters": self.parameters,
            "trade_count": self.trade_count,
            "win_rate": self.win_rate,
            "profit_factor": self.profit_factor,
            "created_at": self.created_at,
            "note": self.note,
        }


# =============================================================================
# Pattern libraries, cycles, locks, events
# =============================================================================

@dataclass
class WinPattern:
    id: int
    pattern: Dict[str, Any]
    occurrences: int
    avg_return: float
    last_seen: float


@dataclass
class DangerPattern:
    id: int
    pattern: Dict[str, Any]
    occurrences: int
    confidence: float
    reason: str
    last_seen: float


@dataclass
class LearningCycle:
    id: int
    cycle_number: int
    cycle_type: str
    trade_count_at_cycle: int
    status: str
    adjustments_made: int = 0
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    created_at: float = 0.0
    completed_at: Optional[float] = None
    trigger: str = TRIGGER_MILESTONE

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FrozenParameter:
    parameter_name: str
    frozen_value: Any
    reason: str = ""
    frozen_by: str = "operator"
    frozen_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LearningEvent:
    """Structured fact for the audit/notification feed."""

    kind: str
    payload: Dict[str, Any]
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "payload": self.payload, "created_at": self.created_at}


def frozen_weight_name(category: str) -> str:
    return f"weight_{category}"


def completed_only(trades: List[Trade]) -> List[Trade]:
    return [t for t in trades if t.outcome is not None]
