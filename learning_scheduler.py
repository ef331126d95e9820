#!/usr/bin/env python3
"""
Learning scheduler and background worker.

Schedule (trade counts are completed trades):
- every trade:   pattern matching (fingerprint + library update)
- every 50:      weight optimization, then parameter tuning
- every 100:     meta review
- every 200:     full report

Milestone cycles are keyed `type:milestone` and run at most once per key,
failed ones included (a failed milestone needs a manual trigger). Nothing
milestone-driven runs below the global minimum of 30 completed trades.
All cycle execution goes through one re-entrant lock, so trade events,
timer ticks and manual triggers never overlap.

Usage:
    python3 learning_scheduler.py [--db-path PATH] [--interval 300] [--once]
"""

from __future__ import annotations

import argparse
import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from learning_db import LearningDB
from learning_models import (
    CYCLE_COMPLETED,
    CYCLE_FAILED,
    CYCLE_META,
    CYCLE_PARAMETER,
    CYCLE_PATTERN,
    CYCLE_REPORT,
    CYCLE_WEIGHT,
    TRIGGER_MANUAL,
    TRIGGER_MILESTONE,
    TRIGGER_TRADE,
    LearningEvent,
    LearningSnapshot,
    Trade,
)
from learning_params import cfg_get, get_param
from logging_utils import event_logger, get_logger, setup_logging
from meta_learner import MetaLearner
from parameter_tuner import ParameterTuner
from pattern_matcher import PatternMatcher
from weight_optimizer import WeightOptimizer


MILESTONE_CYCLES = (CYCLE_WEIGHT, CYCLE_PARAMETER, CYCLE_META, CYCLE_REPORT)


@dataclass
class CycleOutcome:
    cycle_type: str
    trade_count: int
    status: str
    adjustments_made: int = 0
    cycle_id: Optional[int] = None
    error: Optional[str] = None
    detail: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_type": self.cycle_type,
            "trade_count": self.trade_count,
            "status": self.status,
            "adjustments_made": self.adjustments_made,
            "cycle_id": self.cycle_id,
            "error": self.error,
        }


class LearningScheduler:
    """Serializes every learning cycle behind one lock and tracks milestones."""

    def __init__(
        self,
        db: Optional[LearningDB] = None,
        on_event: Optional[Callable[[LearningEvent], None]] = None,
        pattern_matcher: Optional[PatternMatcher] = None,
        weight_optimizer: Optional[WeightOptimizer] = None,
        parameter_tuner: Optional[ParameterTuner] = None,
        meta_learner: Optional[MetaLearner] = None,
    ):
        self.db = db or LearningDB()
        self.on_event = on_event
        self.log = get_logger("learning_scheduler")

        self.pattern_matcher = pattern_matcher or PatternMatcher(self.db)
        self.weight_optimizer = weight_optimizer or WeightOptimizer(self.db, on_event=on_event)
        self.parameter_tuner = parameter_tuner or ParameterTuner(self.db, on_event=on_event)
        self.meta_learner = meta_learner or MetaLearner(self.db, on_event=on_event)

        self.min_trades = int(get_param("scheduler", "min_trades"))
        self.optimization_every = int(get_param("scheduler", "optimization_every"))
        self.meta_review_every = int(get_param("scheduler", "meta_review_every"))
        self.report_every = int(get_param("scheduler", "report_every"))

        self._lock = threading.RLock()
        self.active = False
        self.last_checked_trade_count = 0
        self.last_outcome: Optional[CycleOutcome] = None
        self.last_run_at: Dict[str, float] = {}
        self.db.ensure_baseline_snapshot()
        self.cycles_run: Set[str] = self.db.get_milestone_keys(MILESTONE_CYCLES)

    def _emit(self, kind: str, payload: Dict[str, Any]) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(LearningEvent(kind=kind, payload=payload))
        except Exception as e:
            self.log.warning(f"on_event callback failed for {kind}: {e}")

    @staticmethod
    def learning_enabled() -> bool:
        return bool(cfg_get(("config", "learning", "enabled"), True))

    # ------------------------------------------------------------------
    # Cycle runner
    # ------------------------------------------------------------------

    def _run_cycle(
        self,
        cycle_type: str,
        trade_count: int,
        fn: Callable[[], Any],
        trigger: str = TRIGGER_MILESTONE,
    ) -> CycleOutcome:
        """Run fn inside a cycle row. Exceptions close the row as failed and never escape."""
        with self._lock:
            start = time.time()
            try:
                cycle = self.db.start_cycle(cycle_type, trade_count, trigger=trigger)
            except Exception as e:
                self.log.error(f"Could not record start of {cycle_type} cycle: {e}")
                outcome = CycleOutcome(cycle_type, trade_count, CYCLE_FAILED, error=str(e))
                self._emit("cycle_failed", outcome.to_dict())
                self.last_outcome = outcome
                return outcome

            try:
                detail = fn()
            except Exception as e:
                duration_ms = int((time.time() - start) * 1000)
                message = f"{type(e).__name__}: {e}"
                self.log.error(f"{cycle_type} cycle #{cycle.cycle_number} failed: {message}")
                try:
                    self.db.finish_cycle(
                        cycle.id, status=CYCLE_FAILED, duration_ms=duration_ms, error_message=message
                    )
                except Exception as close_err:
                    self.log.error(f"Could not close failed {cycle_type} cycle #{cycle.cycle_number}: {close_err}")
                outcome = CycleOutcome(cycle_type, trade_count, CYCLE_FAILED, cycle_id=cycle.id, error=message)
                self._emit("cycle_failed", outcome.to_dict())
                self.last_outcome = outcome
                return outcome

            if isinstance(detail, dict):
                adjustments = int(detail.get("adjustments_made", 0) or 0)
            else:
                adjustments = int(getattr(detail, "adjustments_made", 0) or 0)
            note = getattr(detail, "reason", None) if getattr(detail, "status", None) == "skipped" else None
            duration_ms = int((time.time() - start) * 1000)
            try:
                self.db.finish_cycle(
                    cycle.id,
                    status=CYCLE_COMPLETED,
                    adjustments_made=adjustments,
                    duration_ms=duration_ms,
                    error_message=note,
                )
            except Exception as e:
                self.log.error(f"Could not close {cycle_type} cycle #{cycle.cycle_number}: {e}")
            self.last_run_at[cycle_type] = time.time()
            outcome = CycleOutcome(
                cycle_type, trade_count, CYCLE_COMPLETED, adjustments, cycle_id=cycle.id, detail=detail
            )
            self.last_outcome = outcome
            self.log.info(
                f"{cycle_type} cycle #{cycle.cycle_number} completed at {trade_count} trades "
                f"(adjustments={adjustments}, {duration_ms}ms)"
            )
            return outcome

    # ------------------------------------------------------------------
    # Cycle bodies
    # ------------------------------------------------------------------

    def _report_cycle(self) -> Dict[str, Any]:
        report = self.meta_learner.generate_learning_report()
        weights = self.weight_optimizer.get_current_weights()
        drift = self.weight_optimizer.calculate_weight_drift(weights)
        patterns = self.pattern_matcher.get_pattern_stats()
        report["pattern_stats"] = patterns
        report["total_drift"] = round(drift, 4)
        report["snapshot_count"] = self.db.count_snapshots()
        report["trade_count"] = self.db.count_completed_trades()
        self.db.insert_meta_record("report", report, notes="Comprehensive learning report generated")

        self.log.info(
            f"Learning report: trades={report['trade_count']} win_patterns={patterns['win_patterns']} "
            f"danger_patterns={patterns['danger_patterns']} snapshots={report['snapshot_count']}"
        )
        self.log.info("Current weights: " + ", ".join(f"{c}={w:.2f}%" for c, w in weights.to_dict().items()))
        self.log.info(f"Weight drift from baseline: {drift:.1f}")
        if drift > 50:
            self.log.warning("Significant drift detected; manual review recommended")
        return report

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on_trade_completed(self, trade: Trade, context: Optional[Dict[str, Any]] = None) -> List[CycleOutcome]:
        """Store the trade, run pattern matching for it, then re-check milestones."""
        if not trade.is_completed:
            self.log.debug(f"Ignoring trade {trade.id} without outcome")
            return []
        outcomes: List[CycleOutcome] = []
        with self._lock:
            try:
                self.db.upsert_trade(trade)
            except Exception as e:
                self.log.error(f"Could not store completed trade {trade.id}: {e}")
                return outcomes
            if not self.learning_enabled():
                self.log.debug("Learning disabled; trade stored only")
                return outcomes

            def _pattern() -> Dict[str, Any]:
                fingerprint = self.pattern_matcher.create_fingerprint(trade, context)
                updated = self.pattern_matcher.store_trade_pattern(trade, fingerprint)
                updated["adjustments_made"] = sum(1 for v in updated.values() if v is not None)
                return updated

            count = self.db.count_completed_trades()
            outcomes.append(self._run_cycle(CYCLE_PATTERN, count, _pattern, trigger=TRIGGER_TRADE))
            outcomes.extend(self.check_and_run_cycles())
        return outcomes

    def _due_cycles(self, count: int) -> List[tuple]:
        due = []
        schedule = (
            (self.optimization_every, (CYCLE_WEIGHT, CYCLE_PARAMETER)),
            (self.meta_review_every, (CYCLE_META,)),
            (self.report_every, (CYCLE_REPORT,)),
        )
        for every, cycle_types in schedule:
            if every <= 0:
                continue
            milestone = (count // every) * every
            if milestone < every or milestone < self.min_trades:
                continue
            for cycle_type in cycle_types:
                if f"{cycle_type}:{milestone}" not in self.cycles_run:
                    due.append((cycle_type, milestone))
        return due

    def check_and_run_cycles(self) -> List[CycleOutcome]:
        """Run every milestone cycle that is due and not yet run. Never raises."""
        with self._lock:
            try:
                count = self.db.count_completed_trades()
            except Exception as e:
                self.log.error(f"Could not count completed trades: {e}")
                return []
            self.last_checked_trade_count = count

            if not self.learning_enabled():
                self.log.debug("Learning disabled; skipping milestone check")
                return []
            if count < self.min_trades:
                self.log.debug(f"Skipping learning cycles: insufficient data ({count} < {self.min_trades})")
                return []

            bodies = {
                CYCLE_WEIGHT: self.weight_optimizer.execute_optimization_cycle,
                CYCLE_PARAMETER: self.parameter_tuner.execute_tuning_cycle,
                CYCLE_META: self.meta_learner.execute_meta_review_cycle,
                CYCLE_REPORT: self._report_cycle,
            }
            outcomes: List[CycleOutcome] = []
            for cycle_type, milestone in self._due_cycles(count):
                # marked before running: a failed milestone is not retried automatically
                self.cycles_run.add(f"{cycle_type}:{milestone}")
                outcomes.append(self._run_cycle(cycle_type, milestone, bodies[cycle_type]))
            return outcomes

    # ------------------------------------------------------------------
    # Manual controls
    # ------------------------------------------------------------------

    def _run_manual(self, cycle_type: str, fn: Callable[[], Any]) -> CycleOutcome:
        """Operator run at the live trade count; never marks a milestone as done."""
        return self._run_cycle(cycle_type, self.db.count_completed_trades(), fn, trigger=TRIGGER_MANUAL)

    def trigger_weight_optimization(self) -> CycleOutcome:
        return self._run_manual(CYCLE_WEIGHT, self.weight_optimizer.execute_optimization_cycle)

    def trigger_parameter_tuning(self) -> CycleOutcome:
        return self._run_manual(CYCLE_PARAMETER, self.parameter_tuner.execute_tuning_cycle)

    def trigger_meta_review(self) -> CycleOutcome:
        return self._run_manual(CYCLE_META, self.meta_learner.execute_meta_review_cycle)

    def trigger_full_report(self) -> CycleOutcome:
        return self._run_manual(CYCLE_REPORT, self._report_cycle)

    def revert_to_snapshot(self, version: int) -> LearningSnapshot:
        with self._lock:
            return self.meta_learner.revert_to_snapshot(version, reason="manual_revert")

    def get_status(self) -> Dict[str, Any]:
        latest = self.db.get_latest_snapshot()
        recent = self.db.list_cycles(1)
        return {
            "active": self.active,
            "enabled": self.learning_enabled(),
            "total_trades": self.db.count_completed_trades(),
            "last_checked_trade_count": self.last_checked_trade_count,
            "cycles_run": sorted(self.cycles_run),
            "last_cycle": recent[0].to_dict() if recent else None,
            "last_run_at": dict(self.last_run_at),
            "snapshot_version": latest.version if latest else None,
            "learning_rate": self.meta_learner.get_learning_rate(),
        }

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def stop(self) -> None:
        self.active = False

    async def run_loop(self, interval: Optional[float] = None, once: bool = False) -> int:
        sleep_s = float(interval if interval is not None else get_param("scheduler", "interval_seconds"))
        stale = self.db.fail_stale_running_cycles("interrupted: worker restarted")
        if stale:
            self.log.warning(f"Marked {stale} stale running cycle(s) as failed")
        self.active = True
        self.log.info(f"Learning scheduler started (checking every {sleep_s:.0f}s)")
        try:
            while self.active:
                try:
                    outcomes = self.check_and_run_cycles()
                    if outcomes:
                        self.log.info(
                            "Ran cycles: " + ", ".join(f"{o.cycle_type}@{o.trade_count}={o.status}" for o in outcomes)
                        )
                except Exception as e:
                    self.log.error(f"Learning check failed: {e}")
                if once:
                    break
                await asyncio.sleep(max(0.1, sleep_s))
        finally:
            self.active = False
            self.log.info("Learning scheduler stopped")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Learning scheduler (milestone learning cycles)")
    parser.add_argument("--db-path", default=None, help="Override DB path")
    parser.add_argument("--interval", type=float, default=None, help="Loop sleep seconds (default from learning.yaml)")
    parser.add_argument("--once", action="store_true", help="Run a single milestone check")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--log-file", default=None, help="Also log to this file")
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    log = setup_logging("learning_scheduler", log_file=args.log_file, verbose=args.verbose)
    scheduler = LearningScheduler(LearningDB(args.db_path), on_event=event_logger(log))
    try:
        return asyncio.run(scheduler.run_loop(interval=args.interval, once=args.once))
    except KeyboardInterrupt:
        return 0
    finally:
        scheduler.db.close()


if __name__ == "__main__":
    raise SystemExit(main())
