#!/usr/bin/env python3
"""
Operator CLI for the learning core.

Commands:
- status: Scheduler/learning status
- weights: Current category weights and drift
- patterns: Win/danger pattern library stats
- snapshots: Snapshot history
- health: Learning health status
- report: Full learning report
- revert: Revert to a snapshot version (creates a new version)
- trigger: Run a learning cycle now (weights, parameters, meta, report)
- freeze / unfreeze / frozen: Lock parameters or weight categories
- cycles: Recent learning cycles
- reset-patterns: Clear win/danger pattern libraries
"""

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# Add project path
sys.path.insert(0, str(Path(__file__).parent))

from learning_db import LearningDB
from learning_errors import LearningError, SnapshotNotFoundError
from learning_models import CATEGORIES, frozen_weight_name
from learning_scheduler import LearningScheduler
from learning_utils import safe_parse_json


TRIGGERS = {
    'weights': 'trigger_weight_optimization',
    'parameters': 'trigger_parameter_tuning',
    'meta': 'trigger_meta_review',
    'report': 'trigger_full_report',
}


def _fmt_ts(ts: Optional[float]) -> str:
    if not ts:
        return '-'
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).strftime('%Y-%m-%d %H:%M:%S')


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def get_db(args) -> LearningDB:
    return LearningDB(args.db_path)


def get_scheduler(args) -> LearningScheduler:
    return LearningScheduler(get_db(args))


def cmd_status(args) -> int:
    status = get_scheduler(args).get_status()
    if args.json:
        _print_json(status)
        return 0
    print(f"Learning enabled:   {status['enabled']}")
    print(f"Completed trades:   {status['total_trades']}")
    print(f"Snapshot version:   v{status['snapshot_version']}")
    print(f"Learning rate:      {status['learning_rate']:.3f}")
    print(f"Milestones run:     {len(status['cycles_run'])}")
    last = status['last_cycle']
    if last:
        print(
            f"Last cycle:         {last['cycle_type']} @ {last['trade_count_at_cycle']} trades "
            f"({last['status']}, {_fmt_ts(last['created_at'])})"
        )
    return 0


def cmd_weights(args) -> int:
    scheduler = get_scheduler(args)
    weights = scheduler.weight_optimizer.get_current_weights()
    drift = scheduler.weight_optimizer.calculate_weight_drift(weights)
    frozen = scheduler.db.get_frozen_names()
    if args.json:
        _print_json({'weights': weights.to_dict(), 'drift': drift, 'fractions': weights.as_fractions()})
        return 0
    print(f"{'Category':<20} {'Weight':>8}")
    for category in CATEGORIES:
        lock = ' (frozen)' if frozen_weight_name(category) in frozen else ''
        print(f"{category:<20} {weights.get(category):>7.2f}%{lock}")
    print(f"\nDrift from baseline: {drift:.2f}")
    return 0


def cmd_patterns(args) -> int:
    stats = get_scheduler(args).pattern_matcher.get_pattern_stats()
    if args.json:
        _print_json(stats)
        return 0
    print(f"Win patterns:     {stats['win_patterns']} ({stats['win_occurrences']} occurrences, "
          f"avg return {stats['avg_win_return']:.2f}%)")
    print(f"Danger patterns:  {stats['danger_patterns']} ({stats['danger_occurrences']} occurrences, "
          f"{stats['high_confidence_danger_patterns']} high confidence)")
    print(f"Fingerprinted trades: {stats['fingerprinted_trades']}")
    return 0


def cmd_snapshots(args) -> int:
    db = get_db(args)
    db.ensure_baseline_snapshot()
    snapshots = db.list_snapshots(args.limit)
    if args.json:
        _print_json([s.to_dict() for s in snapshots])
        return 0
    print(f"{'Version':>7}  {'Created':<19}  {'Trades':>6}  {'WinRate':>7}  {'PF':>5}  Note")
    for snap in snapshots:
        print(
            f"{snap.version:>7}  {_fmt_ts(snap.created_at):<19}  {snap.trade_count:>6}  "
            f"{snap.win_rate * 100:>6.1f}%  {snap.profit_factor:>5.2f}  {snap.note}"
        )
    return 0


def cmd_health(args) -> int:
    health = get_scheduler(args).meta_learner.get_learning_health_status()
    if args.json:
        _print_json(health.to_dict())
        return 0
    print(f"Health:             {health.overall_health.upper()}")
    print(f"Improvement rate:   {health.recent_improvement_rate * 100:.1f}%")
    print(f"Consecutive fails:  {health.consecutive_failures}")
    print(f"Learning rate:      {health.learning_rate_multiplier:.3f}")
    print(f"Weight drift:       {health.total_drift:.2f}")
    print(f"Recommendation:     {health.recommendation}")
    return 0


def cmd_report(args) -> int:
    report = get_scheduler(args).meta_learner.generate_learning_report()
    if args.json:
        _print_json(report)
        return 0
    state = report['current_state']
    print(f"Snapshot v{state['snapshot_version']} ({state['trade_count']} trades, "
          f"win rate {state['win_rate'] * 100:.1f}%, PF {state['profit_factor']:.2f})")
    print(f"Health: {report['health']['overall_health']}  drift: {report['total_drift']:.2f}  "
          f"learning rate: {report['learning_rate']:.3f}")
    print("\nRecommendations:")
    for line in report['recommendations']:
        print(f"  - {line}")
    return 0


def cmd_revert(args) -> int:
    scheduler = get_scheduler(args)
    try:
        snap = scheduler.revert_to_snapshot(args.version)
    except SnapshotNotFoundError as e:
        print(f"Error: {e}")
        return 1
    print(f"Reverted to v{args.version}; current snapshot is now v{snap.version}")
    return 0


def cmd_trigger(args) -> int:
    scheduler = get_scheduler(args)
    outcome = getattr(scheduler, TRIGGERS[args.cycle])()
    if args.json:
        _print_json(outcome.to_dict())
    else:
        line = f"{outcome.cycle_type}: {outcome.status} (adjustments={outcome.adjustments_made})"
        if outcome.error:
            line += f" error={outcome.error}"
        print(line)
    return 0 if outcome.status == 'completed' else 1


def cmd_freeze(args) -> int:
    db = get_db(args)
    value = safe_parse_json(args.value, args.value) if args.value is not None else None
    db.freeze_parameter(args.name, value, reason=args.reason or '', frozen_by='cli')
    print(f"Frozen {args.name}")
    return 0


def cmd_unfreeze(args) -> int:
    db = get_db(args)
    if not db.unfreeze_parameter(args.name):
        print(f"{args.name} was not frozen")
        return 1
    print(f"Unfrozen {args.name}")
    return 0


def cmd_frozen(args) -> int:
    frozen = get_db(args).list_frozen_parameters()
    if args.json:
        _print_json([f.to_dict() for f in frozen])
        return 0
    if not frozen:
        print("No frozen parameters")
        return 0
    for item in frozen:
        print(f"{item.parameter_name:<32} value={item.frozen_value!r} by={item.frozen_by} "
              f"at={_fmt_ts(item.frozen_at)} {item.reason}")
    return 0


def cmd_cycles(args) -> int:
    cycles = get_db(args).list_cycles(args.limit, cycle_type=args.type)
    if args.json:
        _print_json([c.to_dict() for c in cycles])
        return 0
    for c in cycles:
        err = f" error={c.error_message}" if c.error_message else ''
        print(f"#{c.cycle_number:<5} {c.cycle_type:<20} @{c.trade_count_at_cycle:<6} {c.status:<10} "
              f"adj={c.adjustments_made} {_fmt_ts(c.created_at)}{err}")
    return 0


def cmd_reset_patterns(args) -> int:
    if not args.yes:
        print("Refusing to reset pattern libraries without --yes")
        return 1
    deleted = get_scheduler(args).pattern_matcher.reset_pattern_libraries()
    print(f"Deleted {deleted['win_patterns']} win and {deleted['danger_patterns']} danger patterns")
    return 0


COMMANDS: Dict[str, Any] = {
    'status': cmd_status,
    'weights': cmd_weights,
    'patterns': cmd_patterns,
    'snapshots': cmd_snapshots,
    'health': cmd_health,
    'report': cmd_report,
    'revert': cmd_revert,
    'trigger': cmd_trigger,
    'freeze': cmd_freeze,
    'unfreeze': cmd_unfreeze,
    'frozen': cmd_frozen,
    'cycles': cmd_cycles,
    'reset-patterns': cmd_reset_patterns,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Learning core operator CLI',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--db-path', default=None, help='Override DB path')
    parser.add_argument('--json', action='store_true', help='JSON output where supported')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    subparsers.add_parser('status', help='Scheduler and learning status')
    subparsers.add_parser('weights', help='Current category weights')
    subparsers.add_parser('patterns', help='Pattern library stats')

    snap_parser = subparsers.add_parser('snapshots', help='Snapshot history')
    snap_parser.add_argument('--limit', type=int, default=10, help='Number of snapshots (default: 10)')

    subparsers.add_parser('health', help='Learning health status')
    subparsers.add_parser('report', help='Full learning report')

    revert_parser = subparsers.add_parser('revert', help='Revert to a snapshot version')
    revert_parser.add_argument('version', type=int, help='Snapshot version to copy forward')

    trigger_parser = subparsers.add_parser('trigger', help='Run a learning cycle now')
    trigger_parser.add_argument('cycle', choices=sorted(TRIGGERS), help='Cycle to run')

    freeze_parser = subparsers.add_parser('freeze', help='Freeze a parameter (weight_<category> for weights)')
    freeze_parser.add_argument('name', help='Parameter name')
    freeze_parser.add_argument('value', nargs='?', default=None, help='Value to record (JSON or text)')
    freeze_parser.add_argument('--reason', default=None, help='Why it is frozen')

    unfreeze_parser = subparsers.add_parser('unfreeze', help='Unfreeze a parameter')
    unfreeze_parser.add_argument('name', help='Parameter name')

    subparsers.add_parser('frozen', help='List frozen parameters')

    cycles_parser = subparsers.add_parser('cycles', help='Recent learning cycles')
    cycles_parser.add_argument('--limit', type=int, default=20, help='Number of cycles (default: 20)')
    cycles_parser.add_argument('--type', default=None, help='Filter by cycle type')

    reset_parser = subparsers.add_parser('reset-patterns', help='Clear win/danger pattern libraries')
    reset_parser.add_argument('--yes', action='store_true', help='Confirm the reset')
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return handler(args)
    except LearningError as e:
        print(f"Error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
