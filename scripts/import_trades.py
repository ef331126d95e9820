#!/usr/bin/env python3
"""Import completed trades from a JSONL file into the learning store.

Each line is one trade object (snake_case or camelCase keys, epoch-second
timestamps, optional `fingerprint`). Dry-run is the default; pass --apply
to write. With --process every completed trade is also fed through the
scheduler (pattern matching + milestone cycles) in file order.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Dict, Optional


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from jsonl_io import append_jsonl, iter_jsonl
from learning_db import LearningDB
from learning_errors import ComputationError
from learning_models import Trade
from learning_scheduler import LearningScheduler
from logging_utils import get_logger, setup_logging

LOG = get_logger("import_trades")


def import_trades(
    input_path: str,
    db: Optional[LearningDB],
    *,
    apply_changes: bool,
    process: bool = False,
    rejects_path: Optional[str] = None,
) -> Dict[str, int]:
    counts = {"read": 0, "imported": 0, "processed": 0, "rejected": 0, "open": 0}
    scheduler = LearningScheduler(db) if (apply_changes and process and db is not None) else None

    for lineno, record in iter_jsonl(input_path):
        counts["read"] += 1
        try:
            trade = Trade.from_dict(record)
        except ComputationError as e:
            counts["rejected"] += 1
            LOG.warning(f"{input_path}:{lineno}: rejected ({e})")
            if rejects_path:
                append_jsonl(rejects_path, {"line": lineno, "error": str(e), "record": record})
            continue
        if not trade.is_completed:
            counts["open"] += 1
        if not apply_changes or db is None:
            continue
        if scheduler is not None and trade.is_completed:
            scheduler.on_trade_completed(trade, context=record.get("context"))
            counts["processed"] += 1
        else:
            db.upsert_trade(trade)
        counts["imported"] += 1
    return counts


def main() -> int:
    parser = argparse.ArgumentParser(description="Import completed trades (JSONL) into the learning store.")
    parser.add_argument("--input", required=True, help="Path to trades JSONL")
    parser.add_argument("--db-path", default=None, help="Override DB path")
    parser.add_argument("--apply", action="store_true", help="Write to the store (default: dry run)")
    parser.add_argument(
        "--process",
        action="store_true",
        help="Feed completed trades through the scheduler (pattern matching + milestone cycles)",
    )
    parser.add_argument("--rejects", default=None, help="Append rejected records to this JSONL file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args()
    setup_logging("import_trades", verbose=args.verbose)

    if not Path(args.input).exists():
        print(f"input_missing={args.input}")
        return 1

    db = LearningDB(args.db_path) if args.apply else None
    try:
        counts = import_trades(
            args.input,
            db,
            apply_changes=args.apply,
            process=args.process,
            rejects_path=args.rejects,
        )
    finally:
        if db is not None:
            db.close()

    print(f"mode={'apply' if args.apply else 'dry_run'}")
    print(f"input={args.input}")
    print("counts=" + json.dumps(counts, sort_keys=True))
    if not args.apply:
        print("note=rerun with --apply to execute the import")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
