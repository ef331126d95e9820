#!/usr/bin/env python3
"""
Learning store.

SQLite database with WAL mode so the scheduler worker, the operator CLI and
trade ingestion can share one file:
- trades (completed-trade feed, fingerprint write-once)
- learning_snapshots (append-only versioned weights + parameters)
- learning_weights / learning_parameters (adjustment audit log)
- learning_meta (evaluations, reversions, reports)
- learning_cycles (scheduler history)
- win_patterns / danger_patterns (pattern libraries)
- frozen_parameters (operator locks)
- learning_state_kv (small persisted state, e.g. learning-rate multiplier)

Version allocation and the rows that reference a version are written in a
single BEGIN IMMEDIATE transaction.
"""

from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from learning_errors import PersistenceError, SnapshotNotFoundError
from learning_models import (
    CYCLE_COMPLETED,
    CYCLE_FAILED,
    CYCLE_RUNNING,
    DEFAULT_PARAMETERS,
    TRIGGER_MILESTONE,
    CategoryWeights,
    DangerPattern,
    FrozenParameter,
    LearningCycle,
    LearningSnapshot,
    Trade,
    TradeFingerprint,
    WinPattern,
)
from learning_params import get_db_path
from learning_utils import json_contains, profit_factor, safe_parse_json
from logging_utils import get_logger


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


class LearningDB:
    """SQLite-backed store for the learning core."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path or get_db_path())
        self._local = threading.local()
        self._conn_lock = threading.Lock()
        self._conn_by_tid: Dict[int, sqlite3.Connection] = {}
        self._conn_pid = os.getpid()
        self.log = get_logger("learning_db")
        self._init_db()

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _open_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        """Get a per-thread database connection."""
        tid = int(threading.get_ident())
        current_pid = int(os.getpid())
        with self._conn_lock:
            # After fork, inherited sqlite handles are unsafe in the child.
            if current_pid != int(self._conn_pid):
                self._conn_by_tid.clear()
                self._local.conn = None
                self._conn_pid = current_pid
            self._cleanup_stale_connections_locked()
            conn = self._conn_by_tid.get(tid)
            if conn is None:
                conn = self._open_connection()
                self._conn_by_tid[tid] = conn
                self._local.conn = conn
            return conn

    def _cleanup_stale_connections_locked(self) -> None:
        alive = {int(t.ident) for t in threading.enumerate() if t.ident is not None}
        stale_tids = [tid for tid in self._conn_by_tid.keys() if tid not in alive]
        for tid in stale_tids:
            conn = self._conn_by_tid.pop(tid, None)
            if conn is not None:
                conn.close()

    def close(self) -> None:
        with self._conn_lock:
            for conn in self._conn_by_tid.values():
                conn.close()
            self._conn_by_tid.clear()
            self._local.conn = None

    @contextmanager
    def _write_tx(self) -> Iterator[sqlite3.Connection]:
        """Exclusive write transaction; sqlite errors surface as PersistenceError."""
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise PersistenceError(f"could not begin transaction: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceError(str(exc)) from exc
        except BaseException:
            conn.rollback()
            raise

    def _init_db(self) -> None:
        """Initialize database with WAL mode and all tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS trades (
                    id TEXT PRIMARY KEY,
                    token_address TEXT NOT NULL DEFAULT '',
                    entry_price REAL NOT NULL DEFAULT 0,
                    entry_amount REAL NOT NULL DEFAULT 0,
                    entry_time REAL NOT NULL,
                    exit_price REAL,
                    exit_amount REAL,
                    exit_time REAL,
                    exit_reason TEXT,
                    pnl REAL,
                    pnl_percent REAL,
                    conviction_score REAL NOT NULL DEFAULT 0,
                    fingerprint_json TEXT,
                    outcome TEXT,
                    created_at REAL NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_exit_time ON trades(exit_time)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_entry_time ON trades(entry_time)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_outcome ON trades(outcome)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS learning_snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    version INTEGER NOT NULL UNIQUE,
                    weights_json TEXT NOT NULL,
                    parameters_json TEXT NOT NULL,
                    trade_count INTEGER NOT NULL DEFAULT 0,
                    win_rate REAL NOT NULL DEFAULT 0,
                    profit_factor REAL NOT NULL DEFAULT 0,
                    note TEXT NOT NULL DEFAULT '',
                    created_at REAL NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS learning_weights (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    snapshot_version INTEGER NOT NULL,
                    old_weights_json TEXT NOT NULL,
                    new_weights_json TEXT NOT NULL,
                    reasons_json TEXT NOT NULL DEFAULT '{}',
                    trade_count INTEGER NOT NULL DEFAULT 0,
                    evaluated INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_learning_weights_eval ON learning_weights(evaluated, created_at)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS learning_parameters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    snapshot_version INTEGER NOT NULL,
                    parameter_name TEXT NOT NULL,
                    old_value_json TEXT NOT NULL,
                    new_value_json TEXT NOT NULL,
                    recommendation TEXT NOT NULL DEFAULT '',
                    reason TEXT NOT NULL DEFAULT '',
                    confidence REAL NOT NULL DEFAULT 0,
                    trade_count INTEGER NOT NULL DEFAULT 0,
                    evaluated INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_learning_parameters_eval ON learning_parameters(evaluated, created_at)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS learning_meta (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    record_type TEXT NOT NULL,
                    adjustment_type TEXT,
                    adjustment_id INTEGER,
                    impact_score REAL,
                    classification TEXT,
                    improved INTEGER,
                    data_json TEXT NOT NULL DEFAULT '{}',
                    notes TEXT NOT NULL DEFAULT '',
                    created_at REAL NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_learning_meta_type ON learning_meta(record_type, created_at)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS learning_cycles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    cycle_number INTEGER NOT NULL,
                    cycle_type TEXT NOT NULL,
                    trade_count_at_cycle INTEGER NOT NULL,
                    adjustments_made INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    error_message TEXT,
                    duration_ms INTEGER,
                    created_at REAL NOT NULL,
                    completed_at REAL,
                    trigger_source TEXT NOT NULL DEFAULT 'milestone'
                )
            """)
            cycle_columns = {row[1] for row in conn.execute("PRAGMA table_info(learning_cycles)").fetchall()}
            if "trigger_source" not in cycle_columns:
                conn.execute(
                    "ALTER TABLE learning_cycles ADD COLUMN trigger_source TEXT NOT NULL DEFAULT 'milestone'"
                )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_learning_cycles_key ON learning_cycles(cycle_type, trade_count_at_cycle)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS win_patterns (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    pattern_json TEXT NOT NULL,
                    occurrences INTEGER NOT NULL DEFAULT 1,
                    avg_return REAL NOT NULL DEFAULT 0,
                    last_seen REAL NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS danger_patterns (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    pattern_json TEXT NOT NULL,
                    occurrences INTEGER NOT NULL DEFAULT 1,
                    confidence REAL NOT NULL DEFAULT 0,
                    reason TEXT NOT NULL DEFAULT '',
                    last_seen REAL NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS frozen_parameters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    parameter_name TEXT NOT NULL UNIQUE,
                    frozen_value_json TEXT,
                    reason TEXT NOT NULL DEFAULT '',
                    frozen_by TEXT NOT NULL DEFAULT 'operator',
                    frozen_at REAL NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS learning_state_kv (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_trade(row: sqlite3.Row) -> Trade:
        fp_raw = safe_parse_json(row["fingerprint_json"], None)
        return Trade(
            id=str(row["id"]),
            token_address=str(row["token_address"] or ""),
            entry_price=float(row["entry_price"] or 0.0),
            entry_amount=float(row["entry_amount"] or 0.0),
            entry_time=float(row["entry_time"]),
            exit_price=row["exit_price"],
            exit_amount=row["exit_amount"],
            exit_time=row["exit_time"],
            exit_reason=row["exit_reason"],
            pnl=row["pnl"],
            pnl_percent=row["pnl_percent"],
            conviction_score=float(row["conviction_score"] or 0.0),
            fingerprint=TradeFingerprint.from_dict(fp_raw) if fp_raw else None,
            outcome=row["outcome"],
        )

    @staticmethod
    def _row_to_snapshot(row: sqlite3.Row) -> LearningSnapshot:
        params = safe_parse_json(row["parameters_json"], {})
        return LearningSnapshot(
            id=int(row["id"]),
            version=int(row["version"]),
            weights=CategoryWeights.from_stored(safe_parse_json(row["weights_json"], {})),
            parameters=params if isinstance(params, dict) else {},
            trade_count=int(row["trade_count"] or 0),
            win_rate=float(row["win_rate"] or 0.0),
            profit_factor=float(row["profit_factor"] or 0.0),
            created_at=float(row["created_at"]),
            note=str(row["note"] or ""),
        )

    @staticmethod
    def _row_to_cycle(row: sqlite3.Row) -> LearningCycle:
        return LearningCycle(
            id=int(row["id"]),
            cycle_number=int(row["cycle_number"]),
            cycle_type=str(row["cycle_type"]),
            trade_count_at_cycle=int(row["trade_count_at_cycle"]),
            status=str(row["status"]),
            adjustments_made=int(row["adjustments_made"] or 0),
            error_message=row["error_message"],
            duration_ms=row["duration_ms"],
            created_at=float(row["created_at"]),
            completed_at=row["completed_at"],
            trigger=str(row["trigger_source"] or TRIGGER_MILESTONE),
        )

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    def upsert_trade(self, trade: Trade) -> None:
        """Insert or update a trade. An already stored fingerprint is never replaced."""
        fp_json = _dumps(trade.fingerprint.to_dict()) if trade.fingerprint else None
        with self._write_tx() as conn:
            conn.execute(
                """
                INSERT INTO trades (
                    id, token_address, entry_price, entry_amount, entry_time,
                    exit_price, exit_amount, exit_time, exit_reason, pnl, pnl_percent,
                    conviction_score, fingerprint_json, outcome, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    exit_price = excluded.exit_price,
                    exit_amount = excluded.exit_amount,
                    exit_time = excluded.exit_time,
                    exit_reason = excluded.exit_reason,
                    pnl = excluded.pnl,
                    pnl_percent = excluded.pnl_percent,
                    outcome = excluded.outcome,
                    fingerprint_json = COALESCE(trades.fingerprint_json, excluded.fingerprint_json)
                """,
                (
                    trade.id,
                    trade.token_address,
                    trade.entry_price,
                    trade.entry_amount,
                    trade.entry_time,
                    trade.exit_price,
                    trade.exit_amount,
                    trade.exit_time,
                    trade.exit_reason,
                    trade.pnl,
                    trade.pnl_percent,
                    trade.conviction_score,
                    fp_json,
                    trade.outcome,
                    time.time(),
                ),
            )

    def set_trade_fingerprint(self, trade_id: str, fingerprint: TradeFingerprint) -> bool:
        """Attach a fingerprint if the trade has none. Returns True when written."""
        with self._write_tx() as conn:
            cur = conn.execute(
                "UPDATE trades SET fingerprint_json = ? WHERE id = ? AND fingerprint_json IS NULL",
                (_dumps(fingerprint.to_dict()), str(trade_id)),
            )
            return cur.rowcount > 0

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM trades WHERE id = ?", (str(trade_id),)).fetchone()
        return self._row_to_trade(row) if row else None

    def count_completed_trades(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT COUNT(*) AS n FROM trades WHERE outcome IS NOT NULL").fetchone()
        return int(row["n"] or 0)

    def _load_trades(self, sql: str, params: Tuple[Any, ...]) -> List[Trade]:
        conn = self._get_connection()
        out: List[Trade] = []
        for row in conn.execute(sql, params).fetchall():
            try:
                out.append(self._row_to_trade(row))
            except Exception as e:
                self.log.warning(f"Skipping malformed trade {row['id']}: {e}")
        return out

    def get_recent_completed_trades(
        self,
        limit: int = 100,
        *,
        order_by: str = "exit_time",
        require_fingerprint: bool = False,
    ) -> List[Trade]:
        """Most recent completed trades, newest first."""
        if order_by not in {"exit_time", "entry_time"}:
            raise ValueError(f"unsupported order_by {order_by!r}")
        where = "outcome IS NOT NULL"
        if require_fingerprint:
            where += " AND fingerprint_json IS NOT NULL"
        return self._load_trades(
            f"SELECT * FROM trades WHERE {where} ORDER BY {order_by} DESC LIMIT ?",
            (int(limit),),
        )

    def get_completed_trades_before(self, ts: float, limit: int) -> List[Trade]:
        return self._load_trades(
            """
            SELECT * FROM trades
            WHERE outcome IS NOT NULL AND exit_time IS NOT NULL AND exit_time < ?
            ORDER BY exit_time DESC LIMIT ?
            """,
            (float(ts), int(limit)),
        )

    def get_completed_trades_after(self, ts: float, limit: int) -> List[Trade]:
        return self._load_trades(
            """
            SELECT * FROM trades
            WHERE outcome IS NOT NULL AND exit_time IS NOT NULL AND exit_time > ?
            ORDER BY exit_time ASC LIMIT ?
            """,
            (float(ts), int(limit)),
        )

    def get_performance_summary(self, limit: int = 100) -> Dict[str, Any]:
        """Win rate / profit factor over the most recent completed trades."""
        trades = self.get_recent_completed_trades(limit)
        returns = [t.return_pct for t in trades]
        wins = sum(1 for t in trades if t.outcome == "WIN")
        return {
            "trade_count": self.count_completed_trades(),
            "win_rate": wins / len(trades) if trades else 0.0,
            "profit_factor": profit_factor(returns),
        }

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    @staticmethod
    def _next_version(conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT COALESCE(MAX(version), 0) + 1 AS v FROM learning_snapshots").fetchone()
        return int(row["v"])

    @staticmethod
    def _insert_snapshot_row(
        conn: sqlite3.Connection,
        version: int,
        weights: Dict[str, float],
        parameters: Dict[str, Any],
        trade_count: int,
        win_rate: float,
        profit_factor_value: float,
        note: str,
        created_at: float,
    ) -> None:
        conn.execute(
            """
            INSERT INTO learning_snapshots (
                version, weights_json, parameters_json, trade_count,
                win_rate, profit_factor, note, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(version),
                _dumps(weights),
                _dumps(parameters),
                int(trade_count),
                float(win_rate),
                float(profit_factor_value),
                str(note or ""),
                float(created_at),
            ),
        )

    def insert_snapshot(
        self,
        weights: CategoryWeights,
        parameters: Dict[str, Any],
        *,
        trade_count: int = 0,
        win_rate: float = 0.0,
        profit_factor: float = 0.0,
        note: str = "",
        created_at: Optional[float] = None,
    ) -> LearningSnapshot:
        """Append a snapshot with the next version number."""
        now = float(created_at if created_at is not None else time.time())
        with self._write_tx() as conn:
            version = self._next_version(conn)
            self._insert_snapshot_row(
                conn, version, weights.to_dict(), parameters,
                trade_count, win_rate, profit_factor, note, now,
            )
        return LearningSnapshot(
            version=version,
            weights=CategoryWeights.from_dict(weights.to_dict()),
            parameters=dict(parameters),
            trade_count=int(trade_count),
            win_rate=float(win_rate),
            profit_factor=float(profit_factor),
            created_at=now,
            note=note,
        )

    def ensure_baseline_snapshot(self) -> LearningSnapshot:
        """Return the current snapshot, creating version 1 from defaults if the store is empty."""
        current = self.get_latest_snapshot()
        if current is not None:
            return current
        now = time.time()
        with self._write_tx() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM learning_snapshots").fetchone()
            if int(row["n"] or 0) == 0:
                self._insert_snapshot_row(
                    conn, 1, CategoryWeights().to_dict(), DEFAULT_PARAMETERS,
                    0, 0.0, 0.0, "baseline", now,
                )
                self.log.info("Created baseline learning snapshot v1")
        latest = self.get_latest_snapshot()
        assert latest is not None
        return latest

    def get_latest_snapshot(self) -> Optional[LearningSnapshot]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM learning_snapshots ORDER BY version DESC LIMIT 1").fetchone()
        return self._row_to_snapshot(row) if row else None

    def get_snapshot(self, version: int) -> Optional[LearningSnapshot]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM learning_snapshots WHERE version = ?", (int(version),)).fetchone()
        return self._row_to_snapshot(row) if row else None

    def list_snapshots(self, limit: int = 10) -> List[LearningSnapshot]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM learning_snapshots ORDER BY version DESC LIMIT ?", (int(limit),)
        ).fetchall()
        return [self._row_to_snapshot(r) for r in rows]

    def count_snapshots(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT COUNT(*) AS n FROM learning_snapshots").fetchone()
        return int(row["n"] or 0)

    def _latest_snapshot_in_tx(self, conn: sqlite3.Connection) -> Tuple[Dict[str, float], Dict[str, Any]]:
        row = conn.execute("SELECT * FROM learning_snapshots ORDER BY version DESC LIMIT 1").fetchone()
        if row is None:
            return CategoryWeights().to_dict(), dict(DEFAULT_PARAMETERS)
        snap = self._row_to_snapshot(row)
        return snap.weights.to_dict(), snap.parameters

    def commit_weight_update(
        self,
        old_weights: CategoryWeights,
        new_weights: CategoryWeights,
        reasons: Dict[str, str],
        *,
        trade_count: int,
        win_rate: float,
        profit_factor: float,
        created_at: Optional[float] = None,
    ) -> int:
        """Write a new snapshot carrying new_weights plus its audit row. Returns the version."""
        now = float(created_at if created_at is not None else time.time())
        with self._write_tx() as conn:
            _, params = self._latest_snapshot_in_tx(conn)
            version = self._next_version(conn)
            self._insert_snapshot_row(
                conn, version, new_weights.to_dict(), params,
                trade_count, win_rate, profit_factor, "weight_optimization", now,
            )
            conn.execute(
                """
                INSERT INTO learning_weights (
                    snapshot_version, old_weights_json, new_weights_json,
                    reasons_json, trade_count, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    version,
                    _dumps(old_weights.to_dict()),
                    _dumps(new_weights.to_dict()),
                    _dumps(reasons),
                    int(trade_count),
                    now,
                ),
            )
        return version

    def commit_parameter_adjustments(
        self,
        adjustments: List[Dict[str, Any]],
        new_parameters: Dict[str, Any],
        *,
        trade_count: int,
        win_rate: float,
        profit_factor: float,
        created_at: Optional[float] = None,
    ) -> int:
        """Write a new snapshot carrying new_parameters plus one row per adjustment."""
        now = float(created_at if created_at is not None else time.time())
        with self._write_tx() as conn:
            weights, _ = self._latest_snapshot_in_tx(conn)
            version = self._next_version(conn)
            self._insert_snapshot_row(
                conn, version, weights, new_parameters,
                trade_count, win_rate, profit_factor, "parameter_tuning", now,
            )
            for adj in adjustments:
                conn.execute(
                    """
                    INSERT INTO learning_parameters (
                        snapshot_version, parameter_name, old_value_json, new_value_json,
                        recommendation, reason, confidence, trade_count, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        version,
                        str(adj["parameter_name"]),
                        _dumps(adj.get("old_value")),
                        _dumps(adj.get("new_value")),
                        str(adj.get("recommendation") or ""),
                        str(adj.get("reason") or ""),
                        float(adj.get("confidence") or 0.0),
                        int(trade_count),
                        now,
                    ),
                )
        return version

    def revert_to_snapshot(self, version: int, *, reason: str = "manual_revert") -> LearningSnapshot:
        """Copy snapshot `version` forward as a new version; record the reversion."""
        now = time.time()
        with self._write_tx() as conn:
            row = conn.execute(
                "SELECT * FROM learning_snapshots WHERE version = ?", (int(version),)
            ).fetchone()
            if row is None:
                raise SnapshotNotFoundError(version)
            source = self._row_to_snapshot(row)
            next_version = self._next_version(conn)
            self._insert_snapshot_row(
                conn,
                next_version,
                source.weights.to_dict(),
                source.parameters,
                source.trade_count,
                source.win_rate,
                source.profit_factor,
                f"revert_to_v{source.version}",
                now,
            )
            conn.execute(
                """
                INSERT INTO learning_meta (record_type, adjustment_type, data_json, notes, created_at)
                VALUES ('reversion', 'snapshot', ?, ?, ?)
                """,
                (
                    _dumps({
                        "from_version": next_version - 1,
                        "target_version": source.version,
                        "new_version": next_version,
                        "reason": reason,
                    }),
                    f"Reverted to snapshot version {source.version}",
                    now,
                ),
            )
        reverted = self.get_snapshot(next_version)
        assert reverted is not None
        return reverted

    # ------------------------------------------------------------------
    # Adjustment log + evaluations
    # ------------------------------------------------------------------

    def get_unevaluated_weight_adjustments(self, older_than: float, limit: int = 5) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM learning_weights
            WHERE evaluated = 0 AND created_at < ?
            ORDER BY created_at ASC LIMIT ?
            """,
            (float(older_than), int(limit)),
        ).fetchall()
        return [
            {
                "id": int(r["id"]),
                "type": "weight",
                "parameter_name": "weights",
                "old_value": safe_parse_json(r["old_weights_json"], {}),
                "new_value": safe_parse_json(r["new_weights_json"], {}),
                "snapshot_version": int(r["snapshot_version"]),
                "created_at": float(r["created_at"]),
            }
            for r in rows
        ]

    def get_unevaluated_parameter_adjustments(self, older_than: float, limit: int = 5) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM learning_parameters
            WHERE evaluated = 0 AND created_at < ?
            ORDER BY created_at ASC LIMIT ?
            """,
            (float(older_than), int(limit)),
        ).fetchall()
        return [
            {
                "id": int(r["id"]),
                "type": "parameter",
                "parameter_name": str(r["parameter_name"]),
                "old_value": safe_parse_json(r["old_value_json"], None),
                "new_value": safe_parse_json(r["new_value_json"], None),
                "snapshot_version": int(r["snapshot_version"]),
                "created_at": float(r["created_at"]),
            }
            for r in rows
        ]

    def get_recent_parameter_adjustments(self, limit: int = 10) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM learning_parameters ORDER BY created_at DESC, id DESC LIMIT ?", (int(limit),)
        ).fetchall()
        return [
            {
                "id": int(r["id"]),
                "parameter_name": str(r["parameter_name"]),
                "old_value": safe_parse_json(r["old_value_json"], None),
                "new_value": safe_parse_json(r["new_value_json"], None),
                "recommendation": str(r["recommendation"] or ""),
                "reason": str(r["reason"] or ""),
                "confidence": float(r["confidence"] or 0.0),
                "snapshot_version": int(r["snapshot_version"]),
                "created_at": float(r["created_at"]),
            }
            for r in rows
        ]

    def record_adjustment_evaluation(
        self,
        adjustment_type: str,
        adjustment_id: int,
        *,
        impact_score: float,
        classification: str,
        improved: bool,
        data: Dict[str, Any],
        notes: str = "",
    ) -> int:
        """Store an impact evaluation and mark the adjustment evaluated (one transaction)."""
        table = {"weight": "learning_weights", "parameter": "learning_parameters"}.get(adjustment_type)
        if table is None:
            raise ValueError(f"unknown adjustment type {adjustment_type!r}")
        now = time.time()
        with self._write_tx() as conn:
            cur = conn.execute(
                """
                INSERT INTO learning_meta (
                    record_type, adjustment_type, adjustment_id, impact_score,
                    classification, improved, data_json, notes, created_at
                ) VALUES ('evaluation', ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    adjustment_type,
                    int(adjustment_id),
                    float(impact_score),
                    classification,
                    1 if improved else 0,
                    _dumps(data),
                    notes,
                    now,
                ),
            )
            conn.execute(f"UPDATE {table} SET evaluated = 1 WHERE id = ?", (int(adjustment_id),))
            return int(cur.lastrowid)

    def get_recent_evaluations(self, limit: int = 10, *, since: Optional[float] = None) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        sql = "SELECT * FROM learning_meta WHERE record_type = 'evaluation'"
        params: List[Any] = []
        if since is not None:
            sql += " AND created_at > ?"
            params.append(float(since))
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(int(limit))
        rows = conn.execute(sql, tuple(params)).fetchall()
        return [
            {
                "id": int(r["id"]),
                "adjustment_type": r["adjustment_type"],
                "adjustment_id": r["adjustment_id"],
                "impact_score": float(r["impact_score"] or 0.0),
                "classification": r["classification"],
                "improved": bool(r["improved"]),
                "data": safe_parse_json(r["data_json"], {}),
                "notes": str(r["notes"] or ""),
                "created_at": float(r["created_at"]),
            }
            for r in rows
        ]

    def insert_meta_record(self, record_type: str, data: Dict[str, Any], notes: str = "") -> int:
        with self._write_tx() as conn:
            cur = conn.execute(
                "INSERT INTO learning_meta (record_type, data_json, notes, created_at) VALUES (?, ?, ?, ?)",
                (record_type, _dumps(data), notes, time.time()),
            )
            return int(cur.lastrowid)

    def get_meta_records(self, record_type: str, limit: int = 10) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM learning_meta WHERE record_type = ?
            ORDER BY created_at DESC, id DESC LIMIT ?
            """,
            (record_type, int(limit)),
        ).fetchall()
        return [
            {
                "id": int(r["id"]),
                "record_type": r["record_type"],
                "data": safe_parse_json(r["data_json"], {}),
                "notes": str(r["notes"] or ""),
                "created_at": float(r["created_at"]),
            }
            for r in rows
        ]

    def get_last_meta_time(self, record_type: str) -> Optional[float]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT MAX(created_at) AS ts FROM learning_meta WHERE record_type = ?", (record_type,)
        ).fetchone()
        return float(row["ts"]) if row and row["ts"] is not None else None

    # ------------------------------------------------------------------
    # Pattern libraries
    # ------------------------------------------------------------------

    def upsert_win_pattern(self, pattern: Dict[str, Any], return_pct: float) -> WinPattern:
        """Bump an existing containing pattern (rolling avg return) or insert a new one."""
        now = time.time()
        with self._write_tx() as conn:
            for row in conn.execute("SELECT * FROM win_patterns ORDER BY id ASC").fetchall():
                stored = safe_parse_json(row["pattern_json"], {})
                if not json_contains(stored, pattern):
                    continue
                n = int(row["occurrences"] or 0)
                avg = (float(row["avg_return"] or 0.0) * n + float(return_pct)) / (n + 1)
                conn.execute(
                    "UPDATE win_patterns SET occurrences = ?, avg_return = ?, last_seen = ? WHERE id = ?",
                    (n + 1, avg, now, int(row["id"])),
                )
                return WinPattern(int(row["id"]), stored, n + 1, avg, now)
            cur = conn.execute(
                "INSERT INTO win_patterns (pattern_json, occurrences, avg_return, last_seen) VALUES (?, 1, ?, ?)",
                (_dumps(pattern), float(return_pct), now),
            )
            return WinPattern(int(cur.lastrowid), pattern, 1, float(return_pct), now)

    def upsert_danger_pattern(
        self,
        pattern: Dict[str, Any],
        reason: str,
        *,
        start_confidence: float = 60.0,
        confidence_step: float = 5.0,
    ) -> DangerPattern:
        """Raise confidence of an existing containing pattern (cap 100) or insert a new one."""
        now = time.time()
        with self._write_tx() as conn:
            for row in conn.execute("SELECT * FROM danger_patterns ORDER BY id ASC").fetchall():
                stored = safe_parse_json(row["pattern_json"], {})
                if not json_contains(stored, pattern):
                    continue
                n = int(row["occurrences"] or 0) + 1
                confidence = min(100.0, float(row["confidence"] or 0.0) + float(confidence_step))
                conn.execute(
                    "UPDATE danger_patterns SET occurrences = ?, confidence = ?, last_seen = ? WHERE id = ?",
                    (n, confidence, now, int(row["id"])),
                )
                return DangerPattern(int(row["id"]), stored, n, confidence, str(row["reason"] or ""), now)
            cur = conn.execute(
                """
                INSERT INTO danger_patterns (pattern_json, occurrences, confidence, reason, last_seen)
                VALUES (?, 1, ?, ?, ?)
                """,
                (_dumps(pattern), float(start_confidence), reason, now),
            )
            return DangerPattern(int(cur.lastrowid), pattern, 1, float(start_confidence), reason, now)

    def list_win_patterns(self, limit: int = 1000) -> List[WinPattern]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM win_patterns ORDER BY occurrences DESC, id ASC LIMIT ?", (int(limit),)
        ).fetchall()
        return [
            WinPattern(
                int(r["id"]),
                safe_parse_json(r["pattern_json"], {}),
                int(r["occurrences"]),
                float(r["avg_return"]),
                float(r["last_seen"]),
            )
            for r in rows
        ]

    def list_danger_patterns(self, min_confidence: float = 0.0, limit: int = 1000) -> List[DangerPattern]:
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM danger_patterns WHERE confidence >= ?
            ORDER BY confidence DESC, id ASC LIMIT ?
            """,
            (float(min_confidence), int(limit)),
        ).fetchall()
        return [
            DangerPattern(
                int(r["id"]),
                safe_parse_json(r["pattern_json"], {}),
                int(r["occurrences"]),
                float(r["confidence"]),
                str(r["reason"] or ""),
                float(r["last_seen"]),
            )
            for r in rows
        ]

    def get_pattern_counts(self) -> Dict[str, Any]:
        conn = self._get_connection()
        win = conn.execute(
            "SELECT COUNT(*) AS n, COALESCE(SUM(occurrences), 0) AS occ, AVG(avg_return) AS avg FROM win_patterns"
        ).fetchone()
        danger = conn.execute(
            "SELECT COUNT(*) AS n, COALESCE(SUM(occurrences), 0) AS occ FROM danger_patterns"
        ).fetchone()
        fingerprinted = conn.execute(
            "SELECT COUNT(*) AS n FROM trades WHERE outcome IS NOT NULL AND fingerprint_json IS NOT NULL"
        ).fetchone()
        return {
            "win_patterns": int(win["n"] or 0),
            "win_occurrences": int(win["occ"] or 0),
            "avg_win_return": float(win["avg"] or 0.0),
            "danger_patterns": int(danger["n"] or 0),
            "danger_occurrences": int(danger["occ"] or 0),
            "fingerprinted_trades": int(fingerprinted["n"] or 0),
        }

    def reset_pattern_libraries(self) -> Dict[str, int]:
        """Administrative reset: delete all win/danger pattern rows."""
        with self._write_tx() as conn:
            wins = conn.execute("DELETE FROM win_patterns").rowcount
            dangers = conn.execute("DELETE FROM danger_patterns").rowcount
            conn.execute(
                "INSERT INTO learning_meta (record_type, data_json, notes, created_at) VALUES ('pattern_reset', ?, ?, ?)",
                (_dumps({"win_patterns": wins, "danger_patterns": dangers}), "Pattern libraries reset", time.time()),
            )
        return {"win_patterns": int(wins), "danger_patterns": int(dangers)}

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def start_cycle(self, cycle_type: str, trade_count: int, trigger: str = TRIGGER_MILESTONE) -> LearningCycle:
        now = time.time()
        with self._write_tx() as conn:
            row = conn.execute("SELECT COALESCE(MAX(cycle_number), 0) + 1 AS n FROM learning_cycles").fetchone()
            number = int(row["n"])
            cur = conn.execute(
                """
                INSERT INTO learning_cycles
                    (cycle_number, cycle_type, trade_count_at_cycle, status, created_at, trigger_source)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (number, cycle_type, int(trade_count), CYCLE_RUNNING, now, str(trigger)),
            )
            cycle_id = int(cur.lastrowid)
        return LearningCycle(
            id=cycle_id,
            cycle_number=number,
            cycle_type=cycle_type,
            trade_count_at_cycle=int(trade_count),
            status=CYCLE_RUNNING,
            created_at=now,
            trigger=str(trigger),
        )

    def finish_cycle(
        self,
        cycle_id: int,
        *,
        status: str,
        adjustments_made: int = 0,
        duration_ms: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Close a running cycle. Closed cycles are never reopened."""
        if status not in {CYCLE_COMPLETED, CYCLE_FAILED}:
            raise ValueError(f"invalid terminal cycle status {status!r}")
        with self._write_tx() as conn:
            conn.execute(
                """
                UPDATE learning_cycles
                SET status = ?, adjustments_made = ?, duration_ms = ?, error_message = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    status,
                    int(adjustments_made),
                    duration_ms,
                    error_message,
                    time.time(),
                    int(cycle_id),
                    CYCLE_RUNNING,
                ),
            )

    def fail_stale_running_cycles(self, message: str = "interrupted") -> int:
        """Mark cycles left `running` by a dead process as failed."""
        with self._write_tx() as conn:
            cur = conn.execute(
                "UPDATE learning_cycles SET status = ?, error_message = ?, completed_at = ? WHERE status = ?",
                (CYCLE_FAILED, message, time.time(), CYCLE_RUNNING),
            )
            return int(cur.rowcount)

    def list_cycles(self, limit: int = 20, cycle_type: Optional[str] = None) -> List[LearningCycle]:
        conn = self._get_connection()
        if cycle_type:
            rows = conn.execute(
                "SELECT * FROM learning_cycles WHERE cycle_type = ? ORDER BY id DESC LIMIT ?",
                (cycle_type, int(limit)),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM learning_cycles ORDER BY id DESC LIMIT ?", (int(limit),)
            ).fetchall()
        return [self._row_to_cycle(r) for r in rows]

    def count_cycles(self, cycle_type: Optional[str] = None, status: Optional[str] = None) -> int:
        conn = self._get_connection()
        sql = "SELECT COUNT(*) AS n FROM learning_cycles WHERE 1 = 1"
        params: List[Any] = []
        if cycle_type:
            sql += " AND cycle_type = ?"
            params.append(cycle_type)
        if status:
            sql += " AND status = ?"
            params.append(status)
        row = conn.execute(sql, tuple(params)).fetchone()
        return int(row["n"] or 0)

    def get_milestone_keys(self, cycle_types: Tuple[str, ...]) -> Set[str]:
        """`type:trade_count` keys of milestone-triggered cycles; manual and per-trade runs are excluded."""
        if not cycle_types:
            return set()
        conn = self._get_connection()
        marks = ",".join("?" for _ in cycle_types)
        rows = conn.execute(
            f"""
            SELECT DISTINCT cycle_type, trade_count_at_cycle FROM learning_cycles
            WHERE trigger_source = ? AND cycle_type IN ({marks})
            """,
            (TRIGGER_MILESTONE, *cycle_types),
        ).fetchall()
        return {f"{r['cycle_type']}:{int(r['trade_count_at_cycle'])}" for r in rows}

    # ------------------------------------------------------------------
    # Frozen parameters
    # ------------------------------------------------------------------

    def freeze_parameter(
        self,
        name: str,
        value: Any = None,
        *,
        reason: str = "",
        frozen_by: str = "operator",
    ) -> FrozenParameter:
        now = time.time()
        with self._write_tx() as conn:
            conn.execute(
                """
                INSERT INTO frozen_parameters (parameter_name, frozen_value_json, reason, frozen_by, frozen_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(parameter_name) DO UPDATE SET
                    frozen_value_json = excluded.frozen_value_json,
                    reason = excluded.reason,
                    frozen_by = excluded.frozen_by,
                    frozen_at = excluded.frozen_at
                """,
                (str(name), _dumps(value), reason, frozen_by, now),
            )
        return FrozenParameter(str(name), value, reason, frozen_by, now)

    def unfreeze_parameter(self, name: str) -> bool:
        with self._write_tx() as conn:
            cur = conn.execute("DELETE FROM frozen_parameters WHERE parameter_name = ?", (str(name),))
            return cur.rowcount > 0

    def list_frozen_parameters(self) -> List[FrozenParameter]:
        conn = self._get_connection()
        rows = conn.execute("SELECT * FROM frozen_parameters ORDER BY parameter_name ASC").fetchall()
        return [
            FrozenParameter(
                parameter_name=str(r["parameter_name"]),
                frozen_value=safe_parse_json(r["frozen_value_json"], None),
                reason=str(r["reason"] or ""),
                frozen_by=str(r["frozen_by"] or ""),
                frozen_at=float(r["frozen_at"]),
            )
            for r in rows
        ]

    def get_frozen_names(self) -> Set[str]:
        return {f.parameter_name for f in self.list_frozen_parameters()}

    # ------------------------------------------------------------------
    # Key/value state
    # ------------------------------------------------------------------

    def get_state(self, key: str, default: Any = None) -> Any:
        conn = self._get_connection()
        row = conn.execute("SELECT value_json FROM learning_state_kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        return safe_parse_json(row["value_json"], default)

    def set_state(self, key: str, value: Any) -> None:
        with self._write_tx() as conn:
            conn.execute(
                """
                INSERT INTO learning_state_kv (key, value_json, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, updated_at = excluded.updated_at
                """,
                (key, _dumps(value), time.time()),
            )
