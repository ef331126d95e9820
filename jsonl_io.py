#!/usr/bin/env python3
"""Shared JSONL read/append helpers for trade import and reject logs."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterator, Tuple

from logging_utils import get_logger

LOG = get_logger("jsonl_io")


def iter_jsonl(path: str) -> Iterator[Tuple[int, Dict[str, Any]]]:
    """Yield (line_number, record) for every JSON object line; malformed lines are logged and skipped."""
    with Path(path).open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            raw = line.strip()
            if not raw:
                continue
            try:
                record = json.loads(raw)
            except ValueError as e:
                LOG.warning(f"{path}:{lineno}: invalid JSON ({e})")
                continue
            if not isinstance(record, dict):
                LOG.warning(f"{path}:{lineno}: expected an object, got {type(record).__name__}")
                continue
            yield lineno, record


def append_jsonl(path: str, record: Dict[str, Any]) -> None:
    """Best-effort JSONL append with parent directory creation."""
    try:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        with p.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, separators=(",", ":"), ensure_ascii=False, default=str) + "\n")
    except OSError as e:
        LOG.warning(f"Could not append to {path}: {e}")
