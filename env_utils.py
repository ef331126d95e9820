"""Environment helpers for the learning core (loads .env + typed accessors)."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Iterable, Optional

from dotenv import load_dotenv


# Load .env early for any module importing env_utils.
load_dotenv(Path(__file__).parent / ".env")


_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def _env_lookup(name: str) -> Optional[str]:
    return os.getenv(name)


def env_present(name: str) -> bool:
    value = _env_lookup(name)
    return value is not None and str(value).strip() != ""


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    if not env_present(name):
        return default
    return str(_env_lookup(name) or "").strip()


def env_int(name: str, default: int) -> int:
    if not env_present(name):
        return default
    try:
        return int(str(_env_lookup(name) or "").strip())
    except (TypeError, ValueError):
        return default


def env_float(name: str, default: float) -> float:
    if not env_present(name):
        return default
    try:
        return float(str(_env_lookup(name) or "").strip())
    except (TypeError, ValueError):
        return default


def env_bool(name: str, default: bool) -> bool:
    if not env_present(name):
        return default
    value = str(_env_lookup(name) or "").strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    return default


def env_json(name: str, default: Any) -> Any:
    if not env_present(name):
        return default
    raw = str(_env_lookup(name) or "").strip()
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def env_list(name: str, default: Iterable[str]) -> list:
    if not env_present(name):
        return list(default)
    raw = str(os.getenv(name)).strip()
    if raw.startswith("["):
        parsed = env_json(name, list(default))
        return list(parsed) if isinstance(parsed, list) else list(default)
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    return parts if parts else list(default)


_DEFAULT_ROOT = Path(__file__).resolve().parent
_ROOT_RAW = env_str("LEARNING_ROOT", str(_DEFAULT_ROOT)) or str(_DEFAULT_ROOT)
_ROOT_PATH = Path(_ROOT_RAW).expanduser()
if not _ROOT_PATH.is_absolute():
    _ROOT_PATH = (_DEFAULT_ROOT / _ROOT_PATH).resolve()

LEARNING_ROOT = str(_ROOT_PATH)
LEARNING_RUNTIME_DIR = env_str("LEARNING_RUNTIME_DIR", str(Path(LEARNING_ROOT) / "state"))
LEARNING_DB_PATH = env_str("LEARNING_DB_PATH", str(Path(LEARNING_RUNTIME_DIR) / "learning.db"))
LEARNING_CONFIG_PATH = env_str("LEARNING_CONFIG_PATH", str(Path(LEARNING_ROOT) / "learning.yaml"))
