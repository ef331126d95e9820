#!/usr/bin/env python3
"""
Tuning parameters for the learning core.

Every constant the learners use is read through get_param(module, param).
Built-in defaults live in DEFAULT_PARAMS; learning.yaml may override any of
them under config.learning.overrides.<module>.<param>.
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from config_env import apply_env_overrides
from env_utils import LEARNING_CONFIG_PATH, LEARNING_DB_PATH, LEARNING_ROOT


DEFAULT_PARAMS: Dict[str, Dict[str, Any]] = {
    'pattern_matcher': {
        'recent_window': 30,
        'default_limit': 20,
        'half_life_days': 30.0,
        'win_return_threshold': 10.0,
        'danger_loss_threshold': -20.0,
        'danger_confidence_start': 60.0,
        'danger_confidence_step': 5.0,
        'danger_similarity': 0.9,
        'danger_min_confidence': 70.0,
    },
    'weight_optimizer': {
        'min_trades': 10,
        'min_side_samples': 5,
        'min_spread': 5.0,
        'max_adjustment': 5.0,
        'min_weight': 5.0,
        'max_weight': 40.0,
        'persist_threshold': 2.0,
        'window': 50,
        'drift_warning': 50.0,
    },
    'parameter_tuner': {
        'min_trades': 30,
        'window': 100,
        'min_confidence': 0.3,
        'step': 2.0,
        'take_profit_step': 10.0,
    },
    'meta_learner': {
        'cooldown_hours': 24.0,
        'min_trades_each_side': 20,
        'improvement_threshold': 0.02,
        'degradation_threshold': -0.05,
        'max_consecutive_failures': 3,
        'lr_floor': 0.25,
        'lr_restore_factor': 1.2,
        'lr_restore_improvement_rate': 0.7,
        'auto_revert_min_win_rate': 0.35,
        'stability_min_trades': 30,
    },
    'scheduler': {
        'interval_seconds': 300.0,
        'min_trades': 30,
        'optimization_every': 50,
        'meta_review_every': 100,
        'report_every': 200,
    },
}


_CFG: Optional[Dict[str, Any]] = None


def _load_cfg() -> Dict[str, Any]:
    global _CFG
    if _CFG is not None:
        return _CFG
    cfg: Dict[str, Any] = {}
    path = Path(LEARNING_CONFIG_PATH)
    if path.exists():
        cfg = yaml.safe_load(path.read_text()) or {}
    if not isinstance(cfg, dict):
        cfg = {}
    cfg = apply_env_overrides(cfg)
    _CFG = cfg
    return cfg


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load learning.yaml (or an explicit file) with env overrides applied."""
    if path is None:
        return deepcopy(_load_cfg())
    raw = yaml.safe_load(Path(path).read_text()) or {}
    return apply_env_overrides(raw if isinstance(raw, dict) else {})


def set_config(cfg: Optional[Dict[str, Any]]) -> None:
    """Replace the cached config (None forces a reload on next access)."""
    global _CFG
    _CFG = apply_env_overrides(cfg) if cfg is not None else None


def cfg_get(path: Tuple[str, ...], default: Any = None) -> Any:
    cur: Any = _load_cfg()
    for key in path:
        if not isinstance(cur, dict) or key not in cur:
            return default
        cur = cur[key]
    return cur


def get_param(module: str, param: str) -> Any:
    """Get a tuning param: learning.yaml override first, built-in default otherwise."""
    if module not in DEFAULT_PARAMS:
        raise KeyError(f"Unknown module '{module}'")
    if param not in DEFAULT_PARAMS[module]:
        raise KeyError(f"Unknown param '{module}.{param}'")

    override = cfg_get(("config", "learning", "overrides", module, param))
    if override is not None:
        return deepcopy(override)
    return deepcopy(DEFAULT_PARAMS[module][param])


def get_db_path() -> str:
    """Resolve the store path: config.db_path (relative to LEARNING_ROOT) or the env default."""
    raw = cfg_get(("config", "db_path"))
    if not raw:
        return str(LEARNING_DB_PATH)
    path = Path(str(raw)).expanduser()
    if not path.is_absolute():
        path = Path(LEARNING_ROOT) / path
    return str(path)
