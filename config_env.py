"""Apply env overrides to learning.yaml config."""

from __future__ import annotations

from copy import deepcopy
from typing import Any, Dict, Tuple

from env_utils import (
    env_present,
    env_str,
    env_int,
    env_float,
    env_bool,
    env_list,
    env_json,
)
from logging_utils import get_logger


PathKey = Tuple[str, ...]

# Keep env overrides focused on runtime plumbing.
# Tuning params come from learning.yaml.
ALLOWED_ENV_OVERRIDES = {
    "LEARNING_DB_PATH",
    "LEARNING_ENABLED",
    "LEARNING_SCHEDULER_INTERVAL_SECONDS",
    "LEARNING_SCHEDULER_MIN_TRADES",
    "LEARNING_AUTO_REVERT",
}

# Env names that older deployments used for tuning values. Read only to warn.
_LEGACY_TUNING_ENV = {
    "LEARNING_MAX_WEIGHT_ADJUSTMENT": (("config", "learning", "overrides", "weight_optimizer", "max_adjustment"), "float"),
    "LEARNING_MIN_WEIGHT": (("config", "learning", "overrides", "weight_optimizer", "min_weight"), "float"),
    "LEARNING_MAX_WEIGHT": (("config", "learning", "overrides", "weight_optimizer", "max_weight"), "float"),
    "LEARNING_PARAMETER_STEP": (("config", "learning", "overrides", "parameter_tuner", "step"), "float"),
    "LEARNING_COOLDOWN_HOURS": (("config", "learning", "overrides", "meta_learner", "cooldown_hours"), "float"),
}

_WARNED_IGNORED_ENV_OVERRIDES = False

log = get_logger("config_env")


def _warn_ignored_env_overrides_once(names: set[str]) -> None:
    global _WARNED_IGNORED_ENV_OVERRIDES
    if _WARNED_IGNORED_ENV_OVERRIDES or not names:
        return
    sorted_names = sorted(names)
    preview = ", ".join(sorted_names[:12])
    extra = len(sorted_names) - 12
    if extra > 0:
        preview = f"{preview}, +{extra} more"
    log.warning(
        "Ignoring non-whitelisted LEARNING env overrides (YAML-first mode). "
        f"Ignored keys: {preview}"
    )
    _WARNED_IGNORED_ENV_OVERRIDES = True


def _get_path(cfg: Dict[str, Any], path: PathKey, default: Any = None) -> Any:
    cur: Any = cfg
    for key in path:
        if not isinstance(cur, dict) or key not in cur:
            return default
        cur = cur[key]
    return cur


def _set_path(cfg: Dict[str, Any], path: PathKey, value: Any) -> None:
    cur: Any = cfg
    for key in path[:-1]:
        if key not in cur or not isinstance(cur[key], dict):
            cur[key] = {}
        cur = cur[key]
    cur[path[-1]] = value


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    cfg = deepcopy(config) if config else {}
    ignored_env_overrides: set[str] = set()

    def override(path: PathKey, env_name: str, kind: str = "str") -> None:
        if not env_present(env_name):
            return
        if env_name not in ALLOWED_ENV_OVERRIDES:
            ignored_env_overrides.add(env_name)
            return
        default = _get_path(cfg, path)
        if kind == "int":
            value = env_int(env_name, default if isinstance(default, int) else 0)
        elif kind == "float":
            value = env_float(env_name, float(default) if default is not None else 0.0)
        elif kind == "bool":
            value = env_bool(env_name, bool(default) if default is not None else False)
        elif kind == "list":
            value = env_list(env_name, default if isinstance(default, list) else [])
        elif kind == "json":
            value = env_json(env_name, default if default is not None else {})
        else:
            value = env_str(env_name, default if default is not None else "")
        _set_path(cfg, path, value)

    override(("config", "db_path"), "LEARNING_DB_PATH")
    override(("config", "learning", "enabled"), "LEARNING_ENABLED", kind="bool")
    override(("config", "learning", "auto_revert"), "LEARNING_AUTO_REVERT", kind="bool")
    override(
        ("config", "learning", "overrides", "scheduler", "interval_seconds"),
        "LEARNING_SCHEDULER_INTERVAL_SECONDS",
        kind="float",
    )
    override(
        ("config", "learning", "overrides", "scheduler", "min_trades"),
        "LEARNING_SCHEDULER_MIN_TRADES",
        kind="int",
    )

    for env_name, (path, kind) in _LEGACY_TUNING_ENV.items():
        override(path, env_name, kind=kind)

    _warn_ignored_env_overrides_once(ignored_env_overrides)
    return cfg
