#!/usr/bin/env python3
"""config_env YAML-first guard and learning_params override regressions."""

import os
import sys
import tempfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import learning_params
from config_env import apply_env_overrides
from learning_params import DEFAULT_PARAMS, cfg_get, get_param, load_config, set_config


def _set_env(updates: dict[str, str | None]) -> dict[str, str | None]:
    prev: dict[str, str | None] = {}
    for key, value in updates.items():
        prev[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return prev


def _restore_env(prev: dict[str, str | None]) -> None:
    for key, value in prev.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def test_allowlisted_env_overrides_apply() -> None:
    cfg = {"config": {"db_path": "state/learning.db", "learning": {"enabled": True}}}
    prev = _set_env(
        {
            "LEARNING_DB_PATH": "/tmp/other.db",
            "LEARNING_ENABLED": "false",
            "LEARNING_SCHEDULER_MIN_TRADES": "40",
        }
    )
    try:
        out = apply_env_overrides(cfg)
    finally:
        _restore_env(prev)

    assert out["config"]["db_path"] == "/tmp/other.db"
    assert out["config"]["learning"]["enabled"] is False
    assert out["config"]["learning"]["overrides"]["scheduler"]["min_trades"] == 40
    # input is not mutated
    assert cfg["config"]["learning"] == {"enabled": True}


def test_legacy_tuning_env_is_ignored() -> None:
    cfg = {"config": {"learning": {"overrides": {"weight_optimizer": {"max_adjustment": 5}}}}}
    prev = _set_env({"LEARNING_MAX_WEIGHT_ADJUSTMENT": "20", "LEARNING_COOLDOWN_HOURS": "1"})
    try:
        out = apply_env_overrides(cfg)
    finally:
        _restore_env(prev)

    assert out["config"]["learning"]["overrides"]["weight_optimizer"]["max_adjustment"] == 5
    assert "meta_learner" not in out["config"]["learning"]["overrides"]


def test_get_param_prefers_yaml_override() -> None:
    set_config({"config": {"learning": {"overrides": {"parameter_tuner": {"step": 3.5}}}}})
    try:
        assert get_param("parameter_tuner", "step") == 3.5
        assert get_param("parameter_tuner", "window") == DEFAULT_PARAMS["parameter_tuner"]["window"]
        assert cfg_get(("config", "learning", "overrides", "parameter_tuner", "step")) == 3.5
        assert cfg_get(("config", "missing"), "dflt") == "dflt"
    finally:
        set_config(None)


def test_get_param_unknown_names_raise() -> None:
    with pytest.raises(KeyError):
        get_param("nope", "step")
    with pytest.raises(KeyError):
        get_param("parameter_tuner", "nope")


def test_get_db_path_resolves_relative_to_root() -> None:
    set_config({"config": {"db_path": "state/custom.db"}})
    try:
        path = Path(learning_params.get_db_path())
    finally:
        set_config(None)
    assert path.is_absolute()
    assert path.name == "custom.db"


def test_load_config_from_explicit_file() -> None:
    with tempfile.NamedTemporaryFile("w", suffix=".yaml", delete=False) as f:
        f.write("config:\n  learning:\n    enabled: false\n    auto_revert: false\n")
        path = f.name
    cfg = load_config(path)
    assert cfg["config"]["learning"]["enabled"] is False
    assert cfg["config"]["learning"]["auto_revert"] is False


def test_shipped_learning_yaml_parses_and_matches_known_params() -> None:
    cfg = load_config(str(Path(__file__).resolve().parents[1] / "learning.yaml"))
    overrides = cfg["config"]["learning"]["overrides"]
    for module, params in overrides.items():
        assert module in DEFAULT_PARAMS
        for name in params:
            assert name in DEFAULT_PARAMS[module]
