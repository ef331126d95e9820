#!/usr/bin/env python3
"""Shared logging namespace and event logging."""

import logging
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from learning_models import LearningEvent
from logging_utils import ROOT_LOGGER, event_logger, get_logger, setup_logging


def test_component_loggers_share_namespace() -> None:
    log = get_logger("weight_optimizer")
    assert log.name == "learning.weight_optimizer"
    assert log.parent is logging.getLogger(ROOT_LOGGER)
    assert logging.getLogger(ROOT_LOGGER).handlers


def test_event_logger_writes_one_line(caplog) -> None:
    log = get_logger("events_test")
    callback = event_logger(log)
    with caplog.at_level(logging.INFO, logger=ROOT_LOGGER):
        callback(LearningEvent(kind="weights_adjusted", payload={"version": 3, "drift": 4.5}))
        callback(LearningEvent(kind="cycle_failed", payload={}))
    messages = [r.getMessage() for r in caplog.records]
    assert "event weights_adjusted drift=4.5 version=3" in messages
    assert "event cycle_failed" in messages


def test_setup_logging_writes_all_components_to_file() -> None:
    with tempfile.NamedTemporaryFile(suffix=".log", delete=False) as f:
        log_file = f.name
    try:
        setup_logging("learning_scheduler", log_file=log_file, verbose=True)
        get_logger("parameter_tuner").debug("tuner detail")
        for handler in logging.getLogger(ROOT_LOGGER).handlers:
            handler.flush()
        text = Path(log_file).read_text(encoding="utf-8")
        assert "[learning.parameter_tuner] DEBUG: tuner detail" in text
    finally:
        setup_logging("learning_scheduler")
