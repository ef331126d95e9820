#!/usr/bin/env python3
"""Shared logging helpers for the learning core.

Every component logs under the `learning.` namespace so one setup_logging()
call (scheduler worker, import script) controls the level and file output of
all learners at once.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from env_utils import env_str

ROOT_LOGGER = "learning"
_DEFAULT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _env_level(default: int) -> int:
    raw = env_str("LEARNING_LOG_LEVEL")
    if not raw:
        return default
    val = str(raw).strip().upper()
    if val.isdigit():
        return int(val)
    return getattr(logging, val, default)


def _formatter() -> logging.Formatter:
    return logging.Formatter(_DEFAULT_FORMAT, datefmt=_DEFAULT_DATEFMT)


def _root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(_formatter())
        root.addHandler(handler)
        root.setLevel(_env_level(logging.INFO))
    return root


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Component logger under the shared namespace (e.g. learning.weight_optimizer)."""
    _root()
    logger = logging.getLogger(f"{ROOT_LOGGER}.{name}")
    if level is not None:
        logger.setLevel(level)
    return logger


def setup_logging(
    name: str,
    log_file: Optional[str] = None,
    verbose: bool = False,
    level: Optional[int] = None,
) -> logging.Logger:
    """Reconfigure the namespace for an entrypoint (console + optional file)."""
    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(_env_level(logging.DEBUG if verbose else logging.INFO) if level is None else level)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(_formatter())
        root.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(_formatter())
    root.addHandler(console_handler)

    return get_logger(name)


def event_logger(logger: logging.Logger) -> Callable[[Any], None]:
    """on_event callback writing each LearningEvent as a single key=value line."""

    def _log(event: Any) -> None:
        payload = getattr(event, "payload", None) or {}
        fields = " ".join(f"{k}={payload[k]}" for k in sorted(payload))
        logger.info(f"event {event.kind} {fields}".rstrip())

    return _log
