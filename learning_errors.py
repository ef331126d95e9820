#!/usr/bin/env python3
"""Exception types raised by the learning core."""

from __future__ import annotations


class LearningError(RuntimeError):
    """Base class for learning core failures."""


class InsufficientDataError(LearningError):
    """Not enough trades or samples to compute anything meaningful.

    Public operations turn this into a skipped result; it never marks a cycle failed.
    """

    def __init__(self, what: str, required: int, actual: int):
        super().__init__(f"{what}: need {required}, have {actual}")
        self.what = what
        self.required = int(required)
        self.actual = int(actual)


class PersistenceError(LearningError):
    """The store rejected a write; the enclosing transaction was rolled back."""


class ComputationError(LearningError):
    """Malformed trade or fingerprint data for a single item."""


class SnapshotNotFoundError(LearningError):
    """Requested snapshot version does not exist."""

    def __init__(self, version: int):
        super().__init__(f"snapshot version {version} not found")
        self.version = int(version)
