"""Verbosity management for the btleech CLI.

Maps the count of ``-v`` flags to a logging level. Command output goes to
stdout and is never affected; only the log stream on stderr is.
"""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import Any

from btleech.models import LogLevel


class VerbosityLevel(IntEnum):
    """Verbosity levels for CLI commands."""

    NORMAL = 0  # warnings and errors
    VERBOSE = 1  # -v: progress information
    DEBUG = 2  # -vv: protocol-level detail
    TRACE = 3  # -vvv: debug plus stack traces on errors


class VerbosityManager:
    """Manages verbosity levels and maps them to logging levels."""

    LEVEL_TO_LOGGING: dict[VerbosityLevel, int] = {
        VerbosityLevel.NORMAL: logging.WARNING,
        VerbosityLevel.VERBOSE: logging.INFO,
        VerbosityLevel.DEBUG: logging.DEBUG,
        VerbosityLevel.TRACE: logging.DEBUG,
    }

    def __init__(self, verbosity_count: int = 0):
        """Initialize verbosity manager.

        Args:
            verbosity_count: Number of -v flags, clamped to 0-3

        """
        self.verbosity_count = max(0, min(3, verbosity_count))
        self.level = VerbosityLevel(self.verbosity_count)
        self.logging_level = self.LEVEL_TO_LOGGING[self.level]

    @classmethod
    def from_count(cls, count: int) -> VerbosityManager:
        """Create VerbosityManager from count."""
        return cls(count)

    def get_log_level(self) -> LogLevel:
        """Get the configuration log level for this verbosity."""
        return LogLevel(logging.getLevelName(self.logging_level))

    def should_show_stack_trace(self) -> bool:
        return self.level == VerbosityLevel.TRACE

    def is_verbose(self) -> bool:
        return self.level >= VerbosityLevel.VERBOSE


def get_verbosity_from_ctx(ctx: dict[str, Any] | None) -> VerbosityManager:
    """Get verbosity manager from a Click context object.

    Defaults to NORMAL when the context carries no verbosity.
    """
    if ctx is None:
        return VerbosityManager(0)
    return VerbosityManager.from_count(ctx.get("verbosity", 0))
