"""
Logger Utility
==============

Colored, context-aware logging for the agent runtime.

Every component owns a logger named after itself, so a single agent run
reads as a trace through the system:

    [2026-01-20T10:30:00] [INFO] [Agent] Iteration 2/10
    [2026-01-20T10:30:01] [INFO] [Agent:Tools] Executing tool: readFile
    [2026-01-20T10:30:01] [WARN] [Tasks] Task task-1 failed, retrying (1/3)

Features:
1. Log levels (DEBUG, INFO, WARNING, ERROR)
2. Timestamps and a [context] prefix on every line
3. Child loggers for nested components (Agent -> Agent:Tools)
4. Optional structured data dumped as indented JSON

The level comes from TASKPILOT_LOG_LEVEL (or LOG_LEVEL) and is read when
a logger is created.

Usage:
    from taskpilot.utils.logger import Logger

    logger = Logger("Router")
    logger.info("Routed request", {"intent": "code_task", "confidence": 0.82})
"""

import json
import os
import sys
from datetime import datetime
from enum import IntEnum
from typing import Any


class LogLevel(IntEnum):
    """Numeric log levels; higher is more severe."""
    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40


class Colors:
    """ANSI escape codes for colored terminal output."""
    RESET = "\033[0m"
    DEBUG = "\033[36m"    # Cyan
    INFO = "\033[32m"     # Green
    WARNING = "\033[33m"  # Yellow
    ERROR = "\033[31m"    # Red
    DIM = "\033[2m"


_LEVEL_NAMES = {
    "DEBUG": LogLevel.DEBUG,
    "INFO": LogLevel.INFO,
    "WARNING": LogLevel.WARNING,
    "WARN": LogLevel.WARNING,
    "ERROR": LogLevel.ERROR,
}


def _get_log_level_from_env() -> LogLevel:
    """
    Resolve the minimum log level from the environment.

    TASKPILOT_LOG_LEVEL wins over the generic LOG_LEVEL.

    Returns:
        LogLevel: The configured level, INFO when unset or unknown
    """
    level_str = os.getenv("TASKPILOT_LOG_LEVEL") or os.getenv("LOG_LEVEL") or "INFO"
    return _LEVEL_NAMES.get(level_str.upper(), LogLevel.INFO)


def _use_color(stream) -> bool:
    """Only emit ANSI codes when writing to a terminal."""
    if os.getenv("NO_COLOR"):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class Logger:
    """
    A context-aware logger with colored output.

    Example:
        logger = Logger("Agent")
        logger.info("Starting task", {"task_id": "task-1"})

        tools_logger = logger.child("Tools")
        tools_logger.debug("Dispatching batch", {"size": 3})  # [Agent:Tools]
    """

    def __init__(self, context: str = ""):
        """
        Initialize a logger.

        Args:
            context: Prefix shown on every line (e.g., "Agent", "Stream")
        """
        self.context = context
        self._min_level = _get_log_level_from_env()

    def child(self, child_context: str) -> "Logger":
        """
        Create a child logger with a nested context.

        Args:
            child_context: Context appended after a colon

        Returns:
            A new Logger with the combined context
        """
        new_context = f"{self.context}:{child_context}" if self.context else child_context
        return Logger(new_context)

    def is_enabled_for(self, level: LogLevel) -> bool:
        """Check whether a level would be emitted."""
        return level >= self._min_level

    def _format_message(self, level: str, message: str, color: str, colored: bool) -> str:
        """
        Format a line as: [TIMESTAMP] [LEVEL] [context] message
        """
        timestamp = datetime.now().isoformat(timespec="seconds")
        context_str = f"[{self.context}] " if self.context else ""

        if not colored:
            return f"[{timestamp}] [{level}] {context_str}{message}"

        return (
            f"{Colors.DIM}[{timestamp}]{Colors.RESET} "
            f"{color}[{level}]{Colors.RESET} "
            f"{context_str}{message}"
        )

    def _log(
        self,
        level: LogLevel,
        level_name: str,
        color: str,
        message: str,
        data: dict[str, Any] | None = None
    ) -> None:
        if level < self._min_level:
            return

        stream = sys.stderr if level >= LogLevel.ERROR else sys.stdout
        colored = _use_color(stream)
        print(self._format_message(level_name, message, color, colored), file=stream)

        if data:
            data_str = json.dumps(data, indent=2, default=str)
            if colored:
                data_str = f"{Colors.DIM}{data_str}{Colors.RESET}"
            print(data_str, file=stream)

    def debug(self, message: str, data: dict[str, Any] | None = None) -> None:
        """Log a debug message (shown only at DEBUG level)."""
        self._log(LogLevel.DEBUG, "DEBUG", Colors.DEBUG, message, data)

    def info(self, message: str, data: dict[str, Any] | None = None) -> None:
        """Log an operational message."""
        self._log(LogLevel.INFO, "INFO", Colors.INFO, message, data)

    def warning(self, message: str, data: dict[str, Any] | None = None) -> None:
        """Log a recoverable problem (a failed tool, a retry, a dropped block)."""
        self._log(LogLevel.WARNING, "WARN", Colors.WARNING, message, data)

    def error(
        self,
        message: str,
        error: BaseException | None = None,
        data: dict[str, Any] | None = None
    ) -> None:
        """
        Log an error.

        Args:
            message: What went wrong
            error: Optional exception; its type and message are attached
            data: Optional extra structured data
        """
        payload: dict[str, Any] = dict(data) if data else {}
        if error is not None:
            payload["error_type"] = type(error).__name__
            payload["error_message"] = str(error)
        self._log(LogLevel.ERROR, "ERROR", Colors.ERROR, message, payload or None)


# Default logger for code without a more specific context
logger = Logger("TaskPilot")
