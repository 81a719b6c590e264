"""
Utilities Module
================

Shared infrastructure for the runtime:
- logger: colored, context-aware logging
- config: environment-driven configuration
- errors: the error taxonomy
- retry: exponential backoff for transient failures
- rate_limit: sliding-window admission control
"""

from taskpilot.utils.logger import Logger, logger
from taskpilot.utils.config import Config, get_config, reset_config

__all__ = ["Logger", "logger", "Config", "get_config", "reset_config"]
