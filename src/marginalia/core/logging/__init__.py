"""Structured logging module.

This module provides utilities for structured logging using structlog and logfire.
"""

from .context import request_log_context
from .setup import get_logger, setup_logging

__all__ = [
    "get_logger",
    "request_log_context",
    "setup_logging",
]
