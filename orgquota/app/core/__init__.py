"""Core utilities for the quota ledger application."""

from orgquota.app.core.config import settings
from orgquota.app.core.logging import get_log_context, get_logger, setup_logging

__all__ = [
    "settings",
    "get_logger",
    "get_log_context",
    "setup_logging",
]
