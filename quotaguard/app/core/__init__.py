"""Core utilities for the rate limiting service."""

from quotaguard.app.core.config import settings
from quotaguard.app.core.logging import get_logger, setup_logging

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
]
