"""
Utilities module for Harbormaster.

This module provides common utilities like logging configuration.
"""

from __future__ import annotations

from harbormaster.utils.logger import get_logger, logger

__all__ = ["get_logger", "logger"]
