"""Utility modules for logging, run-context binding, and batch writes."""

from rollup.utils.logging import configure_logging, get_logger

__all__ = ["configure_logging", "get_logger"]
