"""Utility functions for Shipyard."""

from shipyard.utils.logging import configure_logging, deployment_context, get_logger

__all__ = [
    "configure_logging",
    "deployment_context",
    "get_logger",
]
