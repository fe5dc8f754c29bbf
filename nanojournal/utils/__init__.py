"""Utility functions for nanojournal."""

from nanojournal.utils.helpers import ensure_dir, get_data_path, get_memory_path
from nanojournal.utils.logging import configure_logging

__all__ = [
    "ensure_dir",
    "get_data_path",
    "get_memory_path",
    "configure_logging",
]
