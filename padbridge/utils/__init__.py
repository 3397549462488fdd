"""Utility functions for padbridge."""

from padbridge.utils.helpers import ensure_dir, get_data_path, now_ms, setup_logging

__all__ = ["ensure_dir", "get_data_path", "now_ms", "setup_logging"]
