"""Utility functions for padbridge."""

import sys
import time
from pathlib import Path

from loguru import logger


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the padbridge state directory (``PADBRIDGE_STATE_DIR`` or ~/.padbridge)."""
    from padbridge.settings import get_settings

    return ensure_dir(get_settings().state_dir)


def setup_logging(level: str = "INFO", json: bool = False) -> None:
    """Route loguru output to stderr at *level*.

    ``json=True`` switches to loguru's serialized records for log shippers.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), serialize=json, backtrace=False)
    logger.enable("padbridge")


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)
