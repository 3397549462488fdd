"""Atomic JSON persistence for small state files (pairing allow-store)."""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any

from loguru import logger


class AtomicJsonFile:
    """One JSON file written via temp-file + ``Path.replace``.

    Writers are serialized by an asyncio lock so concurrent approvals never
    interleave a read-modify-write cycle.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock = asyncio.Lock()

    def read(self, default: Any) -> Any:
        """Parsed contents, or *default* when the file is missing.

        Raises ``OSError`` / ``ValueError`` on unreadable or corrupt files.
        """
        if not self.path.exists():
            return default
        with open(self.path, encoding="utf-8") as f:
            return json.load(f)

    def write(self, data: Any) -> None:
        content = json.dumps(data, indent=2, ensure_ascii=False, sort_keys=True)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
            Path(temp_path).replace(self.path)
        except OSError as exc:
            logger.error(f"Atomic write failed for {self.path}: {exc}")
            Path(temp_path).unlink(missing_ok=True)
            raise
