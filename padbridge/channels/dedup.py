"""Bounded per-account record of already-processed message ids."""

from __future__ import annotations

import threading
from collections import OrderedDict

MAX_PROCESSED_IDS = 5000


class DedupRegistry:
    """FIFO-bounded set of message ids, partitioned by account.

    Shared by the webhook and poll paths of one monitor so a message id is
    dispatched at most once whichever path sees it first.
    """

    def __init__(self, capacity: int = MAX_PROCESSED_IDS) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._seen: dict[str, OrderedDict[str, None]] = {}
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def admit(self, account_id: str, message_id: str) -> bool:
        """Record *message_id*; ``False`` if it was already recorded."""
        with self._lock:
            seen = self._seen.setdefault(account_id, OrderedDict())
            if message_id in seen:
                return False
            if len(seen) >= self._capacity:
                seen.popitem(last=False)
            seen[message_id] = None
            return True

    def contains(self, account_id: str, message_id: str) -> bool:
        with self._lock:
            return message_id in self._seen.get(account_id, ())

    def size(self, account_id: str) -> int:
        with self._lock:
            return len(self._seen.get(account_id, ()))

    def discard(self, account_id: str) -> None:
        """Forget everything recorded for *account_id*."""
        with self._lock:
            self._seen.pop(account_id, None)
