"""Two-tier inbound rate limiting: per-chat cooldown plus a per-account window."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

GLOBAL_WINDOW_MS = 60_000
DEFAULT_CHAT_COOLDOWN_MS = 8000
DEFAULT_GLOBAL_MAX_PER_MIN = 10


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


@dataclass(frozen=True)
class RateTicket:
    """Reservation taken by :meth:`RateLimiter.acquire`; pass to ``release`` to undo it."""

    account_id: str
    chat_id: str
    at_ms: int
    previous_ms: int | None


class RateLimiter:
    """Per-(account, chat) cooldown and per-account sliding window.

    ``acquire`` checks and records in one step, so two concurrent messages
    for the same chat can never both pass.
    """

    def __init__(
        self,
        clock: Callable[[], int] | None = None,
        window_ms: int = GLOBAL_WINDOW_MS,
    ) -> None:
        self._clock = clock or monotonic_ms
        self._window_ms = window_ms
        self._last_activity: dict[tuple[str, str], int] = {}
        self._processed: dict[str, deque[int]] = {}
        self._lock = threading.Lock()

    def _prune(self, account_id: str, now: int) -> deque[int]:
        stamps = self._processed.setdefault(account_id, deque())
        cutoff = now - self._window_ms
        while stamps and stamps[0] < cutoff:
            stamps.popleft()
        return stamps

    def acquire(
        self,
        account_id: str,
        chat_id: str,
        cooldown_ms: int = DEFAULT_CHAT_COOLDOWN_MS,
        max_per_window: int = DEFAULT_GLOBAL_MAX_PER_MIN,
    ) -> RateTicket | None:
        """Reserve a slot for one message, or ``None`` if rate limited."""
        with self._lock:
            now = self._clock()
            key = (account_id, chat_id)
            last = self._last_activity.get(key)
            if last is not None and now - last < cooldown_ms:
                return None
            stamps = self._prune(account_id, now)
            if len(stamps) >= max_per_window:
                return None
            self._last_activity[key] = now
            stamps.append(now)
            return RateTicket(account_id=account_id, chat_id=chat_id, at_ms=now, previous_ms=last)

    def release(self, ticket: RateTicket) -> None:
        """Undo a reservation whose message was dropped later in the gate."""
        with self._lock:
            key = (ticket.account_id, ticket.chat_id)
            if self._last_activity.get(key) == ticket.at_ms:
                if ticket.previous_ms is None:
                    del self._last_activity[key]
                else:
                    self._last_activity[key] = ticket.previous_ms
            stamps = self._processed.get(ticket.account_id)
            if stamps is not None:
                try:
                    stamps.remove(ticket.at_ms)
                except ValueError:
                    pass  # already aged out of the window

    def record_reply(self, account_id: str, chat_id: str) -> None:
        """Mark outbound activity; restarts the chat cooldown."""
        with self._lock:
            self._last_activity[(account_id, chat_id)] = self._clock()

    def window_count(self, account_id: str) -> int:
        with self._lock:
            return len(self._prune(account_id, self._clock()))

    def last_activity(self, account_id: str, chat_id: str) -> int | None:
        with self._lock:
            return self._last_activity.get((account_id, chat_id))

    def discard(self, account_id: str) -> None:
        with self._lock:
            self._processed.pop(account_id, None)
            for key in [k for k in self._last_activity if k[0] == account_id]:
                del self._last_activity[key]
