"""
Pending Correlation Table

When the operator triggers the agent from a linked device in a 1:1 chat, we
only see the sync echo of their own message, not who it went to. The
counterpart's delivery receipt tells us. Until it arrives the prompt waits
here, keyed by the outbound message timestamp.

Entries are consumed at most once and live for at most `ttl` seconds.
Memory only: everything here is lost on restart.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300.0  # 5 minutes


@dataclass
class PendingCorrelation:
    timestamp: int
    prompt: str
    created_at: float


class PendingCorrelationTable:
    """Lock-guarded map of outbound timestamp -> pending prompt."""

    def __init__(self, ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[int, PendingCorrelation] = {}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __contains__(self, timestamp: int) -> bool:
        with self._lock:
            return timestamp in self._entries

    def _expired(self, entry: PendingCorrelation, now: float) -> bool:
        return now - entry.created_at > self.ttl

    def put(self, timestamp: int, prompt: str):
        """Insert or overwrite the entry for `timestamp`."""
        with self._lock:
            if timestamp in self._entries:
                logger.debug(f"[PENDING] Overwriting entry for {timestamp}")
            self._entries[timestamp] = PendingCorrelation(timestamp, prompt, self._clock())
            size = len(self._entries)
        logger.info(f"[PENDING] Stored {timestamp} ({size} waiting)")

    def take_match(self, timestamps: Iterable[int]) -> Optional[PendingCorrelation]:
        """
        Remove and return the entry for the first timestamp present.

        Timestamps are checked in the order given. Expired entries that the
        sweep has not reached yet are dropped and treated as absent.
        """
        with self._lock:
            now = self._clock()
            for ts in timestamps:
                entry = self._entries.pop(ts, None)
                if entry is None:
                    continue
                if self._expired(entry, now):
                    logger.debug(f"[PENDING] Entry {ts} expired before its receipt")
                    continue
                return entry
        return None

    def take_if_present(self, timestamps: Iterable[int]) -> Optional[str]:
        """Prompt of the first matching entry, removed atomically; else None."""
        entry = self.take_match(timestamps)
        return entry.prompt if entry else None

    def sweep_expired(self, now: Optional[float] = None) -> int:
        """Drop every entry older than the TTL. Returns how many were removed."""
        with self._lock:
            if now is None:
                now = self._clock()
            stale = [ts for ts, entry in self._entries.items() if self._expired(entry, now)]
            for ts in stale:
                del self._entries[ts]
        if stale:
            logger.info(f"[SWEEP] Expired {len(stale)} pending correlation(s): {stale}")
        return len(stale)

    def clear(self):
        with self._lock:
            self._entries.clear()
