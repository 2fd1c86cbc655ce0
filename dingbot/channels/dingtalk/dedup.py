"""Short-window suppression of redelivered inbound messages."""

import time
from collections import OrderedDict
from typing import Callable

DEDUP_TTL_S = 60.0
DEDUP_MAX_SIZE = 1000
SWEEP_EVERY = 10


def dedup_key(robot_identity: str, msg_id: str) -> str:
    return f"{robot_identity}:{msg_id}"


class DedupStore:
    """
    Best-effort TTL set of processed message keys.

    Not an exactly-once guarantee: it only absorbs the transport's at-least-once
    retries inside a short window.
    """

    def __init__(
        self,
        *,
        ttl: float = DEDUP_TTL_S,
        max_size: int = DEDUP_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: OrderedDict[str, float] = OrderedDict()
        self._inserts = 0

    def __len__(self) -> int:
        return len(self._entries)

    def is_processed(self, key: str) -> bool:
        expires_at = self._entries.get(key)
        if expires_at is None:
            return False
        if self._clock() >= expires_at:
            del self._entries[key]
            return False
        return True

    def mark_processed(self, key: str) -> None:
        # Re-marking moves the key to the newest position
        self._entries.pop(key, None)
        self._entries[key] = self._clock() + self.ttl

        if len(self._entries) > self.max_size:
            self.sweep()
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
            return

        self._inserts += 1
        if self._inserts >= SWEEP_EVERY:
            self._inserts = 0
            self.sweep()

    def sweep(self) -> int:
        """Drop expired entries and return how many were removed."""
        now = self._clock()
        expired = [k for k, exp in self._entries.items() if now >= exp]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        self._inserts = 0
