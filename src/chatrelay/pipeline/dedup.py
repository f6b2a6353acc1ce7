"""
Recent-key history for duplicate suppression.

Bounded in two directions:
- capacity: once full, the oldest key is evicted on insert
- ttl: each key expires after its own window (long for provider ids,
  short for content-based coalescing keys)

Mutated only from the event loop with no await between lookup and insert,
so concurrent handlers cannot both claim the same key.
"""

from __future__ import annotations

import hashlib
import time
from collections import OrderedDict
from typing import Callable


def content_key(external_id: str, text: str) -> str:
    """Dedup key for messages that carry no provider id."""
    digest = hashlib.sha1(text.encode("utf-8")).hexdigest()[:16]
    return f"{external_id}:{digest}"


class RecentKeys:
    """Fixed-capacity set of recently seen keys with per-key expiry."""

    def __init__(
        self,
        capacity: int = 5000,
        ttl: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._capacity = max(1, capacity)
        self._ttl = ttl
        self._clock = clock
        # key → expires_at; insertion order == age order
        self._entries: OrderedDict[str, float] = OrderedDict()
        self.evictions = 0

    def check_and_add(self, key: str, ttl: float | None = None) -> bool:
        """Record ``key``. Returns False if it was already present and live."""
        now = self._clock()
        expires_at = self._entries.get(key)
        if expires_at is not None:
            if expires_at > now:
                return False
            del self._entries[key]

        self._purge(now)
        while len(self._entries) >= self._capacity:
            self._entries.popitem(last=False)
            self.evictions += 1

        self._entries[key] = now + (self._ttl if ttl is None else ttl)
        return True

    def discard(self, key: str) -> None:
        self._entries.pop(key, None)

    def __contains__(self, key: object) -> bool:
        expires_at = self._entries.get(key)  # type: ignore[arg-type]
        return expires_at is not None and expires_at > self._clock()

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for expires_at in self._entries.values() if expires_at > now)

    def _purge(self, now: float) -> None:
        # Keys with different TTLs interleave, so expiry is not strictly
        # ordered; drop expired keys from the old end until a live one shows up.
        while self._entries:
            oldest_key, expires_at = next(iter(self._entries.items()))
            if expires_at > now:
                break
            del self._entries[oldest_key]
