"""
Time-bounded cache for churn scores.

Kept behind get/put/invalidate so a shared cache can replace the in-process
dict without touching the scoring algorithm.
"""

import time
from typing import Callable, Optional

from .models import ChurnScoreEntry

CacheKey = tuple[str, str]


class ScoreCache:
    """In-process expiring map keyed by (account_id, user_id)."""

    def __init__(
        self,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[CacheKey, ChurnScoreEntry] = {}

    def get(self, key: CacheKey) -> Optional[ChurnScoreEntry]:
        """Return a live entry, or None if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.computed_at >= self.ttl_seconds:
            return None
        return entry

    def put(self, key: CacheKey, score: float) -> ChurnScoreEntry:
        """Store a freshly computed score, replacing any previous entry."""
        account_id, user_id = key
        entry = ChurnScoreEntry(
            account_id=account_id,
            user_id=user_id,
            score=score,
            computed_at=self._clock(),
        )
        self._entries[key] = entry
        return entry

    def invalidate(self, key: CacheKey):
        """Drop an entry so the next lookup recomputes."""
        self._entries.pop(key, None)
