from __future__ import annotations

from typing import Optional

from ..utils.clock import Clock, now_ms

DEFAULT_FRESHNESS_MS = 15_000
DEFAULT_MAX_ENTRIES = 10_000


class ElevationCache:
    """Per-user memo of the last sampled elevation flag.

    Entries older than the freshness window are reported as missing so the
    caller resamples. Writes to grants never invalidate entries early.
    Stale entries are dropped by :meth:`prune`, which also runs whenever the
    map reaches ``max_entries``; past that the oldest sample is evicted.
    """

    def __init__(
        self,
        freshness_ms: int = DEFAULT_FRESHNESS_MS,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Clock = now_ms,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._freshness_ms = freshness_ms
        self._max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, tuple[bool, int]] = {}

    def _is_stale(self, sampled_at: int, now: int) -> bool:
        return now - sampled_at >= self._freshness_ms

    def get(self, user_id: str) -> Optional[bool]:
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        elevated, sampled_at = entry
        if self._is_stale(sampled_at, self._clock()):
            self._entries.pop(user_id, None)
            return None
        return elevated

    def put(self, user_id: str, elevated: bool) -> None:
        # re-inserting keeps the dict ordered by sample time
        self._entries.pop(user_id, None)
        if len(self._entries) >= self._max_entries:
            self.prune()
        while len(self._entries) >= self._max_entries:
            self._entries.pop(next(iter(self._entries)))
        self._entries[user_id] = (elevated, self._clock())

    def prune(self) -> int:
        """Drop every stale entry and return how many were removed."""
        now = self._clock()
        stale = [user_id for user_id, (_, sampled_at) in self._entries.items() if self._is_stale(sampled_at, now)]
        for user_id in stale:
            del self._entries[user_id]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
