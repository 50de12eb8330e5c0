"""
Short-lived memo of recently applied event keys.

The same logical event can legitimately arrive twice: once on the broadcast
channel and once on a personal channel, or once via pub/sub and once via the
fallback socket. Keys are channel-independent (e.g. "status:<id>:<status>").
"""

import time
import logging
from typing import Callable, Dict, Any, Optional

from config import Config

logger = logging.getLogger(__name__)


class DedupCache:
    """In-memory key -> last-seen map with opportunistic eviction (no sweeper thread)"""

    def __init__(
        self,
        window_seconds: float = None,
        evict_after_seconds: float = None,
        max_entries: int = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.window_seconds = Config.DEDUP_WINDOW_SECONDS if window_seconds is None else window_seconds
        self.evict_after_seconds = (
            Config.DEDUP_EVICT_AFTER_SECONDS if evict_after_seconds is None else evict_after_seconds
        )
        self.max_entries = Config.DEDUP_MAX_ENTRIES if max_entries is None else max_entries
        self._clock = clock or time.monotonic
        self._seen: Dict[str, float] = {}
        self.stats = {"checks": 0, "duplicates": 0, "evictions": 0}

    def is_duplicate(self, key: str) -> bool:
        """True when key was seen within the window; otherwise records it and returns False"""
        now = self._clock()
        self.stats["checks"] += 1

        last_seen = self._seen.get(key)
        if last_seen is not None and now - last_seen < self.window_seconds:
            self.stats["duplicates"] += 1
            logger.debug(f"🔁 DEDUP_HIT: {key}")
            return True

        self._seen[key] = now
        if len(self._seen) > self.max_entries:
            self._cleanup_expired(now)
        return False

    def _cleanup_expired(self, now: float) -> None:
        """Drop entries older than evict_after_seconds"""
        expired_keys = [
            key for key, seen_at in self._seen.items()
            if now - seen_at > self.evict_after_seconds
        ]
        for key in expired_keys:
            del self._seen[key]
        self.stats["evictions"] += len(expired_keys)

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "size": len(self._seen)}
