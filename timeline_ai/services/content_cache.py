"""
Content Cache - In-process memo of provider outputs keyed by input hash.

Entries expire after a fixed TTL and are evicted lazily on lookup.
"""

import hashlib
import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from timeline_ai.observability.logging import get_logger
from timeline_ai.observability.metrics import metrics

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 3600.0


@dataclass(frozen=True)
class CacheEntry:
    """A cached value and the moment it was stored."""

    value: Any
    stored_at: float


def content_hash(content: Any) -> str:
    """
    Deterministic SHA-256 over a canonical JSON encoding of content.

    Mapping key order does not affect the hash.
    """
    canonical = json.dumps(
        content, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ContentCache:
    """
    Keyed store of generated outputs with time-based expiry.

    Shared by all runs in the process. Operations never await, so no lock
    is needed on a single event loop.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive: {ttl_seconds}")
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    @staticmethod
    def hash(content: Any) -> str:
        """Cache key for arbitrary JSON-serializable content."""
        return content_hash(content)

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None when absent, expired or disabled."""
        if not self.enabled:
            metrics.record_cache_lookup("disabled")
            return None

        entry = self._entries.get(key)
        if entry is None:
            metrics.record_cache_lookup("miss")
            return None

        if self._clock() - entry.stored_at >= self.ttl_seconds:
            del self._entries[key]
            metrics.record_cache_lookup("expired")
            logger.debug("cache_entry_expired", key=key[:12])
            return None

        metrics.record_cache_lookup("hit")
        return entry.value

    def set(self, key: str, value: Any) -> None:
        """Store a value, replacing any previous entry and restarting its TTL."""
        if not self.enabled:
            return
        self._entries[key] = CacheEntry(value=value, stored_at=self._clock())

    def clear(self) -> None:
        """Drop every entry."""
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
