from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

DEFAULT_TTL_SECONDS = 30.0

# Per-collection TTLs in seconds.
CACHE_TTL: dict[str, float] = {
    "/patients": 60.0,
    "/billing": 30.0,
    "/lab/orders": 30.0,
    "/medical-records": 60.0,
    "/pharmacy": 30.0,
}


@dataclass
class CacheEntry:
    data: Any
    stored_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl


def cache_key(endpoint: str, params: Optional[dict] = None) -> str:
    if not params:
        return endpoint
    cleaned = {k: v for k, v in params.items() if v is not None}
    if not cleaned:
        return endpoint
    return f"{endpoint}?{json.dumps(cleaned, sort_keys=True, default=str)}"


def ttl_for(endpoint: str, default: float = DEFAULT_TTL_SECONDS) -> float:
    for prefix, ttl in CACHE_TTL.items():
        if endpoint.startswith(prefix):
            return ttl
    return default


class ResponseCache:
    """Short-lived read-through cache keyed by endpoint and query parameters."""

    def __init__(self, default_ttl: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._epoch = 0
        # prefix -> epoch of its latest invalidation; "" stands for a full clear
        self._invalidated_at: dict[str, int] = {}

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            del self._entries[key]
            return None
        return entry.data

    def mark(self) -> int:
        """Token for a read about to start; pass it back to :meth:`set` as ``since``."""
        return self._epoch

    def invalidated_since(self, key: str, since: int) -> bool:
        endpoint = key.split("?", 1)[0]
        return any(
            epoch > since and endpoint.startswith(prefix) for prefix, epoch in self._invalidated_at.items()
        )

    def set(self, key: str, data: Any, ttl: Optional[float] = None, *, since: Optional[int] = None) -> bool:
        """Store ``data`` unless its key was invalidated after ``since`` was taken."""
        if since is not None and self.invalidated_since(key, since):
            return False
        self._entries[key] = CacheEntry(data=data, stored_at=self._clock(), ttl=ttl or self.default_ttl)
        return True

    def invalidate(self, prefix: Optional[str] = None) -> int:
        """Drop every entry whose endpoint starts with ``prefix`` (all entries when omitted)."""
        self._epoch += 1
        self._invalidated_at[prefix or ""] = self._epoch
        if prefix is None:
            dropped = len(self._entries)
            self._entries.clear()
            return dropped
        stale = [key for key in self._entries if key.split("?", 1)[0].startswith(prefix)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
