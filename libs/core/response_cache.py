from __future__ import annotations

import hashlib
import threading
import time
from dataclasses import dataclass

DEFAULT_TTL_S = 120.0


@dataclass(slots=True)
class CacheEntry:
    value: str
    expires_at: float

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at


def make_cache_key(kind: str, system_prompt: str, user_prompt: str) -> str:
    payload = f"{kind}\n{system_prompt}\n{user_prompt}"
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest().upper()
    return f"{kind}:{digest}"


class ResponseCache:
    """Process-wide cache of extracted model JSON, safe for concurrent runs.

    Created once at process start and injected into every structured client.
    A miss is always acceptable; entries only save repeated model calls.
    """

    def __init__(self, default_ttl_s: float = DEFAULT_TTL_S, max_entries: int = 512) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._default_ttl_s = default_ttl_s
        self._max_entries = max_entries
        self._lock = threading.RLock()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expired:
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: str, ttl_s: float | None = None) -> None:
        ttl = self._default_ttl_s if ttl_s is None else ttl_s
        if ttl <= 0:
            return
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                self._evict_unlocked()
            self._entries[key] = CacheEntry(value=value, expires_at=time.monotonic() + ttl)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict_unlocked(self) -> None:
        expired = [key for key, entry in self._entries.items() if entry.expired]
        for key in expired:
            del self._entries[key]
        if len(self._entries) >= self._max_entries:
            oldest = sorted(self._entries, key=lambda key: self._entries[key].expires_at)
            for key in oldest[: max(1, self._max_entries // 4)]:
                del self._entries[key]
