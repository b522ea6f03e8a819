from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from advisor.schemas import AdvisorInsight

DEFAULT_TTL_SECONDS = 6 * 60 * 60


@dataclass(frozen=True)
class CacheEntry:
    value: AdvisorInsight
    expires_at: float


def cache_key(user_id: str, month: str, language: str) -> str:
    return f"{user_id}|{month}|{language}"


class InsightCache:
    """Per-process TTL cache of generated insights.

    Expired entries are never returned; they are dropped by ``sweep``, which
    the service calls at the start of every request.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def get(self, key: str) -> AdvisorInsight | None:
        entry = self._entries.get(key)
        if entry is None or entry.expires_at <= self.clock():
            return None
        return entry.value

    def set(self, key: str, value: AdvisorInsight) -> CacheEntry:
        entry = CacheEntry(value=value, expires_at=self.clock() + self.ttl_seconds)
        self._entries[key] = entry
        return entry

    def sweep(self) -> int:
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries
