"""Best-effort claim cache.

The cache only accelerates reads. It is never a source of correctness
failure: every store error is logged and treated as a miss (for reads) or a
no-op (for writes and deletes), and callers always fall through to the
relational store.

Key scheme:
    claim:{organization_id}:{claim_id}           single claim
    claims:{organization_id}:{k1:v1|k2:v2|...}   list query, filter keys sorted
    claimgen:{organization_id}                   write generation, never expires

Claim and list entries are stored as "{generation}|{json}". Every committed
write bumps the tenant's generation before deleting keys, and a reader tags
its entry with the generation it saw before reading the store. An entry whose
tag is not the current generation is a miss, so a read that raced a write can
not serve the pre-write row after the write returns.

Environment Variables:
    CLAIMFLOW_CACHE_ENABLED: "false" or "0" disables every cache operation
    CLAIMFLOW_REDIS_URL: Redis connection URL (default: redis://localhost:6379/0)
    CLAIMFLOW_CACHE_TTL_CLAIM: Single-claim TTL seconds (default: 300)
    CLAIMFLOW_CACHE_TTL_LIST: List-query TTL seconds (default: 60)
"""

from __future__ import annotations

import fnmatch
import logging
import os
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

CACHE_ENABLED_ENV = "CLAIMFLOW_CACHE_ENABLED"
REDIS_URL_ENV = "CLAIMFLOW_REDIS_URL"
CACHE_TTL_CLAIM_ENV = "CLAIMFLOW_CACHE_TTL_CLAIM"
CACHE_TTL_LIST_ENV = "CLAIMFLOW_CACHE_TTL_LIST"

DEFAULT_REDIS_URL = "redis://localhost:6379/0"


@dataclass(frozen=True)
class CacheTTL:
    """Time-to-live in seconds per cached entity kind."""

    claim: int = 300
    claim_list: int = 60

    @classmethod
    def from_env(cls) -> CacheTTL:
        return cls(
            claim=int(os.environ.get(CACHE_TTL_CLAIM_ENV, "300")),
            claim_list=int(os.environ.get(CACHE_TTL_LIST_ENV, "60")),
        )


def is_cache_enabled() -> bool:
    """Cache is on unless CLAIMFLOW_CACHE_ENABLED is "false" or "0"."""
    return os.environ.get(CACHE_ENABLED_ENV, "true").strip().lower() not in ("false", "0")


def build_claim_cache_key(organization_id: str, claim_id: str) -> str:
    return f"claim:{organization_id}:{claim_id}"


def claim_generation_key(organization_id: str) -> str:
    return f"claimgen:{organization_id}"


def claim_list_prefix(organization_id: str) -> str:
    """Prefix covering every cached list query of one organization."""
    return f"claims:{organization_id}:"


def build_claim_list_cache_key(organization_id: str, filters: dict[str, Any]) -> str:
    """Build a list-query key that is identical for identical filter sets.

    Filter keys are sorted lexicographically so input order never matters,
    and None values are dropped so an absent filter and an unset filter
    produce the same key.
    """
    filter_str = "|".join(
        f"{key}:{filters[key]}" for key in sorted(filters) if filters[key] is not None
    )
    return f"{claim_list_prefix(organization_id)}{filter_str}"


@runtime_checkable
class CacheStore(Protocol):
    """Subset of the Redis client API used by CacheLayer."""

    def get(self, key: str) -> str | None: ...

    def setex(self, key: str, ttl: int, value: str) -> Any: ...

    def delete(self, *keys: str) -> Any: ...

    def scan_iter(self, match: str) -> Iterable[str]: ...

    def incr(self, key: str) -> Any: ...


class InMemoryCacheStore:
    """Thread-safe in-process store with per-key expiry.

    Used when Redis is not configured, and in tests. The clock is injectable
    so expiry can be exercised deterministically.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._data[key]
                return None
            return value

    def setex(self, key: str, ttl: int, value: str) -> None:
        with self._lock:
            self._data[key] = (value, self._clock() + ttl)

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._data.pop(key, None) is not None:
                    removed += 1
        return removed

    def incr(self, key: str) -> int:
        with self._lock:
            entry = self._data.get(key)
            value = int(entry[0]) + 1 if entry is not None else 1
            self._data[key] = (str(value), float("inf"))
            return value

    def scan_iter(self, match: str) -> Iterator[str]:
        with self._lock:
            keys = [k for k in self._data if fnmatch.fnmatchcase(k, match)]
        return iter(keys)

    def keys(self) -> list[str]:
        """Every stored key (for tests)."""
        with self._lock:
            return list(self._data)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class CacheLayer:
    """get / set / delete / delete_by_pattern over a CacheStore, tolerant of store failure."""

    def __init__(
        self,
        store: CacheStore | None,
        enabled: bool | None = None,
        ttl: CacheTTL | None = None,
    ) -> None:
        """Initialize the cache layer.

        Args:
            store: Backing store. None disables the cache.
            enabled: Override for the CLAIMFLOW_CACHE_ENABLED switch.
            ttl: Override for the TTL configuration.
        """
        self._store = store
        self._enabled = (is_cache_enabled() if enabled is None else enabled) and store is not None
        self.ttl = ttl or CacheTTL.from_env()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def get(self, key: str) -> str | None:
        if not self._enabled or self._store is None:
            return None
        try:
            value = self._store.get(key)
        except Exception as e:
            logger.warning("Cache get failed for %s: %s", key, e)
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    def set(self, key: str, value: str, ttl: int) -> None:
        if not self._enabled or self._store is None:
            return
        try:
            self._store.setex(key, ttl, value)
        except Exception as e:
            logger.warning("Cache set failed for %s: %s", key, e)

    def delete(self, key: str) -> None:
        if not self._enabled or self._store is None:
            return
        try:
            self._store.delete(key)
        except Exception as e:
            logger.warning("Cache delete failed for %s: %s", key, e)

    def delete_by_pattern(self, prefix: str) -> None:
        """Delete every key starting with prefix."""
        if not self._enabled or self._store is None:
            return
        try:
            keys = list(self._store.scan_iter(match=f"{prefix}*"))
            if keys:
                self._store.delete(*keys)
        except Exception as e:
            logger.warning("Cache delete by pattern failed for %s: %s", prefix, e)

    def current_generation(self, organization_id: str) -> int | None:
        """The tenant's write generation, or None when the cache cannot be used."""
        if not self._enabled or self._store is None:
            return None
        key = claim_generation_key(organization_id)
        try:
            raw = self._store.get(key)
            return int(raw) if raw is not None else 0
        except Exception as e:
            logger.warning("Cache generation read failed for %s: %s", key, e)
            return None

    def get_versioned(self, key: str, generation: int | None) -> str | None:
        """Return the value stored under key if it was written at generation.

        Entries from an older generation, or without a readable tag, are misses.
        """
        if generation is None:
            return None
        raw = self.get(key)
        if raw is None:
            return None
        tag, sep, value = raw.partition("|")
        if not sep or not tag.isdigit():
            logger.warning("Discarding untagged cache entry %s", key)
            self.delete(key)
            return None
        if int(tag) != generation:
            return None
        return value

    def set_versioned(self, key: str, value: str, ttl: int, generation: int | None) -> None:
        """Store value tagged with the generation read before the store was queried."""
        if generation is None:
            return
        self.set(key, f"{generation}|{value}", ttl)

    def invalidate_claims(self, organization_id: str, claim_ids: Iterable[str]) -> None:
        """Run after a committed write: bump the generation, then drop the tenant's keys."""
        if not self._enabled or self._store is None:
            return
        key = claim_generation_key(organization_id)
        try:
            self._store.incr(key)
        except Exception as e:
            logger.warning("Cache generation bump failed for %s: %s", key, e)
        for claim_id in claim_ids:
            self.delete(build_claim_cache_key(organization_id, claim_id))
        self.delete_by_pattern(claim_list_prefix(organization_id))


def create_cache_layer() -> CacheLayer:
    """Build the process cache from the environment.

    Uses Redis when CLAIMFLOW_REDIS_URL is set, otherwise an in-process store.
    """
    if not is_cache_enabled():
        logger.info("Claim cache disabled via %s", CACHE_ENABLED_ENV)
        return CacheLayer(store=None, enabled=False)

    url = os.environ.get(REDIS_URL_ENV)
    if not url:
        logger.info("No %s set; using in-memory claim cache", REDIS_URL_ENV)
        return CacheLayer(store=InMemoryCacheStore())

    import redis

    client = redis.Redis.from_url(url, decode_responses=True)
    logger.info("Using Redis claim cache")
    return CacheLayer(store=client)
