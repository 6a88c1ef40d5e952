"""Versioned policy lookup with a bounded, time-limited cache.

The cache is owned by the PolicyStore instance that receives it; there is no
module-level cache. Stale entries are dropped when read. Concurrent misses for
the same key may both hit the backing repository; the last write wins.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Tuple

from .errors import ADLError, ADL_E_POLICY_INVALID, not_found, storage_error
from .policy import PolicyReference, PolicyVersion
from .timeouts import check_deadline

logger = logging.getLogger("adl_gateway.policy_store")


class PolicyRepository(Protocol):
    def get_latest_policy(self, name: str) -> Optional[PolicyVersion]: ...

    def get_policy_version(self, name: str, version: str) -> Optional[PolicyVersion]: ...


@dataclass
class PolicyCacheConfig:
    """Environment variables:
    - ADL_POLICY_CACHE_TTL_SECONDS: entry lifetime (default 60).
    - ADL_POLICY_CACHE_MAX_ITEMS: LRU bound (default 1024).
    """

    ttl_seconds: float = 60.0
    max_items: int = 1024

    @classmethod
    def from_env(cls) -> "PolicyCacheConfig":
        try:
            ttl = float(os.getenv("ADL_POLICY_CACHE_TTL_SECONDS", str(cls.ttl_seconds)).strip())
        except ValueError:
            ttl = cls.ttl_seconds
        try:
            max_items = int(os.getenv("ADL_POLICY_CACHE_MAX_ITEMS", str(cls.max_items)).strip())
        except ValueError:
            max_items = cls.max_items
        if ttl < 0:
            ttl = 0.0
        if max_items < 1:
            max_items = 1
        return cls(ttl_seconds=ttl, max_items=max_items)


class PolicyCache:
    """LRU + TTL cache of PolicyVersion keyed by `name@version` / `name@@latest`."""

    def __init__(
        self,
        config: Optional[PolicyCacheConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or PolicyCacheConfig.from_env()
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, Tuple[float, PolicyVersion]]" = OrderedDict()

    def get(self, key: str) -> Optional[PolicyVersion]:
        with self._lock:
            hit = self._entries.get(key)
            if hit is None:
                return None
            stored_at, value = hit
            if self._clock() - stored_at > self.config.ttl_seconds:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    def put(self, key: str, value: PolicyVersion) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.config.max_items:
                self._entries.popitem(last=False)

    def invalidate(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PolicyStore:
    def __init__(self, repository: PolicyRepository, cache: Optional[PolicyCache] = None) -> None:
        self.repository = repository
        self.cache = cache if cache is not None else PolicyCache()

    def load(self, reference: str, deadline: Optional[float] = None) -> PolicyVersion:
        """Resolve `name` (latest) or `name@version` to a PolicyVersion."""
        ref = PolicyReference.parse(reference)
        key = ref.cache_key
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        check_deadline(deadline, "policy_load")
        try:
            if ref.version is None:
                found = self.repository.get_latest_policy(ref.name)
            else:
                found = self.repository.get_policy_version(ref.name, ref.version)
        except ADLError as e:
            if e.code == ADL_E_POLICY_INVALID:
                logger.error("stored policy %s is invalid: %s", key, e.message)
            raise
        except Exception as e:
            logger.error("policy backing read failed for %s: %r", key, e)
            raise storage_error("policy_load") from e

        if found is None:
            if ref.version is None:
                raise not_found(f"Policy {ref.name} not found", policy=ref.name)
            raise not_found(f"Policy {ref.name}@{ref.version} not found", policy=ref.name, version=ref.version)

        self.cache.put(key, found)
        return found
